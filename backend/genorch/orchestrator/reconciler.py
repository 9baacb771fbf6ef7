"""Merge in-flight and recently finished tasks into one status view.

The reconciled view lists every active request (pending or processing,
with its live progress) plus history entries that finished within the last
few minutes, newest submission first, with each id appearing once. When
the same id is both active and historical the historical (terminal) entry
wins.

Recomputation is skipped when a cheap hash of the inputs is unchanged; the
timer uses that skip, explicit reads pass force=True.
"""

import asyncio
import logging
from typing import Callable, Iterable, Mapping, Optional, Sequence

from genorch.clock import now_ms
from genorch.config import ReconcilerConfig
from genorch.schemas.generation import ActiveGeneration, TaskStatus

logger = logging.getLogger(__name__)

StatusSource = Callable[[], tuple[Mapping[str, ActiveGeneration], Sequence[TaskStatus], Sequence[str]]]
ChangeCallback = Callable[[list[TaskStatus]], None]


class TaskStatusReconciler:
    """Produces the merged TaskStatus view and optionally refreshes it on a timer."""

    def __init__(
        self,
        config: Optional[ReconcilerConfig] = None,
        clock: Callable[[], float] = now_ms,
        sleep: Callable = asyncio.sleep,
    ):
        self.config = config or ReconcilerConfig()
        self._clock = clock
        self._sleep = sleep
        self._last_hash: Optional[str] = None
        self._last_view: list[TaskStatus] = []
        self._task: Optional[asyncio.Task] = None

    def data_hash(
        self,
        active: Mapping[str, ActiveGeneration],
        history: Sequence[TaskStatus],
        config_ids: Iterable[str] = (),
    ) -> str:
        """Fingerprint of the inputs: active keys, leading history and config ids."""
        cfg = self.config
        active_part = ",".join(sorted(active))
        history_part = ",".join(t.id for t in history[: cfg.hash_history_prefix])
        config_part = ",".join(list(config_ids)[: cfg.hash_config_prefix])
        return f"{active_part}|{history_part}|{config_part}"

    def reconcile(
        self,
        active: Mapping[str, ActiveGeneration],
        history: Sequence[TaskStatus],
        config_ids: Iterable[str] = (),
        *,
        force: bool = False,
    ) -> list[TaskStatus]:
        """Return the merged, deduplicated, newest-first view."""
        config_ids = list(config_ids)
        digest = self.data_hash(active, history, config_ids)
        if not force and digest == self._last_hash:
            return list(self._last_view)

        cutoff = self._clock() - self.config.history_window_ms
        merged: dict[str, TaskStatus] = {}

        for task_id, generation in active.items():
            request = generation.request
            merged[task_id] = TaskStatus(
                id=task_id,
                type=request.type,
                status=generation.status,
                progress=generation.progress,
                message=generation.message,
                config_id=request.config_id,
                scene_id=request.scene_id,
                prompt=request.prompt,
                created_at_ms=request.submitted_at_ms,
            )

        for entry in history:
            recorded_at = entry.finished_at_ms
            if recorded_at is None:
                recorded_at = entry.created_at_ms
            if recorded_at < cutoff:
                continue
            # Terminal history entry replaces any live record with the same id
            existing = merged.get(entry.id)
            if existing is None or existing.status not in ("completed", "failed"):
                merged[entry.id] = entry

        view = sorted(merged.values(), key=lambda t: t.created_at_ms, reverse=True)
        self._last_hash = digest
        self._last_view = view
        return list(view)

    # ------------------------------------------------------------------
    # Periodic refresh
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, source: StatusSource, on_change: ChangeCallback) -> None:
        """Start the refresh loop if it is not already running.

        source returns (active, history, config_ids). The loop stops itself
        once the active set is empty.
        """
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(source, on_change))

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self, source: StatusSource, on_change: ChangeCallback) -> None:
        interval = self.config.interval_ms / 1000
        logger.debug("Reconciler started (interval %.1fs)", interval)
        while True:
            active, history, config_ids = source()
            if not active:
                break
            previous = self._last_hash
            view = self.reconcile(active, history, config_ids)
            if self._last_hash != previous:
                on_change(view)
            await self._sleep(interval)
        logger.debug("Reconciler stopped: no active tasks")
