"""Session facade wiring the orchestration components for one consumer.

A GenerationSession owns its own rate-limit history, throttle guard,
retry scheduler, batch orchestrator and reconciler, so independent
consumers (e.g. an image queue and a video queue) never share state.

Usage:
    session = GenerationSession(get_provider())
    results = await session.submit(requests, concurrency_cap=2)
    for status in session.get_reconciled_statuses():
        print(status.id, status.status, status.progress)
"""

import asyncio
import logging
import random
from collections import Counter
from typing import Any, Awaitable, Callable, Optional, Sequence

from genorch.clock import now_ms
from genorch.config import Settings, settings as default_settings
from genorch.errors import TaskFailedError, ValidationError, error_for_response
from genorch.orchestrator.batch import BatchListener, BatchOrchestrator
from genorch.orchestrator.reconciler import ChangeCallback, TaskStatusReconciler
from genorch.orchestrator.state import advance
from genorch.schemas.generation import (
    ActiveGeneration,
    GenerationRequest,
    PartialResults,
    ProviderResponse,
    RequestOutcome,
    RetryState,
    TaskStatus,
)
from genorch.services.provider.base import GenerationProvider
from genorch.services.rate_limit import RateLimitAnalyzer, RateLimitHistory
from genorch.services.retry import RetryScheduler
from genorch.services.throttle import ThrottleGuard

logger = logging.getLogger(__name__)

SKIPPED_MESSAGE = "Not dispatched: batch aborted after critical rate limit"

_TERMINAL_TASK_STATES = ("completed", "failed")


def extract_result_url(body: Any) -> Optional[str]:
    """Find the result URL in a completed provider payload."""
    if not isinstance(body, dict):
        return None
    results = body.get("results")
    if isinstance(results, list) and results:
        first = results[0]
        if isinstance(first, dict):
            return first.get("url")
        return str(first)
    return body.get("url") or body.get("result_url")


class GenerationSession(BatchListener):
    """In-memory orchestration state for one consumer.

    Implements BatchListener so the live map follows each request from
    pending through processing into history.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        config: Optional[Settings] = None,
        *,
        clock: Callable[[], float] = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        on_update: Optional[ChangeCallback] = None,
    ):
        self.provider = provider
        self.settings = config or default_settings
        self._clock = clock
        self._sleep = sleep
        self.on_update = on_update

        cfg = self.settings
        self.history_events = RateLimitHistory(
            window_ms=cfg.throttle.window_ms,
            max_events=cfg.throttle.max_events,
            clock=clock,
        )
        self.analyzer = RateLimitAnalyzer(self.history_events, cfg.rate_limit, clock=clock)
        self.guard = ThrottleGuard(self.history_events, cfg.throttle, clock=clock)
        self.scheduler = RetryScheduler(
            self.analyzer, self.guard, cfg.retry, sleep=sleep, rng=rng
        )
        self.orchestrator = BatchOrchestrator(
            self.scheduler,
            self.guard,
            retry_config=cfg.retry,
            concurrency_cap=cfg.batch.concurrency_cap,
            cooldown_ms=cfg.batch.cooldown_ms,
            sleep=sleep,
            listener=self,
        )
        self.reconciler = TaskStatusReconciler(cfg.reconciler, clock=clock, sleep=sleep)

        self.active: dict[str, ActiveGeneration] = {}
        self.history: list[TaskStatus] = []
        self.config_ids: list[str] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(
        self,
        requests: Sequence[GenerationRequest],
        concurrency_cap: Optional[int] = None,
    ) -> PartialResults:
        """Run requests through the batch orchestrator.

        All requests must share one generation type, since they share one
        endpoint key. Requests skipped by a fail-fast abort are recorded in
        history as failed.
        """
        if not requests:
            return PartialResults()
        types = {r.type for r in requests}
        if len(types) > 1:
            raise ValueError(f"Cannot mix generation types in one submission: {sorted(types)}")
        duplicates = [r.id for r in requests if r.id in self.active]
        if duplicates:
            raise ValueError(f"Requests already active: {duplicates}")

        for request in requests:
            self.active[request.id] = ActiveGeneration(request=request)
            if request.config_id not in self.config_ids:
                self.config_ids.insert(0, request.config_id)
        self._start_reconciler()

        endpoint_key = self.provider.endpoint_key(requests[0])
        try:
            results = await self.orchestrator.submit(
                requests, self._generate, concurrency_cap, endpoint_key=endpoint_key
            )
        except BaseException:
            for request in requests:
                self.active.pop(request.id, None)
            raise

        for request_id in results.skipped_ids:
            generation = self.active.pop(request_id, None)
            if generation is not None:
                self._push_history(generation, "failed", error=SKIPPED_MESSAGE)
        self._emit()
        return results

    def get_reconciled_statuses(self) -> list[TaskStatus]:
        """Merged view of active and recent tasks, always recomputed."""
        return self.reconciler.reconcile(
            self.active, self.history, self.config_ids, force=True
        )

    def cancel(self, request_id: str) -> bool:
        """Best-effort cancel; a cancelled request leaves the view at once."""
        if not self.orchestrator.cancel(request_id):
            return False
        self.active.pop(request_id, None)
        self._emit()
        return True

    def rate_limit_stats(self) -> dict:
        stats = self.analyzer.stats()
        stats["throttle"] = self.guard.stats()
        return stats

    def task_counts(self) -> dict[str, int]:
        """Number of tasks per status in the reconciled view."""
        counts = Counter(t.status for t in self.get_reconciled_statuses())
        return {
            "total": sum(counts.values()),
            "pending": counts.get("pending", 0),
            "processing": counts.get("processing", 0),
            "completed": counts.get("completed", 0),
            "failed": counts.get("failed", 0),
        }

    def active_tasks(self) -> list[TaskStatus]:
        return [
            t for t in self.get_reconciled_statuses()
            if t.status not in _TERMINAL_TASK_STATES
        ]

    async def close(self) -> None:
        self.reconciler.stop()
        await self.provider.close()

    # ------------------------------------------------------------------
    # BatchListener hooks
    # ------------------------------------------------------------------

    def on_start(self, request: GenerationRequest) -> None:
        generation = self.active.get(request.id)
        if generation is None:
            return
        generation.status = advance(generation.status, "processing")
        generation.progress = 0
        generation.message = "Submitting..."

    def on_retry(self, request: GenerationRequest, state: RetryState) -> None:
        generation = self.active.get(request.id)
        if generation is None:
            return
        generation.message = (
            f"Retrying in {state.last_delay_ms / 1000:.0f}s "
            f"(attempt {state.attempt})"
        )

    def on_finish(self, request: GenerationRequest, outcome: RequestOutcome) -> None:
        generation = self.active.pop(request.id, None)
        if generation is None:
            return
        if outcome.status == "cancelled":
            logger.info("Request %s cancelled", request.id)
            return
        if outcome.status == "completed":
            self._push_history(generation, "completed", result=outcome.result)
        else:
            self._push_history(generation, "failed", error=outcome.error)

    # ------------------------------------------------------------------
    # Provider call
    # ------------------------------------------------------------------

    async def _generate(self, request: GenerationRequest) -> Any:
        """One provider attempt: submit, then poll until the task settles."""
        if not request.prompt.strip():
            raise ValidationError("Prompt must not be empty", field="prompt")

        endpoint_key = self.provider.endpoint_key(request)
        response = await self.provider.send(request)
        if not response.ok:
            raise error_for_response(response)
        self.analyzer.analyze_response(response, endpoint_key)

        body = response.body
        if isinstance(body, dict) and body.get("id") and body.get("status"):
            if body["status"] != "completed":
                body = await self._poll_task(request, str(body["id"]))

        self._set_progress(request.id, 100, "Completed")
        return {"url": extract_result_url(body), "raw": body}

    async def _poll_task(self, request: GenerationRequest, task_id: str) -> Any:
        cfg = self.settings.provider
        started = self._clock()
        progress = 10.0
        self._set_progress(request.id, progress, f"Task {task_id} queued")

        while True:
            await self._sleep(cfg.poll_interval_ms / 1000)
            response = await self.scheduler.run(
                lambda: self._fetch_task(task_id),
                self.settings.poll_retry,
                endpoint_key=f"GET:{task_id}",
            )
            body = response.body if isinstance(response.body, dict) else {}
            status = body.get("status")
            if status == "completed":
                return body
            if status == "failed":
                detail = body.get("error") or "Provider reported task failure"
                if isinstance(detail, dict):
                    detail = detail.get("message") or str(detail)
                raise TaskFailedError(f"Task {task_id} failed: {detail}", response=response)

            progress = min(progress + 8, 90)
            reported = body.get("progress")
            if isinstance(reported, (int, float)):
                progress = max(progress, min(float(reported), 90))
            self._set_progress(request.id, progress, f"Task {task_id} {status or 'processing'}")

            if self._clock() - started > cfg.poll_timeout_ms:
                raise TaskFailedError(
                    f"Task {task_id} did not finish within {cfg.poll_timeout_ms // 1000}s"
                )

    async def _fetch_task(self, task_id: str) -> ProviderResponse:
        response = await self.provider.get_task(task_id)
        if not response.ok:
            raise error_for_response(response)
        return response

    # ------------------------------------------------------------------
    # Internal state
    # ------------------------------------------------------------------

    def _set_progress(self, request_id: str, progress: float, message: str) -> None:
        generation = self.active.get(request_id)
        if generation is not None:
            generation.progress = progress
            generation.message = message

    def _push_history(
        self,
        generation: ActiveGeneration,
        status: str,
        *,
        result: Any = None,
        error: Optional[str] = None,
    ) -> None:
        request = generation.request
        entry = TaskStatus(
            id=request.id,
            type=request.type,
            status=advance(generation.status, status),
            progress=100 if status == "completed" else generation.progress,
            message="Completed" if status == "completed" else "Failed",
            result=result,
            error=error,
            config_id=request.config_id,
            scene_id=request.scene_id,
            prompt=request.prompt,
            created_at_ms=request.submitted_at_ms,
            finished_at_ms=self._clock(),
        )
        self.history.insert(0, entry)
        del self.history[self.settings.reconciler.history_limit:]

    def _start_reconciler(self) -> None:
        if self.on_update is None:
            return
        self.reconciler.start(
            lambda: (self.active, self.history, self.config_ids), self.on_update
        )

    def _emit(self) -> None:
        if self.on_update is not None:
            self.on_update(self.get_reconciled_statuses())
