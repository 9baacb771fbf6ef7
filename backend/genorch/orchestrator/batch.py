"""Concurrency-capped batch dispatch with cooldown and fail-fast.

Requests are split into consecutive batches of at most concurrency_cap,
preserving submission order. Each batch runs concurrently; the next batch
starts only after every request of the current one has terminated and the
cooldown has elapsed. A request that terminates with severity "critical"
stops all later batches.

Usage:
    orchestrator = BatchOrchestrator(scheduler, guard)
    results = await orchestrator.submit(requests, provider_call, endpoint_key=key)
    if results.aborted:
        print(results.abort_reason, results.skipped_ids)
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

from genorch.config import RetryConfig
from genorch.errors import error_severity
from genorch.schemas.generation import (
    GenerationRequest,
    PartialResults,
    RequestOutcome,
    RetryState,
)
from genorch.services.retry import RetryScheduler
from genorch.services.throttle import ThrottleGuard

logger = logging.getLogger(__name__)

ProviderCall = Callable[[GenerationRequest], Awaitable[Any]]


class BatchListener:
    """Hooks fired as requests move through a batch. All are no-ops here."""

    def on_start(self, request: GenerationRequest) -> None:
        pass

    def on_retry(self, request: GenerationRequest, state: RetryState) -> None:
        pass

    def on_finish(self, request: GenerationRequest, outcome: RequestOutcome) -> None:
        pass


def plan_batches(
    requests: Sequence[GenerationRequest], concurrency_cap: int
) -> list[list[GenerationRequest]]:
    """Split requests into consecutive chunks of at most concurrency_cap."""
    if concurrency_cap < 1:
        raise ValueError(f"concurrency_cap must be >= 1, got {concurrency_cap}")
    return [
        list(requests[i:i + concurrency_cap])
        for i in range(0, len(requests), concurrency_cap)
    ]


class BatchOrchestrator:
    """Runs requests batch by batch through the guard and the retry scheduler."""

    def __init__(
        self,
        scheduler: RetryScheduler,
        guard: ThrottleGuard,
        *,
        retry_config: Optional[RetryConfig] = None,
        concurrency_cap: int = 2,
        cooldown_ms: float = 3000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        listener: Optional[BatchListener] = None,
    ):
        self.scheduler = scheduler
        self.guard = guard
        self.retry_config = retry_config
        self.concurrency_cap = concurrency_cap
        self.cooldown_ms = cooldown_ms
        self.listener = listener or BatchListener()
        self._sleep = sleep
        self._inflight: dict[str, asyncio.Task] = {}
        self._pending: set[str] = set()
        self._cancelled: set[str] = set()

    async def submit(
        self,
        requests: Sequence[GenerationRequest],
        call: ProviderCall,
        concurrency_cap: Optional[int] = None,
        *,
        endpoint_key: str,
    ) -> PartialResults:
        """Dispatch all requests and collect their outcomes.

        Never raises for per-request failures; they become failed outcomes.
        Raises ValueError for a cap below 1 or duplicate request ids.
        """
        cap = concurrency_cap if concurrency_cap is not None else self.concurrency_cap
        batches = plan_batches(requests, cap)
        ids = [r.id for r in requests]
        if len(set(ids)) != len(ids):
            raise ValueError("Request ids must be unique within a submission")

        results = PartialResults(batch_sizes=[len(b) for b in batches])
        self._pending.update(ids)
        logger.info(
            "Submitting %d request(s) to %s in %d batch(es) of up to %d",
            len(requests), endpoint_key, len(batches), cap,
        )

        try:
            for index, batch in enumerate(batches):
                if index > 0 and self.cooldown_ms > 0:
                    logger.info("Cooling down %.1fs before batch %d", self.cooldown_ms / 1000, index + 1)
                    await self._sleep(self.cooldown_ms / 1000)

                outcomes = await self._run_batch(index, batch, call, endpoint_key)
                results.outcomes.extend(outcomes)
                results.batches_completed += 1
                logger.info(
                    "Batch %d/%d done: %d completed, %d failed",
                    index + 1,
                    len(batches),
                    sum(1 for o in outcomes if o.status == "completed"),
                    sum(1 for o in outcomes if o.status == "failed"),
                )

                critical = next(
                    (o for o in outcomes if o.status == "failed" and o.severity == "critical"),
                    None,
                )
                remaining = [r for b in batches[index + 1:] for r in b]
                if critical is not None and remaining:
                    results.aborted = True
                    results.abort_severity = "critical"
                    results.abort_reason = (
                        f"Critical rate limit on request {critical.request_id}: {critical.error}"
                    )
                    results.skipped_ids = [r.id for r in remaining if r.id not in self._cancelled]
                    logger.error(
                        "Aborting after batch %d/%d: %d request(s) not dispatched",
                        index + 1, len(batches), len(results.skipped_ids),
                    )
                    break
        finally:
            self._pending.difference_update(ids)
            self._cancelled.difference_update(ids)

        return results

    def cancel(self, request_id: str) -> bool:
        """Best-effort cancellation of a pending or in-flight request."""
        task = self._inflight.get(request_id)
        if task is not None and not task.done():
            task.cancel()
            logger.info("Cancelled in-flight request %s", request_id)
            return True
        if request_id in self._pending and request_id not in self._cancelled:
            self._cancelled.add(request_id)
            logger.info("Cancelled pending request %s", request_id)
            return True
        return False

    async def _run_batch(
        self,
        index: int,
        batch: list[GenerationRequest],
        call: ProviderCall,
        endpoint_key: str,
    ) -> list[RequestOutcome]:
        tasks: dict[str, asyncio.Task] = {}
        for request in batch:
            self._pending.discard(request.id)
            if request.id in self._cancelled:
                continue
            task = asyncio.create_task(self._dispatch_one(index, request, call, endpoint_key))
            tasks[request.id] = task
            self._inflight[request.id] = task

        gathered = await asyncio.gather(*tasks.values(), return_exceptions=True)
        by_id = dict(zip(tasks.keys(), gathered))

        outcomes = []
        for request in batch:
            self._inflight.pop(request.id, None)
            result = by_id.get(request.id)
            if isinstance(result, RequestOutcome):
                outcomes.append(result)
                continue
            if request.id not in tasks or isinstance(result, asyncio.CancelledError):
                outcome = RequestOutcome(request_id=request.id, batch_index=index, status="cancelled")
            else:
                outcome = RequestOutcome(
                    request_id=request.id,
                    batch_index=index,
                    status="failed",
                    error=str(result),
                    error_type=type(result).__name__,
                )
            self.listener.on_finish(request, outcome)
            outcomes.append(outcome)
        return outcomes

    async def _dispatch_one(
        self,
        index: int,
        request: GenerationRequest,
        call: ProviderCall,
        endpoint_key: str,
    ) -> RequestOutcome:
        submission_key = f"{endpoint_key}#{request.id}"
        attempts = 0

        async def operation():
            nonlocal attempts
            attempts += 1
            return await call(request)

        def on_retry(state: RetryState) -> None:
            self.listener.on_retry(request, state)

        try:
            self.guard.check(endpoint_key, submission_key)
            self.guard.record_submission(submission_key)
            self.listener.on_start(request)
            result = await self.scheduler.run(
                operation,
                self.retry_config,
                endpoint_key=endpoint_key,
                submission_key=submission_key,
                on_retry=on_retry,
            )
        except Exception as e:
            severity = error_severity(e)
            logger.error(
                "Request %s failed after %d attempt(s) (severity=%s): %s",
                request.id, attempts, severity, e,
            )
            outcome = RequestOutcome(
                request_id=request.id,
                batch_index=index,
                status="failed",
                error=str(e),
                error_type=type(e).__name__,
                severity=severity,
                attempts=attempts,
            )
        else:
            outcome = RequestOutcome(
                request_id=request.id,
                batch_index=index,
                status="completed",
                result=result,
                attempts=attempts,
            )
        self.listener.on_finish(request, outcome)
        return outcome
