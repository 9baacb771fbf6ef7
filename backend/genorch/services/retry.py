"""Severity-aware retry with exponential backoff, built on tenacity.

The scheduler wraps one provider operation. Each retryable failure is
graded by the RateLimitAnalyzer and the next delay is derived from that
grade: a server Retry-After wins, otherwise exponential backoff scaled by
severity. Both paths get +/-25% jitter and are clamped to max_delay_ms.

Usage:
    scheduler = RetryScheduler(analyzer, guard)
    response = await scheduler.run(
        lambda: provider.send(request),
        endpoint_key="POST:https://api.example/v1/images/generations",
    )
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_exception, stop_after_attempt

from genorch.config import RetryConfig
from genorch.errors import (
    AuthenticationError,
    RequestThrottledError,
    RetryExhaustedError,
    ValidationError,
)
from genorch.schemas.generation import RateLimitSnapshot, RetryState
from genorch.services.rate_limit import RateLimitAnalyzer
from genorch.services.throttle import ThrottleGuard

logger = logging.getLogger(__name__)

SEVERITY_MULTIPLIERS = {
    "critical": 4.0,
    "high": 2.5,
    "medium": 1.5,
}

RETRY_AFTER_BUFFER = 1.2
JITTER_RATIO = 0.25


def backoff_delay(attempt: int, snapshot: RateLimitSnapshot, config: RetryConfig) -> float:
    """Delay in ms before retry number attempt + 1, without jitter.

    attempt is zero-based: 0 is the delay after the first failure.
    """
    if snapshot.retry_after_ms:
        return min(snapshot.retry_after_ms * RETRY_AFTER_BUFFER, config.max_delay_ms)
    multiplier = SEVERITY_MULTIPLIERS.get(snapshot.severity, 1.0)
    return min(
        config.base_delay_ms * config.backoff_factor ** attempt * multiplier,
        config.max_delay_ms,
    )


def compute_delay(
    attempt: int,
    snapshot: RateLimitSnapshot,
    config: RetryConfig,
    rng: Optional[random.Random] = None,
) -> float:
    """backoff_delay with uniform jitter, clamped to [0, max_delay_ms]."""
    delay = backoff_delay(attempt, snapshot, config)
    if config.jitter:
        rng = rng or random
        delay += delay * rng.uniform(-JITTER_RATIO, JITTER_RATIO)
    return max(0.0, min(delay, config.max_delay_ms))


def is_retryable(
    exc: BaseException,
    config: RetryConfig,
    matcher: Optional[Callable[[str], bool]] = None,
) -> bool:
    """Return True only for failures worth another attempt.

    Authentication and validation errors are never retried. An error
    carrying an HTTP status is retried only for the configured codes.
    Without a status, an error that declares itself retryable, a network
    timeout, or a rate-limit phrase in the message qualifies.
    """
    if not isinstance(exc, Exception):
        return False
    if isinstance(exc, (AuthenticationError, ValidationError)):
        return False
    declared = getattr(exc, "retryable", None)
    if declared is False:
        return False
    status = getattr(exc, "status_code", None)
    if status is not None:
        return status in config.retryable_status_codes
    if declared:
        return True
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    return bool(matcher and matcher(str(exc)))


def build_suggestions(config: RetryConfig) -> list[str]:
    """Remediation hints attached to RetryExhaustedError."""
    return [
        f"Wait {round(config.max_delay_ms / 1000)} seconds before retrying",
        "Reduce the number of concurrent requests",
        "Split large jobs into smaller batches",
        "Check whether other programs are sending requests with the same credentials",
    ]


class RetryScheduler:
    """Runs one operation with analyzer-driven retries."""

    def __init__(
        self,
        analyzer: RateLimitAnalyzer,
        guard: Optional[ThrottleGuard] = None,
        config: Optional[RetryConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.analyzer = analyzer
        self.guard = guard
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        config: Optional[RetryConfig] = None,
        *,
        endpoint_key: Optional[str] = None,
        submission_key: Optional[str] = None,
        on_retry: Optional[Callable[[RetryState], None]] = None,
    ) -> Any:
        """Await operation(), retrying retryable failures.

        Raises the original error when it is not retryable, and
        RetryExhaustedError after max_retries retries or when the guard
        blocks a retry.
        """
        cfg = config or self.config
        state = RetryState()
        analyzed: dict[int, RateLimitSnapshot] = {}

        def wait(retry_state) -> float:
            exc = retry_state.outcome.exception()
            snapshot = self.analyzer.analyze_error(exc, endpoint_key)
            analyzed[retry_state.attempt_number] = snapshot
            delay = compute_delay(retry_state.attempt_number - 1, snapshot, cfg, self._rng)
            state.last_error = exc
            state.last_snapshot = snapshot
            state.last_delay_ms = delay
            return delay / 1000

        def before_sleep(retry_state) -> None:
            state.attempt += 1
            if self.guard is not None and submission_key:
                self.guard.record_retry(submission_key)
            logger.warning(
                "Retrying %s in %.1fs (retry %d/%d, severity=%s): %s",
                endpoint_key or "operation",
                state.last_delay_ms / 1000,
                state.attempt,
                cfg.max_retries,
                state.last_snapshot.severity if state.last_snapshot else "low",
                state.last_error,
            )
            if on_retry is not None:
                on_retry(state)

        async def attempt():
            if state.attempt and self.guard is not None and endpoint_key:
                self.guard.check_history(endpoint_key)
            return await operation()

        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(cfg.max_retries + 1),
            wait=wait,
            retry=retry_if_exception(
                lambda exc: is_retryable(exc, cfg, self.analyzer.matches_vocabulary)
            ),
            before_sleep=before_sleep,
            reraise=False,
        )

        try:
            result = await retrying(attempt)
        except RetryError as err:
            last = err.last_attempt
            final = last.exception()
            snapshot = analyzed.get(last.attempt_number)
            if snapshot is None:
                snapshot = self.analyzer.analyze_error(final, endpoint_key)
            logger.error(
                "Giving up on %s after %d retries: %s",
                endpoint_key or "operation",
                state.attempt,
                final,
            )
            raise RetryExhaustedError(
                final, state.attempt, build_suggestions(cfg), snapshot
            ) from final
        except RequestThrottledError as e:
            if not state.attempt:
                raise
            logger.error(
                "Stopped retrying %s after %d retries: %s",
                endpoint_key or "operation",
                state.attempt,
                e,
            )
            snapshot = RateLimitSnapshot(is_rate_limited=True, severity=e.severity)
            raise RetryExhaustedError(
                e, state.attempt, build_suggestions(cfg), snapshot
            ) from e

        if self.guard is not None and submission_key:
            self.guard.clear_retry(submission_key)
        return result
