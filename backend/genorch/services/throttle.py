"""Pre-emptive throttling in front of the provider.

ThrottleGuard refuses to send a request when recent history says the
endpoint is already in trouble, or when the same submission key was sent
or retried too recently. It reads the RateLimitHistory shared with the
RateLimitAnalyzer and keeps its own small per-key timestamp cache.
"""

import logging
from collections import OrderedDict
from typing import Callable, Optional

from genorch.clock import now_ms
from genorch.config import ThrottleConfig
from genorch.errors import RequestThrottledError
from genorch.schemas.generation import RequestMetadata
from genorch.services.rate_limit import RateLimitHistory

logger = logging.getLogger(__name__)


class ThrottleGuard:
    """Decides whether a submission may go out right now."""

    def __init__(
        self,
        history: RateLimitHistory,
        config: Optional[ThrottleConfig] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self.history = history
        self.config = config or ThrottleConfig()
        self._clock = clock
        self._metadata: OrderedDict[str, RequestMetadata] = OrderedDict()

    def history_block(self, endpoint_key: str) -> Optional[RequestThrottledError]:
        """Return a terminal block if the endpoint saw too many severe events."""
        cfg = self.config
        counts = self.history.severity_counts(endpoint_key)
        if counts["critical"] >= cfg.critical_event_threshold:
            return RequestThrottledError(
                f"Blocked: {counts['critical']} critical rate-limit events on "
                f"{endpoint_key} in the last {cfg.window_ms // 1000}s",
                severity="critical",
                retryable=False,
                reason="history",
            )
        if counts["high"] >= cfg.high_event_threshold:
            return RequestThrottledError(
                f"Blocked: {counts['high']} high-severity rate-limit events on "
                f"{endpoint_key} in the last {cfg.window_ms // 1000}s",
                severity="critical",
                retryable=False,
                reason="history",
            )
        return None

    def block_reason(
        self, endpoint_key: str, submission_key: Optional[str] = None
    ) -> Optional[RequestThrottledError]:
        """Return the error that would be raised for this submission, or None.

        History blocks are checked first since they are terminal for the
        call; a frequency block only delays it.
        """
        error = self.history_block(endpoint_key)
        if error is not None:
            return error

        cfg = self.config
        meta = self._lookup(submission_key or endpoint_key)
        if meta is None:
            return None
        now = self._clock()
        if now - meta.last_submitted_at_ms < cfg.min_submit_interval_ms:
            return RequestThrottledError(
                "Blocked: request was submitted less than "
                f"{cfg.min_submit_interval_ms}ms ago",
                severity="medium",
                retryable=True,
                reason="frequency",
            )
        if (
            meta.last_retry_at_ms is not None
            and now - meta.last_retry_at_ms < cfg.min_retry_interval_ms
        ):
            return RequestThrottledError(
                f"Blocked: request was retried less than {cfg.min_retry_interval_ms}ms ago",
                severity="medium",
                retryable=True,
                reason="frequency",
            )
        return None

    def should_block(self, endpoint_key: str, submission_key: Optional[str] = None) -> bool:
        """True if the submission should not be sent now."""
        return self.block_reason(endpoint_key, submission_key) is not None

    def check(self, endpoint_key: str, submission_key: Optional[str] = None) -> None:
        """Raise RequestThrottledError if the submission is blocked."""
        error = self.block_reason(endpoint_key, submission_key)
        if error is not None:
            logger.warning("%s (%s)", error, submission_key or endpoint_key)
            raise error

    def check_history(self, endpoint_key: str) -> None:
        """Raise if only the history rule blocks; used before each retry."""
        error = self.history_block(endpoint_key)
        if error is not None:
            logger.warning("%s", error)
            raise error

    def record_submission(self, key: str) -> None:
        now = self._clock()
        meta = self._metadata.pop(key, None)
        if meta is None:
            meta = RequestMetadata(last_submitted_at_ms=now)
        else:
            meta.last_submitted_at_ms = now
        self._store(key, meta)

    def record_retry(self, key: str) -> None:
        now = self._clock()
        meta = self._metadata.pop(key, None)
        if meta is None:
            meta = RequestMetadata(last_submitted_at_ms=now, last_retry_at_ms=now)
        else:
            meta.last_retry_at_ms = now
        self._store(key, meta)

    def clear_retry(self, key: str) -> None:
        """Forget the retry mark after a successful call."""
        meta = self._metadata.get(key)
        if meta is not None:
            meta.last_retry_at_ms = None

    def stats(self) -> dict:
        self._evict()
        return {
            "tracked_keys": len(self._metadata),
            "recent_events": self.history.severity_counts(),
        }

    def _lookup(self, key: str) -> Optional[RequestMetadata]:
        self._evict()
        return self._metadata.get(key)

    def _store(self, key: str, meta: RequestMetadata) -> None:
        self._metadata[key] = meta
        while len(self._metadata) > self.config.max_tracked_keys:
            self._metadata.popitem(last=False)

    def _evict(self) -> None:
        cutoff = self._clock() - self.config.metadata_max_age_ms
        stale = [
            key
            for key, meta in self._metadata.items()
            if max(meta.last_submitted_at_ms, meta.last_retry_at_ms or 0) <= cutoff
        ]
        for key in stale:
            del self._metadata[key]
