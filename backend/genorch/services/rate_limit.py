"""Rate-limit signal analysis and rolling event history.

RateLimitAnalyzer turns one call outcome (a provider response, or an
exception with or without a response attached) into a RateLimitSnapshot.
Status and headers are the primary classifier; the substring vocabulary is
only consulted when no response is available.

Detected rate-limit events are appended to a RateLimitHistory, which the
ThrottleGuard reads to decide whether to refuse new submissions.

Usage:
    history = RateLimitHistory()
    analyzer = RateLimitAnalyzer(history)
    snapshot = analyzer.analyze_response(response, "POST:/v1/images/generations")
"""

import logging
from collections import Counter
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional, Union

from genorch.clock import now_ms
from genorch.config import RateLimitConfig
from genorch.schemas.generation import (
    SEVERITY_RANK,
    ProviderResponse,
    RateLimitSnapshot,
    ThrottleEvent,
)

logger = logging.getLogger(__name__)

# Key used when the caller does not say which endpoint an event belongs to
GLOBAL_KEY = "*"

_LIMIT_HEADERS = ("X-RateLimit-Limit", "RateLimit-Limit")
_REMAINING_HEADERS = ("X-RateLimit-Remaining", "RateLimit-Remaining")
_RESET_HEADERS = ("X-RateLimit-Reset", "RateLimit-Reset")


def _first_header(response: ProviderResponse, names: tuple[str, ...]) -> Optional[str]:
    for name in names:
        value = response.header(name)
        if value:
            return value
    return None


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value.strip()))
    except ValueError:
        return None


def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[float]:
    """Parse a Retry-After header into seconds.

    Accepts delta-seconds ("120") or an HTTP date. Returns None when the
    header is absent or unparseable; past dates clamp to 0.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    reference = now / 1000 if now is not None else datetime.now(timezone.utc).timestamp()
    return max(0.0, when.timestamp() - reference)


class RateLimitHistory:
    """Rolling, time-windowed history of rate-limit events per endpoint key.

    Entries older than the window are pruned lazily on read. When a key's
    list grows past max_events it is cut to the newest half.
    """

    def __init__(
        self,
        window_ms: float = 300_000,
        max_events: int = 100,
        clock: Callable[[], float] = now_ms,
    ):
        self.window_ms = window_ms
        self.max_events = max_events
        self._clock = clock
        self._events: dict[str, list[ThrottleEvent]] = {}

    def record(self, key: Optional[str], severity: str) -> ThrottleEvent:
        """Append one event for key and enforce the size cap."""
        event = ThrottleEvent(timestamp_ms=self._clock(), severity=severity)
        events = self._events.setdefault(key or GLOBAL_KEY, [])
        events.append(event)
        if len(events) > self.max_events:
            del events[: len(events) - self.max_events // 2]
        return event

    def recent(self, key: Optional[str] = None) -> list[ThrottleEvent]:
        """Events inside the window, for one key or for all keys."""
        self._prune()
        if key is None:
            merged = [e for events in self._events.values() for e in events]
            return sorted(merged, key=lambda e: e.timestamp_ms)
        return list(self._events.get(key, []))

    def severity_counts(self, key: Optional[str] = None) -> dict[str, int]:
        """Count recent events per severity."""
        counts = Counter(e.severity for e in self.recent(key))
        return {severity: counts.get(severity, 0) for severity in SEVERITY_RANK}

    def total(self) -> int:
        """All retained events, including ones not yet pruned."""
        return sum(len(events) for events in self._events.values())

    def clear(self) -> None:
        self._events.clear()

    def _prune(self) -> None:
        cutoff = self._clock() - self.window_ms
        for key in list(self._events):
            kept = [e for e in self._events[key] if e.timestamp_ms > cutoff]
            if kept:
                self._events[key] = kept
            else:
                del self._events[key]


class RateLimitAnalyzer:
    """Derives RateLimitSnapshots from call outcomes and records events.

    Never raises: anything it cannot interpret yields the default snapshot
    (not rate-limited, severity "low").
    """

    def __init__(
        self,
        history: Optional[RateLimitHistory] = None,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self.history = history if history is not None else RateLimitHistory(clock=clock)
        self.config = config or RateLimitConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def matches_vocabulary(self, message: Optional[str]) -> bool:
        """Case-insensitive substring match against the rate-limit vocabulary."""
        if not message:
            return False
        lowered = message.lower()
        return any(pattern in lowered for pattern in self.config.patterns)

    def analyze_response(
        self, response: ProviderResponse, endpoint_key: Optional[str] = None
    ) -> RateLimitSnapshot:
        """Grade a provider response by status code and rate-limit headers."""
        snapshot = RateLimitSnapshot()
        cfg = self.config

        if response.status_code == 429:
            snapshot.is_rate_limited = True
            snapshot.severity = "high"

        retry_after_s = parse_retry_after(response.header("Retry-After"), self._clock())
        if retry_after_s is not None:
            snapshot.retry_after_ms = retry_after_s * 1000
            if retry_after_s > cfg.retry_after_critical_s:
                snapshot.severity = "critical"
            elif retry_after_s > cfg.retry_after_high_s:
                snapshot.severity = _max_severity(snapshot.severity, "high")

        snapshot.limit = _parse_int(_first_header(response, _LIMIT_HEADERS))
        snapshot.remaining = _parse_int(_first_header(response, _REMAINING_HEADERS))
        if snapshot.limit and snapshot.remaining is not None:
            ratio = snapshot.remaining / snapshot.limit
            if ratio < cfg.critical_ratio:
                snapshot.severity = "critical"
            elif ratio < cfg.high_ratio:
                snapshot.severity = "high"
            elif ratio < cfg.medium_ratio:
                snapshot.severity = "medium"

        reset = _parse_int(_first_header(response, _RESET_HEADERS))
        if reset is not None:
            snapshot.reset_at_ms = reset * 1000

        if snapshot.is_rate_limited:
            self._record(endpoint_key, snapshot)
        return snapshot

    def analyze_error(
        self, exc: BaseException, endpoint_key: Optional[str] = None
    ) -> RateLimitSnapshot:
        """Grade a raised error, preferring an attached response."""
        response = getattr(exc, "response", None)
        if isinstance(response, ProviderResponse):
            return self.analyze_response(response, endpoint_key)

        if self.matches_vocabulary(str(exc)):
            # Conservative default when only the message is available
            snapshot = RateLimitSnapshot(is_rate_limited=True, severity="medium")
            self._record(endpoint_key, snapshot)
            return snapshot

        return RateLimitSnapshot()

    def analyze(
        self,
        outcome: Union[ProviderResponse, BaseException],
        endpoint_key: Optional[str] = None,
    ) -> RateLimitSnapshot:
        """Dispatch to analyze_response or analyze_error by outcome type."""
        if isinstance(outcome, ProviderResponse):
            return self.analyze_response(outcome, endpoint_key)
        return self.analyze_error(outcome, endpoint_key)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        """Summary of the rolling history for dashboards and the CLI."""
        recent = self.history.recent()
        return {
            "total_events": self.history.total(),
            "recent_events": len(recent),
            "severity_breakdown": self.history.severity_counts(),
        }

    def _record(self, endpoint_key: Optional[str], snapshot: RateLimitSnapshot) -> None:
        self.history.record(endpoint_key, snapshot.severity)
        logger.warning(
            "Rate limit detected on %s: severity=%s retry_after_ms=%s remaining=%s/%s",
            endpoint_key or GLOBAL_KEY,
            snapshot.severity,
            snapshot.retry_after_ms,
            snapshot.remaining,
            snapshot.limit,
        )


def _max_severity(a: str, b: str) -> str:
    return a if SEVERITY_RANK[a] >= SEVERITY_RANK[b] else b
