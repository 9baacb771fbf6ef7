"""Pydantic models for generation requests, task status and rate-limit state.

These are the in-memory records that flow between the analyzer, the
throttle guard, the retry scheduler, the batch orchestrator and the
reconciler. None of them is persisted.
"""

import uuid
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from genorch.clock import now_ms

GenerationType = Literal["image", "video"]
Severity = Literal["low", "medium", "high", "critical"]
TaskState = Literal["pending", "processing", "completed", "failed"]
OutcomeStatus = Literal["completed", "failed", "cancelled"]

# Ordinal used for "at least as severe as" comparisons
SEVERITY_RANK: dict[str, int] = {
    "low": 0,
    "medium": 1,
    "high": 2,
    "critical": 3,
}


def severity_at_least(severity: str, threshold: str) -> bool:
    """Return True if severity is as severe as threshold or worse."""
    return SEVERITY_RANK[severity] >= SEVERITY_RANK[threshold]


class GenerationRequest(BaseModel):
    """A single image or video generation request submitted by the caller."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    scene_id: Optional[str] = None
    config_id: str
    type: GenerationType = "image"
    prompt: str = ""
    submitted_at_ms: float = Field(default_factory=now_ms)


class RateLimitSnapshot(BaseModel):
    """Structured view of the rate-limit signals carried by one call outcome."""

    is_rate_limited: bool = False
    retry_after_ms: Optional[float] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at_ms: Optional[float] = None
    severity: Severity = "low"


class RetryState(BaseModel):
    """Per-invocation retry bookkeeping, discarded when the call returns."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    attempt: int = 0
    last_delay_ms: float = 0.0
    last_error: Optional[BaseException] = None
    last_snapshot: Optional[RateLimitSnapshot] = None


class ThrottleEvent(BaseModel):
    """One detected rate-limit event in the rolling history."""

    timestamp_ms: float
    severity: Severity


class RequestMetadata(BaseModel):
    """Submission timestamps for one submission key."""

    last_submitted_at_ms: float
    last_retry_at_ms: Optional[float] = None


class ActiveGeneration(BaseModel):
    """Live record for a request that has been submitted but not finished."""

    request: GenerationRequest
    status: TaskState = "pending"
    progress: float = Field(default=0, ge=0, le=100)
    message: str = "Waiting..."


class TaskStatus(BaseModel):
    """Presentation record produced by the reconciler."""

    id: str
    type: GenerationType
    status: TaskState
    progress: float = Field(default=0, ge=0, le=100)
    message: str = ""
    result: Optional[Any] = None
    error: Optional[str] = None
    config_id: str
    scene_id: Optional[str] = None
    prompt: Optional[str] = None
    created_at_ms: float
    finished_at_ms: Optional[float] = None


class RequestOutcome(BaseModel):
    """Terminal result of dispatching one request inside a batch."""

    request_id: str
    batch_index: int
    status: OutcomeStatus
    result: Optional[Any] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    severity: Severity = "low"
    attempts: int = 0


class PartialResults(BaseModel):
    """Everything a submit() call obtained, including a fail-fast marker.

    When aborted is True, outcomes only cover the batches that actually ran
    and skipped_ids lists the requests that were never dispatched.
    """

    outcomes: list[RequestOutcome] = Field(default_factory=list)
    batch_sizes: list[int] = Field(default_factory=list)
    batches_completed: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None
    abort_severity: Optional[Severity] = None
    skipped_ids: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> list[RequestOutcome]:
        return [o for o in self.outcomes if o.status == "completed"]

    @property
    def failed(self) -> list[RequestOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]


class ProviderResponse(BaseModel):
    """Raw provider response: status, headers and decoded body."""

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None
