"""Error taxonomy for provider calls.

Every failure that crosses the provider boundary is normalised into one of
these classes so the retry scheduler and the batch orchestrator can decide
what to do without parsing provider bodies.

- RateLimitError / RequestThrottledError: retried, graded by severity
- TransientNetworkError: timeouts, connection resets, 5xx edge codes; retried
- AuthenticationError / ValidationError: never retried
- UnknownError: anything else, including 500; retried only if a status-less
  message names a rate limit
- TaskFailedError: an accepted job failed or timed out while polling; never retried
- RetryExhaustedError: raised by the scheduler after the last retry; never retried
"""

from typing import Optional

from genorch.schemas.generation import ProviderResponse, RateLimitSnapshot

_AUTH_STATUS_CODES = {401, 403}
_VALIDATION_STATUS_CODES = {400, 404, 413, 422}
_TRANSIENT_STATUS_CODES = {502, 503, 504, 520, 521, 522, 523, 524}


class GenerationError(Exception):
    """Base class for all provider-call failures.

    retryable is None when the class has no opinion; the scheduler then
    falls back to the status code and message classifiers.
    """

    retryable: Optional[bool] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        response: Optional[ProviderResponse] = None,
        snapshot: Optional[RateLimitSnapshot] = None,
    ):
        super().__init__(message)
        self.message = message
        self.response = response
        self.status_code = status_code if status_code is not None else (
            response.status_code if response is not None else None
        )
        self.snapshot = snapshot


class RateLimitError(GenerationError):
    """Provider refused the call because of a rate or quota limit."""

    retryable = True

    def __init__(self, message: str, severity: str = "high", **kwargs):
        super().__init__(message, **kwargs)
        self.severity = severity


class RequestThrottledError(RateLimitError):
    """ThrottleGuard refused to send the request at all.

    A history block (too many severe events) is terminal for this call; a
    rapid-resubmission block is retryable once the interval has passed.
    """

    def __init__(self, message: str, severity: str, *, retryable: bool, reason: str):
        super().__init__(message, severity=severity)
        self.retryable = retryable
        self.reason = reason


class TransientNetworkError(GenerationError):
    """Timeout, dropped connection or a 5xx edge/gateway error."""

    retryable = True


class AuthenticationError(GenerationError):
    """Missing, malformed or rejected credentials (401/403)."""

    retryable = False


class ValidationError(GenerationError):
    """Request is malformed, e.g. an empty prompt. Retrying cannot help."""

    retryable = False

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field


class UnknownError(GenerationError):
    """Any other failure."""


class TaskFailedError(UnknownError):
    """The provider accepted the job but it failed or never finished.

    Resubmitting would start a second paid job, so this is never retried.
    """

    retryable = False


class RetryExhaustedError(GenerationError):
    """Raised after the last retry, carrying remediation guidance.

    Not retryable even when the original status is, so an enclosing
    scheduler never repeats work an inner one already gave up on.
    """

    retryable = False

    def __init__(
        self,
        original: BaseException,
        attempts: int,
        suggestions: list[str],
        snapshot: Optional[RateLimitSnapshot] = None,
    ):
        base_message = str(original) or type(original).__name__
        lines = [base_message, "", "Suggestions:"]
        lines.extend(f"{i}. {s}" for i, s in enumerate(suggestions, start=1))
        lines.append("")
        lines.append(f"Retried {attempts} time(s); try again later.")
        super().__init__(
            "\n".join(lines),
            status_code=getattr(original, "status_code", None),
            response=getattr(original, "response", None),
            snapshot=snapshot,
        )
        self.original = original
        self.attempts = attempts
        self.suggestions = suggestions


def error_for_response(
    response: ProviderResponse, message: Optional[str] = None
) -> GenerationError:
    """Map a non-2xx provider response onto the error taxonomy.

    The response is attached so the rate-limit analyzer can read headers.
    """
    status = response.status_code
    detail = message or _extract_error_detail(response)
    text = f"API request failed: {status} {detail}".rstrip()

    if status == 429:
        return RateLimitError(text, response=response)
    if status in _AUTH_STATUS_CODES:
        return AuthenticationError(text, response=response)
    if status in _VALIDATION_STATUS_CODES:
        return ValidationError(text, response=response)
    if status in _TRANSIENT_STATUS_CODES:
        return TransientNetworkError(text, response=response)
    return UnknownError(text, response=response)


def error_severity(exc: BaseException) -> str:
    """Best-known severity for a terminal error ("low" when unknown)."""
    snapshot = getattr(exc, "snapshot", None)
    if snapshot is not None:
        return snapshot.severity
    if isinstance(exc, RateLimitError):
        return exc.severity
    return "low"


def _extract_error_detail(response: ProviderResponse) -> str:
    """Pull a short human message out of a provider error body."""
    body = response.body
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("code") or "")
        if error:
            return str(error)
        if body.get("message"):
            return str(body["message"])
        return ""
    if isinstance(body, str):
        return body[:200]
    return ""
