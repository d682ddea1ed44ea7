"""
Provider and turn-level exceptions.

Every exception carries a stable ``code`` so callers (and the error
message shown to the user) can distinguish the failure class without
string matching:

  - ``AuthenticationError``, ``RequestTooLargeError``,
    ``MalformedResponseError``, ``TurnTooLargeError`` are fatal and never
    retried.
  - ``ProviderConnectionError`` is fatal for the attempt; the caller may
    resubmit the same user text as a new turn.
  - ``RateLimitError`` is the only retryable failure.  The retry controller
    turns persistent throttling into ``RetryExhaustedError``.
"""

from __future__ import annotations


class ProviderError(Exception):
    """Structured error from a provider call."""

    code = "provider_error"

    def __init__(self, message: str, *, provider: str = "", status: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


class AuthenticationError(ProviderError):
    code = "auth_failed"


class RequestTooLargeError(ProviderError):
    code = "request_too_large"


class MalformedResponseError(ProviderError):
    code = "malformed_response"


class ProviderConnectionError(ProviderError):
    code = "connection_error"


class RateLimitError(ProviderError):
    code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        status: int | None = 429,
        retry_after: float | None = None,
    ):
        super().__init__(message, provider=provider, status=status)
        self.retry_after = retry_after


class RetryExhaustedError(ProviderError):
    code = "retry_exhausted"

    def __init__(self, message: str, *, attempts: int, last_error: Exception):
        super().__init__(message, provider=getattr(last_error, "provider", ""))
        self.attempts = attempts
        self.last_error = last_error


class TurnTooLargeError(ProviderError):
    code = "turn_too_large"

    def __init__(self, message: str, *, required: int, ceiling: int):
        super().__init__(message)
        self.required = required
        self.ceiling = ceiling


class SessionBusyError(RuntimeError):
    """Raised when a turn or model switch is requested while a turn is in flight."""

    code = "session_busy"


def error_from_status(
    status: int,
    detail: str,
    *,
    provider: str,
    retry_after: float | None = None,
) -> ProviderError:
    """Map an HTTP status code from an upstream API onto the taxonomy."""
    message = f"HTTP {status}: {detail}" if detail else f"HTTP {status}"
    if status in (401, 403):
        return AuthenticationError(message, provider=provider, status=status)
    if status == 429:
        return RateLimitError(
            message, provider=provider, status=status, retry_after=retry_after
        )
    if status == 413 or (status == 400 and _looks_like_size_limit(detail)):
        return RequestTooLargeError(message, provider=provider, status=status)
    if status >= 500:
        return ProviderConnectionError(message, provider=provider, status=status)
    return ProviderError(message, provider=provider, status=status)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


_SIZE_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "too many tokens",
    "prompt is too long",
    "exceeds the maximum",
)


def _looks_like_size_limit(detail: str) -> bool:
    lowered = (detail or "").lower()
    return any(marker in lowered for marker in _SIZE_MARKERS)
