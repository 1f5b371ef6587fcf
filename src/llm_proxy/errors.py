from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    AUTH_FAILURE = "auth_failure"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.TIMEOUT, ErrorKind.UNAVAILABLE})


class ConfigurationError(Exception):
    """Proxy is misconfigured (unknown default provider, bad pricing file...)."""


class ProviderError(Exception):
    """Base error for a single failed provider call."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str = "Provider call failed", *, provider: str | None = None):
        super().__init__(message)
        self.provider = provider

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class AuthenticationError(ProviderError):
    kind = ErrorKind.AUTH_FAILURE


class RateLimitError(ProviderError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        retry_after_seconds: int | None = None,
        message: str = "Rate limited",
        *,
        provider: str | None = None,
    ):
        super().__init__(message, provider=provider)
        self.retry_after_seconds = retry_after_seconds


class InvalidRequestError(ProviderError):
    kind = ErrorKind.INVALID_REQUEST


class UpstreamTimeoutError(ProviderError):
    kind = ErrorKind.TIMEOUT


class UpstreamUnavailableError(ProviderError):
    kind = ErrorKind.UNAVAILABLE


class UpstreamProtocolError(ProviderError):
    """Unexpected upstream response shape / contract mismatch."""

    kind = ErrorKind.UNKNOWN


class RouterError(Exception):
    """Base error raised by the router."""


class ValidationFailedError(RouterError):
    """Malformed or incomplete request; never reaches a provider."""


class BudgetExceededError(ValidationFailedError):
    def __init__(self, *, limit: float, used: float, time_limit_ms: int, time_used_ms: int):
        super().__init__(
            f"Budget exceeded: maximum cost (${limit}) or time ({time_limit_ms}ms) reached"
        )
        self.limit = limit
        self.used = used
        self.time_limit_ms = time_limit_ms
        self.time_used_ms = time_used_ms


class SubmissionNotFoundError(ValidationFailedError):
    def __init__(self, submission_id: str):
        super().__init__("Submission not found")
        self.submission_id = submission_id


class SubmissionNotActiveError(ValidationFailedError):
    def __init__(self, submission_id: str, status: str | None = None):
        super().__init__("Can only use LLM proxy during active assessment")
        self.submission_id = submission_id
        self.status = status


class ProviderExhaustedError(RouterError):
    """Retry/fallback policy ran out without a successful call."""

    def __init__(self, last_error: ProviderError, message: str | None = None):
        super().__init__(message or f"Provider attempts exhausted: {last_error}")
        self.last_error = last_error

    @property
    def kind(self) -> ErrorKind:
        return self.last_error.kind


class InternalRouterError(RouterError):
    """Unexpected defect inside routing or metering."""


class LLMCallFailedError(Exception):
    """Single failure shape surfaced by the client facade."""

    def __init__(self, reason: str, *, status_code: int | None = None):
        super().__init__(f"LLM call failed: {reason}")
        self.reason = reason
        self.status_code = status_code
