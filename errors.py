"""Error taxonomy for the critique pipeline.

Retrieval-side errors (EmbeddingUnavailable, RetrievalEmpty) are non-fatal:
the analysis continues without research context. Stage errors (StageError,
StageTimeout) are fatal to the session and are recorded on the stage log so
the session can be retried manually. Provider errors (authentication, rate
limit, access, network) fail the current stage attempt only.
"""

import asyncio
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories used for user-facing guidance and the stage log."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    ACCESS = "access"
    PARSING = "parsing"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class LensError(Exception):
    """Base class for all pipeline errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    fatal: bool = True


class EmbeddingUnavailable(LensError):
    """No embedding backend could embed the text (network, auth, or all failed)."""

    category = ErrorCategory.NETWORK
    fatal = False


class FallbackExhausted(LensError):
    """Every backend in an ordered fallback chain failed.

    Attributes:
        attempts: (backend name, error message) for each backend tried
    """

    def __init__(self, what: str, attempts: list[tuple[str, str]]):
        self.attempts = attempts
        tried = "; ".join(f"{name}: {err}" for name, err in attempts) or "no backends configured"
        super().__init__(f"All {what} backends failed ({tried})")


class RetrievalEmpty(LensError):
    """Retrieval found nothing above threshold; analysis proceeds ungrounded."""

    fatal = False


class StageError(LensError):
    """A pipeline stage failed.

    Attributes:
        stage: Stage name
        duration_ms: How long the attempt ran before failing
    """

    def __init__(self, stage: str, message: str, duration_ms: int = 0,
                 category: ErrorCategory = ErrorCategory.UNKNOWN):
        self.stage = stage
        self.duration_ms = duration_ms
        self.category = category
        super().__init__(f"Stage '{stage}' failed after {duration_ms}ms: {message}")


class StageTimeout(StageError):
    """A stage exceeded its timeout. Handled exactly like StageError."""

    def __init__(self, stage: str, timeout_seconds: float, duration_ms: int = 0):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            stage,
            f"timed out after {timeout_seconds:g}s",
            duration_ms=duration_ms,
            category=ErrorCategory.TIMEOUT,
        )


class CancellationRejected(LensError):
    """Session is terminal or past its point of no return."""

    category = ErrorCategory.CANCELLED
    fatal = False


class SessionNotFound(LensError):
    """No session with the given id."""


class InvalidTransition(LensError):
    """A session status change that the state machine does not allow."""


class ProviderError(LensError):
    """A model, embedding or image host refused or could not be reached.

    Attributes:
        attempts: (backend name, error message) for each backend tried,
            when the error ends a fallback chain
    """

    def __init__(self, message: str, attempts: list[tuple[str, str]] | None = None):
        self.attempts = list(attempts or [])
        super().__init__(message)


class AuthenticationFailure(ProviderError):
    category = ErrorCategory.AUTH


class RateLimitExceeded(ProviderError):
    category = ErrorCategory.RATE_LIMIT


class AccessDenied(ProviderError):
    category = ErrorCategory.ACCESS


class NetworkError(ProviderError):
    category = ErrorCategory.NETWORK


_PROVIDER_ERRORS: dict[ErrorCategory, type[ProviderError]] = {
    ErrorCategory.AUTH: AuthenticationFailure,
    ErrorCategory.RATE_LIMIT: RateLimitExceeded,
    ErrorCategory.ACCESS: AccessDenied,
    ErrorCategory.NETWORK: NetworkError,
}

# HTTP status codes carried by openai and pydantic-ai errors
_STATUS_CATEGORIES = {
    401: ErrorCategory.AUTH,
    403: ErrorCategory.ACCESS,
    408: ErrorCategory.TIMEOUT,
    429: ErrorCategory.RATE_LIMIT,
}


_GUIDANCE = {
    ErrorCategory.NETWORK: "Network connection issue. Check connectivity and retry the session.",
    ErrorCategory.TIMEOUT: "The stage took too long. Retry, or analyze fewer images at once.",
    ErrorCategory.AUTH: "Authentication with the model provider failed. Check the API key.",
    ErrorCategory.RATE_LIMIT: "The provider is rate limiting requests. Wait a moment and retry.",
    ErrorCategory.ACCESS: "Access denied for this session or resource.",
    ErrorCategory.PARSING: "The model response could not be parsed. Retry the session.",
    ErrorCategory.CANCELLED: "The session was cancelled.",
    ErrorCategory.UNKNOWN: "An unexpected error occurred. Retry the session.",
}


def categorize_error(error: BaseException) -> ErrorCategory:
    """Map any exception to an ErrorCategory.

    Typed pipeline errors carry their own category; anything else is
    classified by exception type first and message keywords second.
    """
    if isinstance(error, LensError):
        return error.category
    status = getattr(error, "status_code", None)
    if status in _STATUS_CATEGORIES:
        return _STATUS_CATEGORIES[status]
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError) and "json" in str(error).lower():
        return ErrorCategory.PARSING

    message = str(error).lower()
    if "rate limit" in message or "429" in message:
        return ErrorCategory.RATE_LIMIT
    if "unauthorized" in message or "authentication" in message or "401" in message:
        return ErrorCategory.AUTH
    if "forbidden" in message or "403" in message or "access denied" in message:
        return ErrorCategory.ACCESS
    if "timeout" in message or "timed out" in message:
        return ErrorCategory.TIMEOUT
    if "network" in message or "connection" in message or "fetch" in message:
        return ErrorCategory.NETWORK
    if "parse" in message or "json" in message or "validation" in message:
        return ErrorCategory.PARSING
    return ErrorCategory.UNKNOWN


def user_guidance(category: ErrorCategory) -> str:
    """User-facing hint for an error category."""
    return _GUIDANCE.get(category, _GUIDANCE[ErrorCategory.UNKNOWN])


def status_category(status: int | None) -> ErrorCategory | None:
    """Category of an HTTP status that signals a provider problem, if any."""
    return _STATUS_CATEGORIES.get(status)


def error_for_category(
    category: ErrorCategory | None,
    message: str,
    attempts: list[tuple[str, str]] | None = None,
) -> ProviderError | None:
    """Typed ProviderError for a category, or None if the category has no type."""
    cls = _PROVIDER_ERRORS.get(category)
    if cls is None:
        return None
    return cls(message, attempts=attempts)


def provider_error(
    error: BaseException,
    message: str | None = None,
    attempts: list[tuple[str, str]] | None = None,
) -> ProviderError | None:
    """Typed ProviderError for a failure, or None if its category has no type.

    Example:
        >>> provider_error(ConnectionError("reset by peer"))
        NetworkError('reset by peer')
    """
    return error_for_category(categorize_error(error), message or str(error), attempts)
