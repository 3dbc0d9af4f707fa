"""Error taxonomy for the exchange gateway.

Exceptions in this module travel *inside* the gateway (transport -> retry ->
circuit breaker -> client). Public client operations never raise them for
expected upstream failures; they are folded into an :class:`ErrorKind` on the
returned :class:`~lnm_gateway.models.Result`.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    RATE_LIMITED = "rate_limited"
    ENDPOINT_NOT_FOUND = "endpoint_not_found"
    CIRCUIT_OPEN = "circuit_open"
    RETRIES_EXHAUSTED = "retries_exhausted"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UNKNOWN_UPSTREAM_ERROR = "unknown_upstream_error"
    INVALID_REQUEST = "invalid_request"


# Caller-facing messages; upstream error text is logged, never returned.
ERROR_MESSAGES = {
    ErrorKind.INVALID_CREDENTIALS: "Exchange rejected the API credentials",
    ErrorKind.INSUFFICIENT_PERMISSIONS: "API key lacks the permission required for this operation",
    ErrorKind.RATE_LIMITED: "Exchange rate limit reached, try again shortly",
    ErrorKind.ENDPOINT_NOT_FOUND: "Exchange endpoint not found",
    ErrorKind.CIRCUIT_OPEN: "Exchange temporarily disabled after repeated failures",
    ErrorKind.RETRIES_EXHAUSTED: "Exchange did not respond successfully after retries",
    ErrorKind.UPSTREAM_UNAVAILABLE: "Exchange is unavailable",
    ErrorKind.UNKNOWN_UPSTREAM_ERROR: "Unexpected response from exchange",
    ErrorKind.INVALID_REQUEST: "Invalid request parameters",
}


class ExchangeError(Exception):
    """Base exception for gateway errors."""

    kind = ErrorKind.UNKNOWN_UPSTREAM_ERROR

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class TransportError(ExchangeError):
    """Network-level failure: connection reset, DNS, timeout."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class UpstreamHTTPError(ExchangeError):
    """Non-2xx response from the exchange."""

    def __init__(
        self,
        status: int,
        message: str,
        *,
        method: Optional[str] = None,
        path: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(f"{status}: {message}")
        self.status = status
        self.upstream_message = message
        self.method = method
        self.path = path
        self.retry_after = retry_after

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return kind_for_status(self.status)


class InvalidResponseError(ExchangeError):
    """2xx response whose body could not be parsed into the expected shape."""

    kind = ErrorKind.UNKNOWN_UPSTREAM_ERROR


class CredentialsRequiredError(ExchangeError):
    """A private operation was called on a client built without credentials."""

    kind = ErrorKind.INVALID_CREDENTIALS


class InvalidRequestError(ExchangeError, ValueError):
    """Caller-supplied parameters failed validation before any I/O."""

    kind = ErrorKind.INVALID_REQUEST


class CircuitOpenError(ExchangeError):
    """Raised by the circuit breaker instead of invoking the operation."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, name: str, retry_in: float = 0.0):
        super().__init__(f"Circuit '{name}' is open; retry in {retry_in:.1f}s")
        self.name = name
        self.retry_in = retry_in


class RetriesExhaustedError(ExchangeError):
    """All attempts of a retry policy failed with retryable errors."""

    kind = ErrorKind.RETRIES_EXHAUSTED

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}", cause=last_error)
        self.attempts = attempts
        self.last_error = last_error


def kind_for_status(status: int) -> ErrorKind:
    if status == 401:
        return ErrorKind.INVALID_CREDENTIALS
    if status == 403:
        return ErrorKind.INSUFFICIENT_PERMISSIONS
    if status == 404:
        return ErrorKind.ENDPOINT_NOT_FOUND
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (400, 422):
        return ErrorKind.INVALID_REQUEST
    if status >= 500:
        return ErrorKind.UPSTREAM_UNAVAILABLE
    return ErrorKind.UNKNOWN_UPSTREAM_ERROR


def is_retryable(error: BaseException) -> bool:
    """Transient failures worth another attempt: network, 5xx and 429."""
    if isinstance(error, TransportError):
        return True
    if isinstance(error, UpstreamHTTPError):
        return error.status == 429 or error.status >= 500
    return False


def is_outage(error: BaseException) -> bool:
    """Failures that indicate the exchange itself is unhealthy.

    Used by the circuit breaker: a 401 or 404 proves the exchange answered.
    """
    if isinstance(error, RetriesExhaustedError):
        return True
    return is_retryable(error)


def classify(error: BaseException) -> ErrorKind:
    if isinstance(error, ExchangeError):
        return error.kind
    return ErrorKind.UNKNOWN_UPSTREAM_ERROR
