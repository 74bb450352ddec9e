"""Error taxonomy and normalization for the sync layer.

Every failure that reaches feature code is an :class:`ApiError` (or subclass),
whatever transport produced it. Callers branch on the subclass or on
``status``/``is_retryable``, never on httpx exception types.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

import httpx

RETRYABLE_STATUSES: FrozenSet[int] = frozenset({408, 429, *range(500, 600)})

RATE_LIMIT_MARKERS = ("rate limit", "too many requests")


class ErrorKind(str, Enum):
    NETWORK = "network"
    AUTH_EXPIRED = "auth_expired"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    VALIDATION_FAILED = "validation_failed"
    SERVER_FAULT = "server_fault"
    STREAM_FRAMING = "stream_framing"
    STREAM_ERROR = "stream_error"
    UNKNOWN = "unknown"


class ApiError(Exception):
    """Normalized client-side error with status/kind mapping."""

    kind = ErrorKind.UNKNOWN
    default_message = "An error occurred. Please try again."

    def __init__(
        self,
        message: Optional[str] = None,
        status: int = 0,
        errors: Optional[List[Any]] = None,
        data: Any = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.status = status
        self.errors = list(errors or [])
        self.data = data

    @property
    def is_retryable(self) -> bool:
        return self.status in RETRYABLE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "status": self.status,
            "errors": self.errors,
            "isRetryable": self.is_retryable,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status}, message={self.message!r})"


class NetworkFailure(ApiError):
    """No response reached the caller (connection error, timeout, aborted read)."""

    kind = ErrorKind.NETWORK
    default_message = "Network error. Please check your connection."

    def __init__(self, message: Optional[str] = None, is_timeout: bool = False) -> None:
        super().__init__(message, status=0)
        self.is_timeout = is_timeout

    @property
    def is_retryable(self) -> bool:
        return True


class AuthExpired(ApiError):
    kind = ErrorKind.AUTH_EXPIRED
    default_message = "Your session has expired. Please log in again."


class SessionExpired(AuthExpired):
    """Token refresh failed; credentials were cleared and the user is signed out."""


class Forbidden(ApiError):
    kind = ErrorKind.FORBIDDEN
    default_message = "You don't have permission to perform this action."


class NotFound(ApiError):
    kind = ErrorKind.NOT_FOUND
    default_message = "The requested resource was not found."


class RateLimited(ApiError):
    kind = ErrorKind.RATE_LIMITED
    default_message = "Too many requests. Please try again later."


class ServiceUnavailable(ApiError):
    kind = ErrorKind.SERVICE_UNAVAILABLE
    default_message = (
        "Service temporarily unavailable. The server may be starting up. "
        "Please try again in a moment."
    )


class ValidationFailed(ApiError):
    kind = ErrorKind.VALIDATION_FAILED


class ServerFault(ApiError):
    kind = ErrorKind.SERVER_FAULT
    default_message = "Server error. Our team has been notified. Please try again in a moment."


class StreamFramingFailure(ApiError):
    """Malformed event-stream framing (e.g. a data block that is not JSON)."""

    kind = ErrorKind.STREAM_FRAMING
    default_message = "Received a malformed event from the server."

    def __init__(self, message: Optional[str] = None, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class StreamError(ApiError):
    """The server reported a failure through an ``error`` event."""

    kind = ErrorKind.STREAM_ERROR
    default_message = "Unknown error"


_STATUS_CLASSES = {
    401: AuthExpired,
    403: Forbidden,
    404: NotFound,
    429: RateLimited,
    503: ServiceUnavailable,
}


def error_class_for_status(status: int) -> type:
    if status in _STATUS_CLASSES:
        return _STATUS_CLASSES[status]
    if status >= 500:
        return ServerFault
    if 400 <= status < 500:
        return ValidationFailed
    return ApiError


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


def _body_message(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    for field in ("message", "error"):
        value = body.get(field)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, dict) and isinstance(value.get("message"), str):
            return value["message"]
    return None


def is_rate_limit_response(status: int, body: Any) -> bool:
    """429, or a body whose ``error``/``message`` text mentions rate limiting."""
    if status == 429:
        return True
    text = (_body_message(body) or "").lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def error_from_response(response: httpx.Response) -> ApiError:
    """Map an error-status response to the matching :class:`ApiError` subclass."""
    status = response.status_code
    body = _response_body(response)
    message = _body_message(body)
    errors: List[Any] = []
    data = None
    if isinstance(body, dict):
        raw_errors = body.get("errors")
        if isinstance(raw_errors, list):
            errors = raw_errors
        data = body.get("data")

    if status == 429 or (status < 500 and status not in _STATUS_CLASSES and is_rate_limit_response(status, body)):
        cls = RateLimited
    else:
        cls = error_class_for_status(status)
    if cls is ValidationFailed and not message:
        message = ApiError.default_message
    return cls(message, status=status, errors=errors, data=data)


def response_is_rate_limited(response: httpx.Response) -> bool:
    """True when the status or the body text signals rate limiting, whatever the status."""
    return is_rate_limit_response(response.status_code, _response_body(response))


def timeout_failure() -> NetworkFailure:
    return NetworkFailure(
        "Request timed out. The server may be slow to respond. Please try again.",
        is_timeout=True,
    )


def error_from_transport(exc: httpx.TransportError) -> NetworkFailure:
    if isinstance(exc, httpx.TimeoutException):
        return timeout_failure()
    return NetworkFailure(f"Network error. Please check your connection. ({type(exc).__name__})")


def normalize_error(exc: Exception) -> ApiError:
    """Coerce any exception into the structured shape handed to callers."""
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return error_from_response(exc.response)
    if isinstance(exc, httpx.TransportError):
        return error_from_transport(exc)
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return NetworkFailure(is_timeout=isinstance(exc, TimeoutError))
    return ApiError(str(exc) or None)
