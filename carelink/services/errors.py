"""
Service layer exceptions and error normalization.

Every failure that leaves the request executor is an ApiError. Transport
exceptions and HTTP error responses are folded into that shape here.
"""

from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel

NETWORK_ERROR = "NETWORK_ERROR"
TIMEOUT = "TIMEOUT"
CACHE_MISS = "CACHE_MISS"
UNKNOWN_ERROR = "UNKNOWN_ERROR"
CLIENT_ERROR = "CLIENT_ERROR"
REQUEST_CANCELLED = "REQUEST_CANCELLED"


class ErrorKind(str, Enum):
    """Error taxonomy shared by the executor and the UI layer."""

    NETWORK = "network"  # No response received
    TIMEOUT = "timeout"
    AUTH = "auth"  # 401 / 403
    VALIDATION = "validation"  # 400 / 422
    NOT_FOUND = "notFound"
    SERVER = "server"  # >= 500
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER, ErrorKind.UNKNOWN}
)


def classify(status: int | None, code: str | None = None) -> ErrorKind:
    """Map a status code (and error code) onto an ErrorKind."""
    if code == TIMEOUT:
        return ErrorKind.TIMEOUT
    if not status or code == NETWORK_ERROR:
        return ErrorKind.NETWORK
    if status in (401, 403):
        return ErrorKind.AUTH
    if status in (400, 422):
        return ErrorKind.VALIDATION
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status >= 500:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


class ServiceError(Exception):
    """Base exception for service layer errors."""

    pass


class ApiError(ServiceError):
    """Terminal error surfaced to callers. Never carries partial data."""

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        code: str = UNKNOWN_ERROR,
        kind: ErrorKind | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
        retryable: bool | None = None,
    ):
        self.message = message
        self.status = status
        self.code = code
        self.kind = kind or classify(status, code)
        self.details = details
        self.cause = cause
        self._retryable = retryable
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    @property
    def retryable(self) -> bool:
        """Whether the UI should offer a retry affordance."""
        if self._retryable is not None:
            return self._retryable
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "status": self.status,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return (
            f"ApiError(kind={self.kind.value}, status={self.status}, "
            f"code={self.code}, message={self.message!r})"
        )


class HttpStatusError(ServiceError):
    """Raised by the transport layer for responses with status >= 400."""

    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"HTTP {response.status_code} for {response.request.url}")


def cancelled_error(reason: str = "Request was cancelled") -> ApiError:
    return ApiError(
        reason,
        code=REQUEST_CANCELLED,
        kind=ErrorKind.UNKNOWN,
        retryable=False,
    )


def network_error(message: str = "No connection to the server") -> ApiError:
    return ApiError(message, code=NETWORK_ERROR, kind=ErrorKind.NETWORK)


def _parse_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def error_from_response(response: httpx.Response, cause: Exception | None = None) -> ApiError:
    """Build an ApiError from an HTTP error response."""
    status = response.status_code
    body = _parse_body(response)

    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or f"HTTP Error {status}"
        code = body.get("code") or f"ERROR_{status}"
        details = body.get("details") or body.get("errors") or body
        if not isinstance(details, dict):
            details = {"errors": details}
    else:
        message = f"HTTP Error {status}"
        code = f"HTTP_{status}"
        details = None

    return ApiError(
        str(message),
        status=status,
        code=str(code),
        details=details,
        cause=cause,
    )


def normalize_error(error: object) -> ApiError:
    """Fold any failure into the ApiError shape."""
    if isinstance(error, ApiError):
        return error

    if isinstance(error, HttpStatusError):
        return error_from_response(error.response, cause=error)

    if isinstance(error, httpx.HTTPStatusError):
        return error_from_response(error.response, cause=error)

    if isinstance(error, httpx.TimeoutException):
        return ApiError(
            "The server did not respond in time",
            code=TIMEOUT,
            kind=ErrorKind.TIMEOUT,
            cause=error,
        )

    if isinstance(error, httpx.TransportError):
        return ApiError(
            "The server is not responding or the network is unavailable",
            code=NETWORK_ERROR,
            kind=ErrorKind.NETWORK,
            cause=error,
        )

    if isinstance(error, Exception):
        return ApiError(
            str(error) or type(error).__name__,
            code=CLIENT_ERROR,
            kind=ErrorKind.UNKNOWN,
            cause=error,
        )

    return ApiError("An unknown error occurred", status=500, code=UNKNOWN_ERROR)


class FormattedError(BaseModel):
    """Error prepared for display."""

    type: ErrorKind
    title: str
    message: str
    code: str
    details: dict[str, Any] | None = None
    retry: bool


_TITLES = {
    ErrorKind.NETWORK: "Connection problem",
    ErrorKind.TIMEOUT: "Request timed out",
    ErrorKind.AUTH: "Authorization error",
    ErrorKind.VALIDATION: "Invalid data",
    ErrorKind.NOT_FOUND: "Not found",
    ErrorKind.SERVER: "Server error",
    ErrorKind.UNKNOWN: "Something went wrong",
}


def format_error(error: ApiError) -> FormattedError:
    return FormattedError(
        type=error.kind,
        title=_TITLES[error.kind],
        message=error.message,
        code=error.code,
        details=error.details,
        retry=error.retryable,
    )
