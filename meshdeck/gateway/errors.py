"""Closed error taxonomy and result type for Headscale calls.

Every client operation returns a ``GatewayResult``: either a value or a
``GatewayError`` tagged with one ``GatewayErrorKind``. Transport exceptions
are converted at the client boundary and never reach handlers.
"""

import enum
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from fastapi.responses import JSONResponse

T = TypeVar("T")


class GatewayErrorKind(str, enum.Enum):
    TIMEOUT = "UpstreamTimeout"
    UNREACHABLE = "UpstreamUnreachable"
    NOT_FOUND = "UpstreamNotFound"
    REJECTED = "UpstreamRejected"
    FAILED = "UpstreamError"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]

    @property
    def retryable(self) -> bool:
        return self in (GatewayErrorKind.TIMEOUT, GatewayErrorKind.UNREACHABLE)


_HTTP_STATUS = {
    GatewayErrorKind.TIMEOUT: 503,
    GatewayErrorKind.UNREACHABLE: 503,
    GatewayErrorKind.NOT_FOUND: 404,
    GatewayErrorKind.REJECTED: 400,
    GatewayErrorKind.FAILED: 502,
}


@dataclass(frozen=True)
class GatewayError:
    kind: GatewayErrorKind
    message: str
    status_code: Optional[int] = None  # upstream HTTP status, when there was one
    code: Optional[str] = None

    @classmethod
    def from_status(cls, status_code: int, message: str, code: Optional[str] = None) -> "GatewayError":
        if status_code == 404:
            kind = GatewayErrorKind.NOT_FOUND
        elif status_code == 400:
            kind = GatewayErrorKind.REJECTED
        else:
            kind = GatewayErrorKind.FAILED
        return cls(kind=kind, message=message, status_code=status_code, code=code)


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[GatewayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "GatewayResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: GatewayError) -> "GatewayResult[T]":
        return cls(error=error)


def error_body(error: GatewayError, resource: str = "Resource") -> dict:
    """Client-facing body for a gateway error. Upstream details stay in the logs."""
    if error.kind == GatewayErrorKind.TIMEOUT:
        return {"error": "Service temporarily unavailable", "kind": error.kind.value}
    if error.kind == GatewayErrorKind.UNREACHABLE:
        return {"error": "Unable to connect to Headscale", "kind": error.kind.value}
    if error.kind == GatewayErrorKind.NOT_FOUND:
        return {"error": f"{resource} not found", "kind": error.kind.value}
    if error.kind == GatewayErrorKind.REJECTED:
        return {"error": error.message or "Invalid request", "kind": error.kind.value}
    return {"error": "Failed to complete operation", "kind": error.kind.value}


def error_response(error: GatewayError, resource: str = "Resource") -> JSONResponse:
    headers = {"Retry-After": "5"} if error.kind.retryable else None
    return JSONResponse(
        status_code=error.kind.http_status,
        content=error_body(error, resource),
        headers=headers,
    )
