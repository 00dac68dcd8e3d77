from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, Field


class PipelineError(RuntimeError):
    """Base class for failures raised inside the reply pipeline."""

    retryable: bool = True


class LockLostError(PipelineError):
    """
    The worker no longer owns the session lease it acquired.

    Raised right before a side effect (persisting a result) so the write is
    skipped; usually means the lease is shorter than the external call.
    """

    def __init__(self, session_id: str, owner_id: str):
        self.session_id = session_id
        self.owner_id = owner_id
        super().__init__(f"lost lease on session {session_id} (owner={owner_id})")


class StoreUnavailableError(PipelineError):
    """Key/value store or queue broker could not be reached."""


class UpstreamServiceError(PipelineError):
    """The external completion service returned an error or did not answer."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = True,
        retry_after: float | None = None,
    ):
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(message)


class UpstreamTimeoutError(UpstreamServiceError):
    pass


class UpstreamRateLimitedError(UpstreamServiceError):
    pass


class UpstreamUnavailableError(UpstreamServiceError):
    pass


class CircuitOpenError(PipelineError):
    """Raised instead of calling a dependency whose circuit is open."""

    def __init__(self, operation: str, *, retry_after: float = 0.0):
        self.operation = operation
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"circuit '{operation}' is open; retry after {self.retry_after:.1f}s"
        )


class ErrorResponse(BaseModel):
    """
    Standard error payload used by the operator API:
    {"error": "not_found", "message": "...", "code": 404, "details": {...}}
    """

    error: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    code: int = Field(..., description="HTTP status code for this error")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


def http_error(
    status_code: int,
    *,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    payload = ErrorResponse(error=error, message=message, code=status_code, details=details)
    return HTTPException(status_code=status_code, detail=payload.model_dump())


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_400_BAD_REQUEST, error="bad_request", message=message, details=details
    )


def not_found(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_404_NOT_FOUND, error="not_found", message=message, details=details
    )


def service_unavailable(
    message: str, *, details: Optional[Dict[str, Any]] = None
) -> HTTPException:
    return http_error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        error="service_unavailable",
        message=message,
        details=details,
    )


__all__ = [
    "CircuitOpenError",
    "ErrorResponse",
    "LockLostError",
    "PipelineError",
    "StoreUnavailableError",
    "UpstreamRateLimitedError",
    "UpstreamServiceError",
    "UpstreamTimeoutError",
    "UpstreamUnavailableError",
    "bad_request",
    "http_error",
    "not_found",
    "service_unavailable",
]
