import asyncio
import uuid
from datetime import UTC, datetime
from typing import Any

import httpx
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from analysis_worker.config.logging import get_logger

logger = get_logger(__name__)


class AnalysisWorkerException(Exception):
    """Base exception for the analysis worker.

    `error_code` identifies the failure class; `retryable` tells the
    dead-letter router whether redelivering the message can help.
    """

    error_code = "INTERNAL_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AnalysisWorkerException):
    """Raised when a job message or payload is malformed."""

    error_code = "VALIDATION_ERROR"
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class TransientNetworkError(AnalysisWorkerException):
    """Connection reset, DNS failure or timeout talking to a dependency."""

    error_code = "TRANSIENT_NETWORK_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE, details)


class RateLimitedError(AnalysisWorkerException):
    """Raised when an admission or provider bucket has no tokens left."""

    error_code = "RATE_LIMIT_ERROR"

    def __init__(self, scope: str, retry_after_s: float, message: str | None = None):
        self.scope = scope
        self.retry_after_s = retry_after_s
        super().__init__(
            message or f"Rate limit exceeded: {scope}",
            status.HTTP_429_TOO_MANY_REQUESTS,
            {"scope": scope, "retry_after_s": round(retry_after_s, 3)},
        )


class DuplicateJobError(AnalysisWorkerException):
    """Raised when identical content is already being processed."""

    error_code = "DUPLICATE_JOB_ERROR"
    retryable = False

    def __init__(self, original_job_id: str, reason: str = "CURRENTLY_PROCESSING"):
        self.original_job_id = original_job_id
        self.reason = reason
        super().__init__(
            f"Duplicate job detected: {reason} (original job {original_job_id})",
            status.HTTP_409_CONFLICT,
            {"original_job_id": original_job_id, "reason": reason},
        )


class DownstreamUnavailableError(AnalysisWorkerException):
    """Raised locally while the circuit breaker is open. No request was sent."""

    error_code = "DOWNSTREAM_UNAVAILABLE"

    def __init__(self, dependency: str, retry_after_s: float):
        self.dependency = dependency
        self.retry_after_s = retry_after_s
        super().__init__(
            f"{dependency} is unavailable (circuit open)",
            status.HTTP_503_SERVICE_UNAVAILABLE,
            {"dependency": dependency, "retry_after_s": round(retry_after_s, 3)},
        )


class DownstreamError(AnalysisWorkerException):
    """Non-success HTTP response from a dependency."""

    error_code = "DOWNSTREAM_ERROR"

    def __init__(self, dependency: str, status_code: int, message: str):
        self.dependency = dependency
        self.response_status = status_code
        self.retryable = status_code >= 500 or status_code == 429
        super().__init__(
            message,
            status.HTTP_502_BAD_GATEWAY,
            {"dependency": dependency, "response_status": status_code},
        )


class ProcessingTimeoutError(AnalysisWorkerException):
    """The whole pipeline exceeded its wall-clock budget."""

    error_code = "PROCESSING_TIMEOUT"
    retryable = False

    def __init__(self, job_id: str, timeout_s: float):
        self.job_id = job_id
        self.timeout_s = timeout_s
        super().__init__(
            f"Assessment processing timed out after {timeout_s:g}s",
            status.HTTP_504_GATEWAY_TIMEOUT,
            {"job_id": job_id, "timeout_s": timeout_s},
        )


class InferenceProviderError(AnalysisWorkerException):
    """The paid provider failed. Never redelivered, to avoid repeat billing."""

    error_code = "INFERENCE_PROVIDER_ERROR"
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_502_BAD_GATEWAY, details)


class InternalError(AnalysisWorkerException):
    """Unanticipated failure; retried a bounded number of times."""

    error_code = "INTERNAL_ERROR"


def is_retryable_error(exc: BaseException) -> bool:
    """Client-level classification used by the resilient client."""
    if isinstance(exc, DownstreamUnavailableError):
        return False
    if isinstance(exc, AnalysisWorkerException):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code >= 500 or code == 429
    if isinstance(
        exc,
        (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError),
    ):
        return True
    if isinstance(exc, (ConnectionError, asyncio.TimeoutError)):
        return True
    return False


def classify_error(exc: BaseException) -> AnalysisWorkerException:
    """Map any exception onto the worker's error taxonomy."""
    if isinstance(exc, AnalysisWorkerException):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return DownstreamError(
            str(exc.request.url.host), exc.response.status_code, str(exc)
        )
    if isinstance(exc, (httpx.TransportError, ConnectionError, asyncio.TimeoutError)):
        return TransientNetworkError(str(exc) or exc.__class__.__name__)
    return InternalError(str(exc) or exc.__class__.__name__)


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


async def analysis_worker_exception_handler(
    request: Request, exc: AnalysisWorkerException
) -> JSONResponse:
    """Handle analysis worker specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=str(exc.detail),
            request_id=request_id,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Internal server error",
            request_id=request_id,
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        from analysis_worker.config.logging import add_request_context

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        return response
