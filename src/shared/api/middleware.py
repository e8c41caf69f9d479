"""
Shared API Middleware
======================

Request tracing middleware and the mapping of application exceptions onto
HTTP responses.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.core import (
    ApplicationException,
    InvalidTransitionException,
    ResourceNotFoundException,
    RuleEvaluationException,
    StorageUnavailableException,
    ValidationException,
    VersionConflictException,
)
from src.shared.infrastructure.logging import get_context_logger

CORRELATION_HEADER = "X-Correlation-ID"


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "unknown")


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with a correlation ID.

    A caller-supplied ``X-Correlation-ID`` is kept so staff UI actions can be
    followed through the service logs; otherwise a fresh one is generated.
    The ID is echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = request.state.correlation_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    One log line when a request starts and one when it ends, both stamped
    with the request's correlation ID.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        log = get_context_logger(__name__, correlation_id=_correlation_id(request))
        started = time.perf_counter()
        request_info = {"method": request.method, "path": request.url.path}

        log.info(
            "Request started",
            extra={**request_info, "client": request.client.host if request.client else None}
        )

        try:
            response = await call_next(request)
        except Exception as e:
            log.error(
                "Request failed",
                extra={
                    **request_info,
                    "error": str(e),
                    "response_time_ms": int((time.perf_counter() - started) * 1000),
                }
            )
            raise

        log.info(
            "Request completed",
            extra={
                **request_info,
                "status_code": response.status_code,
                "response_time_ms": int((time.perf_counter() - started) * 1000),
            }
        )
        return response


# Most specific first; the first isinstance match wins.
EXCEPTION_STATUS_CODES = (
    (InvalidTransitionException, status.HTTP_409_CONFLICT),
    (VersionConflictException, status.HTTP_409_CONFLICT),
    (ResourceNotFoundException, status.HTTP_404_NOT_FOUND),
    # Literal: the status constant for 422 was renamed across Starlette releases.
    (ValidationException, 422),
    (RuleEvaluationException, 422),
    (StorageUnavailableException, status.HTTP_503_SERVICE_UNAVAILABLE),
)


async def application_exception_handler(request: Request, exc: ApplicationException) -> JSONResponse:
    """Map application exceptions onto HTTP status codes."""
    for exc_type, status_code in EXCEPTION_STATUS_CODES:
        if isinstance(exc, exc_type):
            break
    else:
        return await global_exception_handler(request, exc)

    correlation_id = _correlation_id(request)
    get_context_logger(__name__, correlation_id=correlation_id).info(
        "Request rejected",
        extra={"path": request.url.path, "error_type": type(exc).__name__, "status_code": status_code}
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "error_type": type(exc).__name__,
            "details": exc.details,
            "correlation_id": correlation_id,
        }
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Last-resort handler: a 500 with the correlation ID, and the error text
    only in development.
    """
    correlation_id = _correlation_id(request)
    get_context_logger(__name__, correlation_id=correlation_id).error(
        "Unhandled exception",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error_message": str(exc),
        }
    )

    settings = getattr(request.app.state, "settings", None)
    is_dev = getattr(settings, "environment", None) == "development"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "correlation_id": correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "debug_info": str(exc) if is_dev else None,
        }
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
