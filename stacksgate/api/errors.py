"""Exception handlers: engine errors and HTTP errors become JSON with a ``debug_id``.

The ``debug_id`` ties the client-visible body to the server-side log line;
internal details of unexpected errors are never returned.
"""

import uuid

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from stacksgate.core.exceptions import (
    ChainUnavailable,
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    StacksGateError,
    ValidationError,
)
from stacksgate.middleware.correlation import get_correlation_id

logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES: dict[type[StacksGateError], int] = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidStateError: 409,
    ChainUnavailable: 503,
    ConfigurationError: 503,
}


def status_code_for(exc: StacksGateError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def _respond(request: Request, status_code: int, content: dict, event: str, level: str = "error", **fields):
    debug_id = str(uuid.uuid4())
    getattr(logger, level)(
        event,
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        **fields,
    )
    return JSONResponse(status_code=status_code, content={**content, "debug_id": debug_id})


async def stacksgate_exception_handler(request: Request, exc: StacksGateError) -> JSONResponse:
    status_code = status_code_for(exc)
    return _respond(
        request,
        status_code,
        {"detail": str(exc), "type": type(exc).__name__},
        "stacksgate_error",
        level="warning" if status_code < 500 else "error",
        error=str(exc),
        error_type=type(exc).__name__,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _respond(request, exc.status_code, {"detail": exc.detail}, "http_exception", detail=exc.detail)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return _respond(
        request,
        500,
        {"detail": "Internal server error"},
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StacksGateError, stacksgate_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
