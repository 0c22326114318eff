from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from portier_broker.api.schemas import Envelope, ErrorBody
from portier_broker.logging import get_logger, sanitize_error_message
from portier_broker.service.errors import DispatchError, RateLimitedError, ServiceError
from portier_broker.storage.errors import StoreError

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    503: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Create an error response envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=sanitize_error_message(exc.message),
            error_type=type(exc).__name__,
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            # Internal detail stays in the log
            return _error_response(exc.status_code, _public_message(exc), code=exc.error_code)
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code, headers=headers
        )

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            error=sanitize_error_message(exc.message),
        )
        return _error_response(503, "service temporarily unavailable", code="server_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
        logger.warning("request_validation_error", path=request.url.path, fields=fields)
        return _error_response(400, "invalid request", {"fields": fields}, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")


def _public_message(exc: ServiceError) -> str:
    if isinstance(exc, DispatchError):
        return exc.message
    return "internal server error"
