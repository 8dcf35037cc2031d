from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from dancestudio.logging import get_logger
from dancestudio.service.errors import ServiceError
from dancestudio.storage.errors import ConstraintViolation, PersistenceError

logger = get_logger(__name__)

INTERNAL_ERROR = "Internal server error"


def error_response(
    status_code: int, message: str, details: dict | None = None
) -> JSONResponse:
    """Error body shared by every route: ``{success: false, error, ...details}``."""
    content = {"success": False, "error": message}
    if details:
        content.update(details)
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage and framework errors onto the JSON error body."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, exc.message)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(exc.status_code, exc.message, exc.detail)

    @app.exception_handler(PersistenceError)
    async def handle_persistence_error(request: Request, exc: PersistenceError):
        logger.exception(
            "persistence_error",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            operation=exc.operation,
            error=exc.message,
        )
        return error_response(500, INTERNAL_ERROR)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(errors),
        )
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:])
        message = first.get("msg", "Invalid request")
        return error_response(400, f"{field}: {message}" if field else message)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=exc.detail,
            )
        message = "Method not allowed" if exc.status_code == 405 else str(exc.detail)
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response(500, INTERNAL_ERROR)
