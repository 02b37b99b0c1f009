"""
Error Handlers

Every error leaves the API as ``{"error": {"code", "message", "details"}}``.
"""
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ...domain.errors import DomainError, LockUnavailableError
from ...utils.logger import get_correlation_id, get_logger

logger = get_logger(__name__)


def _headers() -> dict:
    return {"X-Correlation-Id": get_correlation_id() or ""}


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """
    Handle domain errors raised by services and the engine.

    Lock timeouts carry a Retry-After hint since the caller may simply retry.
    """
    logger.warning(
        f"Domain error: {exc.error_code} - {exc.message}",
        extra={"error_code": exc.error_code}
    )
    headers = _headers()
    if isinstance(exc, LockUnavailableError):
        headers["Retry-After"] = "1"
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
        headers=headers
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Request body or query did not match the schema"""
    logger.warning(
        f"Validation error on {request.method} {request.url.path}: {exc.errors()}",
        extra={"error_code": "VALIDATION_ERROR"}
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": {"errors": _jsonable_errors(exc)}
            }
        },
        headers=_headers()
    )


def _jsonable_errors(exc: RequestValidationError) -> list:
    # ``ctx`` may hold the raw exception object
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        errors.append(error)
    return errors


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected becomes a 500 with the stack trace in the log"""
    logger.error(f"Unexpected error: {exc}", exc_info=True, extra={"error_code": "INTERNAL_ERROR"})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": {"hint": "Check server logs for details"}
            }
        },
        headers=_headers()
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the application"""
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
