from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from blockgate.api.schemas import ErrorBody
from blockgate.logging import get_logger
from blockgate.service.errors import RateLimitedError, ServiceError
from blockgate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "INVALID_PARAMS",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    504: "TIMEOUT",
}

_PYDANTIC_VALUE_ERROR_PREFIX = "Value error, "
_VALIDATION_SOURCES = {"body", "query", "path", "header"}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_ERROR")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    *,
    retry_after: Optional[int] = None,
) -> JSONResponse:
    """Error envelope ``{error, code, details?, retryAfter?}``."""
    body = ErrorBody(
        error=message,
        code=code or _error_code_for_status(status_code),
        details=details or None,
        retryAfter=retry_after,
    )
    headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
    return JSONResponse(status_code=status_code, content=body.to_content(), headers=headers)


def field_errors_from(errors: List[Dict[str, Any]]) -> Dict[str, List[str]]:
    """Group validation messages by top-level field name."""
    grouped: Dict[str, List[str]] = {}
    for error in errors:
        loc = [part for part in error.get("loc", ()) if part not in _VALIDATION_SOURCES]
        field = str(loc[0]) if loc else "body"
        message = str(error.get("msg", "Invalid value"))
        if message.startswith(_PYDANTIC_VALUE_ERROR_PREFIX):
            message = message[len(_PYDANTIC_VALUE_ERROR_PREFIX):]
        grouped.setdefault(field, []).append(message)
    return grouped


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error envelope for domain, storage and validation errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="CONFLICT")

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
        retry_after = exc.retry_after_seconds if isinstance(exc, RateLimitedError) else None
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, retry_after=retry_after
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        field_errors = field_errors_from(list(exc.errors()))
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=sorted(field_errors),
        )
        return _error_response(400, "Validation failed", field_errors, code="INVALID_PARAMS")

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
            error=str(exc),
        )
        return _error_response(500, "Internal server error", code="INTERNAL_ERROR")
