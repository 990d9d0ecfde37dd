from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from showauth.api.schemas import Envelope
from showauth.logging import get_correlation_id, get_logger, sanitize_error_message, set_correlation_id
from showauth.service.errors import AuthError, ServiceError
from showauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
INTERNAL_ERROR_MESSAGE = "internal server error"

_STATUS_TO_CODE = {
    400: "VALIDATION_FAILED",
    401: "UNAUTHORIZED",
    403: "UNAUTHORIZED",
    404: "VALIDATION_FAILED",
    409: "VALIDATION_FAILED",
    422: "VALIDATION_FAILED",
    429: "SERVICE_UNAVAILABLE",
    503: "SERVICE_UNAVAILABLE",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "SERVICE_UNAVAILABLE")


def envelope_response(
    status_code: int,
    *,
    success: bool,
    message: str,
    error_code: Optional[str] = None,
    data: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    envelope = Envelope(
        success=success,
        message=message,
        error_code=error_code,
        request_id=get_correlation_id() or "",
        data=data,
    )
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def error_response(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    data: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return envelope_response(
        status_code,
        success=False,
        message=message,
        error_code=code or _error_code_for_status(status_code),
        data=data,
        headers=headers,
    )


def unhandled_error_response(request: Request, exc: Exception) -> JSONResponse:
    """Log an unexpected failure and answer with a 500 envelope carrying the request id.

    Runs outside the correlation middleware's context when Starlette's
    outermost error handler calls it, so the id is re-bound from the request.
    """
    correlation_id = get_correlation_id() or set_correlation_id(
        getattr(request.state, "correlation_id", None) or request.headers.get(REQUEST_ID_HEADER)
    )
    logger.error(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=sanitize_error_message(str(exc)),
    )
    return error_response(
        500,
        INTERNAL_ERROR_MESSAGE,
        code="SERVICE_UNAVAILABLE",
        headers={REQUEST_ID_HEADER: correlation_id},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the uniform envelope."""

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        logger.info(
            "auth_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            code=exc.code.value,
            error_code=exc.error_code,
        )
        return error_response(
            exc.status_code,
            exc.message,
            code=exc.error_code,
            data=exc.data,
            headers=exc.headers or None,
        )

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
        )
        message = sanitize_error_message(exc.message) if exc.status_code >= 500 else exc.message
        return error_response(
            exc.status_code, message, code=exc.error_code, headers=exc.headers or None
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        code = "USER_EXISTS" if exc.field == "email" else "VALIDATION_FAILED"
        return error_response(409, "Request conflicts with existing data", code=code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            field=field,
            error_count=len(errors),
        )
        return error_response(
            422, f"{field}: {message}" if field else message, code="VALIDATION_FAILED"
        )

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
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        return unhandled_error_response(request, exc)
