"""
Custom exceptions and error handlers.

Every failure reaching the public API is one of a few kinds:
NotFound (document or session missing/expired), Unauthorized (email, code
or grant mismatch), UpstreamFailure (store, mail or signing provider),
plus validation, conflict and rate limit errors. Raw provider errors are
logged, never rendered.
"""
import logging
from typing import Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.config import get_cors_origins
from app.utils.logging import get_request_id

logger = logging.getLogger(__name__)


def _add_cors_headers(response: JSONResponse, request: Request) -> JSONResponse:
    """Add CORS headers to error response for allowed origins."""
    origin = request.headers.get("origin")
    if origin and origin in get_cors_origins():
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Vary"] = "Origin"
    return response


class AppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message)


class NotFoundError(AppException):
    """Document or access session missing or expired."""

    def __init__(self, message: str, code: str = "NOT_FOUND"):
        super().__init__(
            status_code=404,
            code=code,
            message=message,
        )


class UnauthorizedError(AppException):
    """Email, code or access grant does not match."""

    def __init__(self, message: str, code: str = "UNAUTHORIZED", details: Optional[dict] = None):
        super().__init__(
            status_code=401,
            code=code,
            message=message,
            details=details,
        )


class UpstreamFailure(AppException):
    """Store, mail or signing provider failed; the attempt left no partial state."""

    def __init__(self, message: str = "Something went wrong. Please try again."):
        super().__init__(
            status_code=502,
            code="UPSTREAM_FAILURE",
            message=message,
        )


class AlreadySignedError(AppException):
    """The document has already been countersigned."""

    def __init__(self, document_id: str):
        super().__init__(
            status_code=409,
            code="ALREADY_SIGNED",
            message="This document has already been signed.",
            details={"document_id": document_id},
        )


class ValidationException(AppException):
    """Validation error."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            status_code=400,
            code="VALIDATION_ERROR",
            message=message,
            details=details,
        )


class RateLimitException(AppException):
    """Rate limit exceeded."""

    def __init__(self, retry_after: int, message: Optional[str] = None):
        super().__init__(
            status_code=429,
            code="RATE_LIMIT_EXCEEDED",
            message=message or f"Too many requests. Please try again in {retry_after} seconds.",
            details={"retry_after": retry_after},
        )


def build_error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """Build standardized error response."""
    response = {
        "error": True,
        "code": code,
        "message": message,
        "request_id": get_request_id(),
    }
    if details:
        response["details"] = details
    return response


async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handle application exceptions."""
    logger.warning(f"AppException: {exc.code} - {exc.message}")
    response = JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(
            exc.status_code,
            exc.code,
            exc.message,
            exc.details,
        ),
    )
    if isinstance(exc, RateLimitException):
        response.headers["Retry-After"] = str(exc.details["retry_after"])
    return _add_cors_headers(response, request)


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.warning(f"HTTPException: {exc.status_code} - {exc.detail}")

    if isinstance(exc.detail, dict):
        code = exc.detail.get("code", "HTTP_ERROR")
        message = exc.detail.get("message", str(exc.detail))
    else:
        code = "HTTP_ERROR"
        message = str(exc.detail)

    response = JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(exc.status_code, code, message),
    )
    return _add_cors_headers(response, request)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle request body validation errors."""
    logger.warning(f"ValidationError: {exc.errors()}")

    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        })

    response = JSONResponse(
        status_code=422,
        content=build_error_response(
            422,
            "VALIDATION_ERROR",
            "Request validation failed",
            {"errors": errors},
        ),
    )
    return _add_cors_headers(response, request)


async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")

    response = JSONResponse(
        status_code=500,
        content=build_error_response(
            500,
            "INTERNAL_ERROR",
            "An unexpected error occurred",
        ),
    )
    return _add_cors_headers(response, request)
