"""API error type and the exception handlers that render it."""
from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apps.common.logging import get_logger
from services.errors.taxonomy import ErrorCode, is_retryable

logger = get_logger(__name__)


_DEFAULT_MESSAGES = {
    ErrorCode.MISSING_USER_ID: "x-user-id header is required",
    ErrorCode.MISSING_IMAGE: "Image file is required",
    ErrorCode.INVALID_IMAGE: "Invalid image file",
    ErrorCode.FILE_TOO_LARGE: "File size exceeds limit",
    ErrorCode.MAINTENANCE_MODE: "Service is under maintenance, please try again later",
    ErrorCode.JOB_NOT_FOUND: "Job not found",
    ErrorCode.INVALID_CURSOR: "cursor must be an ISO-8601 timestamp",
    ErrorCode.NOT_FOUND: "Endpoint not found",
    ErrorCode.METHOD_NOT_ALLOWED: "Method not allowed for this endpoint",
    ErrorCode.RATE_LIMIT_EXCEEDED: "Too many requests, please try again later.",
    ErrorCode.SERVER_ERROR: "Internal server error",
}


class ApiError(Exception):
    """Raised by route handlers; rendered as {"error", "message", "retryable"}."""

    def __init__(self, code: ErrorCode, status_code: int, message: Optional[str] = None) -> None:
        self.code = code
        self.status_code = status_code
        self.message = message or _DEFAULT_MESSAGES.get(code, code.value)
        super().__init__(self.message)


def error_body(code: ErrorCode, message: str) -> dict:
    return {"error": code.value, "message": message, "retryable": is_retryable(code.value)}


def install_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            code = ErrorCode.NOT_FOUND
            message = _DEFAULT_MESSAGES[code]
        elif exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            code = ErrorCode.METHOD_NOT_ALLOWED
            message = _DEFAULT_MESSAGES[code]
        else:
            code = ErrorCode.SERVER_ERROR if exc.status_code >= 500 else ErrorCode.VALIDATION_ERROR
            message = str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content=error_body(code, message), headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("request_validation_failed", path=request.url.path, errors=str(exc.errors())[:500])
        body = error_body(ErrorCode.VALIDATION_ERROR, "Request validation failed")
        body["details"] = jsonable_errors(exc)
        return JSONResponse(status_code=422, content=body)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path, method=request.method)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body(ErrorCode.SERVER_ERROR, _DEFAULT_MESSAGES[ErrorCode.SERVER_ERROR]),
        )


def jsonable_errors(exc: RequestValidationError) -> list:
    out = []
    for e in exc.errors():
        out.append({"loc": [str(p) for p in e.get("loc", ())], "msg": str(e.get("msg", "")), "type": e.get("type")})
    return out
