"""
Application errors and their HTTP rendering.

Expected domain outcomes (membership statuses, taxonomy results, quota
decisions) are values, not exceptions. The classes below are for what the
HTTP edge must refuse: bad input, missing or forbidden resources, exhausted
quota, and store failures. Every error response has the shape
{"error": {"code", "message", "request_id"}, "detail"} plus an x-request-id header.
"""

import logging
import builtins
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from promptpro.core.logging import get_request_id


logger = logging.getLogger("promptpro.errors")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None,
                 request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class QuotaExceededError(AppError):
    """Plan limit reached for the personal or team prompt counter."""
    code = "quota_exceeded"
    status_code = 403


class StoreError(AppError):
    """The document store could not serve a whole operation."""
    code = "store_unavailable"
    status_code = 503


class VersionConflictError(StoreError):
    """Optimistic write lost against a concurrent writer."""
    code = "version_conflict"
    status_code = 409


# HTTPException status -> error code
_HTTP_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
}


def _request_id_for(request: Request, preferred: Optional[str] = None) -> str:
    return preferred or getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(request: Request, status_code: int, code: str, message: str,
                   request_id: Optional[str] = None) -> JSONResponse:
    rid = _request_id_for(request, request_id)
    response = JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "request_id": rid}, "detail": message},
    )
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(level, "app.error", extra={"error_code": exc.code, "status": exc.status_code,
                                          "error_message": exc.message})
    return error_response(request, exc.status_code, exc.code, exc.message, exc.request_id)


async def http_error_handler(request: Request, exc: HTTPException):
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"error_code": code, "status": exc.status_code})
    return error_response(request, exc.status_code, code, str(exc.detail or "HTTP error"))


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled.exception", exc_info=exc, extra={"error_code": "internal_error"})
    return error_response(request, 500, "internal_error", "Unexpected error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
