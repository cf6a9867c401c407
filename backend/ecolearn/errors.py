"""Domain exceptions and the FastAPI handlers that render them.

Services raise the exceptions below; `register_exception_handlers`
turns them (and FastAPI's own HTTP/validation errors) into the
`{"success": false, "message": ...}` envelope the client expects.
"""

import logging
from typing import Any, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("ecolearn.api")


class EcoLearnError(Exception):
    """Base class for errors that map onto an HTTP status code."""
    status_code = 500

    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        self.message = message
        self.errors = errors
        super().__init__(message)


class ValidationFailed(EcoLearnError):
    status_code = 400


class Conflict(EcoLearnError):
    """Duplicate submission/attempt or a forbidden self-modification."""
    status_code = 400


class AuthError(EcoLearnError):
    status_code = 401


class Forbidden(EcoLearnError):
    status_code = 403


class NotFound(EcoLearnError):
    status_code = 404


class RateLimited(EcoLearnError):
    status_code = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


def error_response(status_code: int, message: str, errors: Optional[List[Any]] = None, headers=None) -> JSONResponse:
    body = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def ecolearn_error_handler(request: Request, exc: EcoLearnError) -> JSONResponse:
    logger.warning("request_rejected %s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return error_response(exc.status_code, exc.message, exc.errors, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 404 and message == "Not Found":
        message = "Route not found"
    return error_response(exc.status_code, message, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "form")]
        errors.append({"field": ".".join(loc), "message": err.get("msg", "invalid value")})
    return error_response(400, "Validation errors", errors)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error %s %s", request.method, request.url.path)
    return error_response(500, "Server error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EcoLearnError, ecolearn_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
