"""
Application errors and their HTTP rendering.

Every error response has the shape
    {"error": {"code", "message", "request_id"}, "detail": message}
and carries the x-request-id header.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.requests import Request

from loujo.core.logging import get_request_id


logger = logging.getLogger("loujo")


class AppError(Exception):
    """Base error; subclasses pick the code and HTTP status."""
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.request_id = request_id


class AuthenticationError(AppError):
    code = "unauthorized"
    status_code = 401


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class NotSubscribedError(AppError):
    """Plan-gated action attempted without an active plan."""
    code = "not_subscribed"
    status_code = 403


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 429


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def _render(status: int, code: str, message: str, rid: str) -> JSONResponse:
    response = JSONResponse(
        status_code=status,
        content={"error": {"code": code, "message": message, "request_id": rid}, "detail": message},
    )
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        f"{exc.code}: {exc.message}",
        extra={"request_id": rid, "error_code": exc.code, "status": exc.status_code},
    )
    return _render(exc.status_code, exc.code, exc.message, rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _render(exc.status_code, code, str(exc.detail or "HTTP error"), rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error("unhandled exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _render(500, "internal_error", "Unexpected error", rid)
