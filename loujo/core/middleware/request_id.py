import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from loujo.core.logging import request_id_ctx_var


REQUEST_ID_HEADER = "x-request-id"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request_id for the request's lifetime and echo it back."""

    async def dispatch(self, request, call_next):
        rid = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = rid
        logging.getLogger("loujo").info(
            f"{request.method} {request.url.path}",
            extra={
                "request_id": rid,
                "status": response.status_code,
                "latency_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return response
