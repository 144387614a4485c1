import logging
import time
from typing import Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from promptpro.core.logging import latency_bucket_ms, request_id_ctx_var

# Client-supplied ids longer than this are replaced
MAX_REQUEST_ID_LENGTH = 128


def _accept_request_id(incoming: Optional[str]) -> str:
    if incoming:
        incoming = incoming.strip()
        if 0 < len(incoming) <= MAX_REQUEST_ID_LENGTH:
            return incoming
    return str(uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request_id for the request (context + response header) and log completion."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = _accept_request_id(request.headers.get(self.header_name))
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid
        logging.getLogger("promptpro").info(
            "request.complete",
            extra={
                "request_id": rid,
                "path": request.url.path,
                "method": request.method,
                "status": response.status_code,
                "actor_id": request.headers.get("x-user-id"),
                "latency_bucket": latency_bucket_ms(duration_ms),
            },
        )
        return response
