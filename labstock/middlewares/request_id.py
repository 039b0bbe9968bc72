from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
principal_ctx_var: ContextVar[str | None] = ContextVar("principal_id", default=None)
actor_role_ctx_var: ContextVar[str | None] = ContextVar("actor_role", default=None)
logger = logging.getLogger("labstock.request")

REQUEST_ID_HEADER = "X-Request-ID"


@contextmanager
def bound_request(request_id: str) -> Iterator[None]:
    """Bind ``request_id`` and clear the caller identity for one request."""

    tokens = (
        (request_id_ctx_var, request_id_ctx_var.set(request_id)),
        (principal_ctx_var, principal_ctx_var.set(None)),
        (actor_role_ctx_var, actor_role_ctx_var.set(None)),
    )
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate each stock request with an id and log who made it."""

    def __init__(self, app, header_name: str = REQUEST_ID_HEADER) -> None:  # type: ignore[override]
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(self.header_name) or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        with bound_request(request_id):
            response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers[self.header_name] = request_id

        data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": elapsed_ms,
            "principal": getattr(request.state, "principal", None),
        }
        # 5xx answers are the ones operators page on
        level = logging.ERROR if response.status_code >= 500 else logging.INFO
        logger.log(level, "request.completed", extra={"extra_data": data})
        return response
