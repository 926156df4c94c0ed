"""
Request logging and correlation IDs.

Every HTTP request gets a request_id and a correlation_id (taken from the
x-request-id / x-correlation-id headers when the caller sends them) bound
into contextvars, so structlog adds them to each log line. One
request_completed line is written per request with the route template,
status, duration and the signed-in user when there is one.

WebSocket sessions bypass HTTP middleware; the change stream binds its
ids with stream_context().
"""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Mapping

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from subtrack.core.structured_logging import correlation_id_var, request_id_var, user_id_var

logger = logging.getLogger(__name__)

# Polled by load balancers; logged at DEBUG
QUIET_PATHS = frozenset({"/api/health"})


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Bind request/correlation ids and log one line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        corr_id = request.headers.get("x-correlation-id") or uuid.uuid4().hex

        rid_token = request_id_var.set(req_id)
        cid_token = correlation_id_var.set(corr_id)

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            user = getattr(request.state, "user", None)
            logger.log(
                logging.DEBUG if request.url.path in QUIET_PATHS else logging.INFO,
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path_template": _route_template(request),
                    "http.status_code": response.status_code if response else None,
                    "duration_ms": duration_ms,
                    "user_id": user.user_id if user else None,
                },
            )
            request_id_var.reset(rid_token)
            correlation_id_var.reset(cid_token)

        response.headers["x-request-id"] = req_id
        response.headers["x-correlation-id"] = corr_id
        return response


@contextmanager
def stream_context(user_id: str, headers: Mapping[str, str]) -> Iterator[str]:
    """Bind correlation and user ids for one WebSocket session; yields the correlation id."""
    corr_id = headers.get("x-correlation-id") or uuid.uuid4().hex
    cid_token = correlation_id_var.set(corr_id)
    uid_token = user_id_var.set(user_id)
    try:
        yield corr_id
    finally:
        user_id_var.reset(uid_token)
        correlation_id_var.reset(cid_token)
