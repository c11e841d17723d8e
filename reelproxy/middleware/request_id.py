"""
ReelProxy — Request ID Middleware
==================================

What:  Assigns a correlation ID to each incoming request and echoes it back.
How:   Reuses a well-formed client-supplied X-Request-ID, otherwise generates
       a short UUID; stores it in a ContextVar and in request.state, and sets
       it on the response.
Who:   Applied to every request via Starlette middleware.
When:  Before the proxy route runs, so pipeline log lines and error bodies
       carry the same ID the client sees in the response header.
"""

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client-supplied IDs end up in logs and headers; keep them short and plain
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def new_request_id() -> str:
    return str(uuid.uuid4())[:8]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that assigns a unique ID to each request for tracing.

    Behavior:
        1. Use the client's X-Request-ID when it is 1-64 chars of [A-Za-z0-9._-]
        2. Otherwise generate an 8-char UUID prefix
        3. Store in ContextVar (loggers, exception handlers) and request.state (routes)
        4. Add to response headers
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        supplied = request.headers.get("X-Request-ID", "")
        rid = supplied if _VALID_REQUEST_ID.match(supplied) else new_request_id()

        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
