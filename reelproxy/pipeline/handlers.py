"""
ReelProxy — Request Pipeline Handlers
======================================

What:  The chain-of-responsibility stages one proxied request passes through.
How:   Each Handler holds a reference to the next one. A stage either
       raises a ReelProxyError (short-circuit: nothing below it runs) or
       awaits the next stage and optionally decorates its response.

Stage order (outermost first, see builder.build_pipeline):

    Request
      │
      ▼
    CorsHandler            OPTIONS → 204; CORS headers on every response
    LoggingHandler         "GET https://… -> 200 (12.3ms)"
    ErrorResponseHandler   ReelProxyError → JSON error response
    RateLimitHandler       429
    MethodValidationHandler 405 + Allow
    BodySizeHandler        413
    ContentTypeHandler     415 / 400 invalid JSON
    PathValidationHandler  400 (anti-SSRF)
    TimeoutHandler         504
    CacheHandler           X-Cache: HIT / MISS
    UpstreamFetchHandler   httpx call to the upstream API

Guards never build responses themselves: ErrorResponseHandler is the only
place error bodies are shaped.
"""

import asyncio
import json
import logging
import time
from typing import Dict, Iterable, Optional, Sequence

from reelproxy.exceptions import (
    InternalError,
    InvalidBodyError,
    InvalidPathError,
    MethodNotAllowedError,
    PayloadTooLargeError,
    ReelProxyError,
    UnsupportedMediaTypeError,
    UpstreamTimeoutError,
)
from reelproxy.pipeline.cache import CachedResponse, RequestCache, build_cache_key
from reelproxy.pipeline.context import ProxyRequest, ProxyResponse, is_allowed_upstream_url
from reelproxy.pipeline.rate_limit import SlidingWindowRateLimiter
from reelproxy.services.upstream import UpstreamClient

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("reelproxy.access")


def set_header(headers: Dict[str, str], name: str, value: str) -> None:
    """Set a header, replacing any existing entry regardless of case."""
    for existing in [k for k in headers if k.lower() == name.lower()]:
        del headers[existing]
    headers[name] = value


def error_response(error: ReelProxyError, request_id: str = "") -> ProxyResponse:
    """Serialize a ReelProxyError into the JSON error body clients receive."""
    body = {
        "error": error.error_code,
        "message": error.message,
        "details": error.context,
        "request_id": request_id,
    }
    headers = {"Content-Type": "application/json"}
    headers.update(error.headers)
    return ProxyResponse(
        status_code=error.status_code,
        body=json.dumps(body).encode("utf-8"),
        headers=headers,
        error=error,
    )


class Handler:
    """
    Base pipeline stage.

    The default handle() delegates to the next stage. The last stage of a
    chain must override handle(); reaching the end of a chain without a
    response is a wiring bug.
    """

    def __init__(self, next_handler: Optional["Handler"] = None):
        self.next = next_handler

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        if self.next is None:
            raise RuntimeError(f"{type(self).__name__} has no next handler")
        return await self.next.handle(request)


def chain(*handlers: Handler) -> Handler:
    """Link handlers in the given order and return the head."""
    if not handlers:
        raise ValueError("chain() needs at least one handler")
    for current, following in zip(handlers, handlers[1:]):
        current.next = following
    return handlers[0]


# ══════════════════════════════════════════════════════════════════════════
# Response Decorators (outermost stages)
# ══════════════════════════════════════════════════════════════════════════

class CorsHandler(Handler):
    """
    Adds CORS headers to every response and answers OPTIONS locally.

    OPTIONS requests are answered with 204 when OPTIONS is an allowed method;
    otherwise they continue down the chain and get a 405.
    """

    DEFAULT_EXPOSE_HEADERS = ("X-Cache", "X-Request-ID", "Retry-After")

    def __init__(
        self,
        allow_origin: str = "*",
        allow_methods: Sequence[str] = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"),
        allow_headers: str = "Content-Type, Authorization",
        max_age: int = 86400,
        expose_headers: Iterable[str] = DEFAULT_EXPOSE_HEADERS,
        next_handler: Optional[Handler] = None,
    ):
        super().__init__(next_handler)
        self.allow_methods = list(allow_methods)
        self.cors_headers = {
            "Access-Control-Allow-Origin": allow_origin,
            "Access-Control-Allow-Methods": ", ".join(self.allow_methods),
            "Access-Control-Allow-Headers": allow_headers,
            "Access-Control-Max-Age": str(max_age),
            "Access-Control-Expose-Headers": ", ".join(expose_headers),
        }

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        if request.method == "OPTIONS" and "OPTIONS" in self.allow_methods:
            logger.debug("[%s] Answered preflight for %s", request.request_id, request.path)
            response = ProxyResponse(status_code=204)
        else:
            response = await super().handle(request)

        for name, value in self.cors_headers.items():
            set_header(response.headers, name, value)
        return response


class LoggingHandler(Handler):
    """
    One log line per proxied request.

    Level follows the final status: 5xx → ERROR, 4xx → WARNING, else INFO.
    Responses built from a ReelProxyError include its message.
    """

    def __init__(
        self,
        log: logging.Logger = access_logger,
        next_handler: Optional[Handler] = None,
    ):
        super().__init__(next_handler)
        self.log = log

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        start_time = time.perf_counter()
        target = request.upstream_url or request.path or "-"

        try:
            response = await super().handle(request)
        except Exception as exc:
            self.log.error(
                "%s %s -> %d (%.1fms) ERROR: %s",
                request.method,
                target,
                500,
                (time.perf_counter() - start_time) * 1000,
                exc,
                extra={"request_id": request.request_id},
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO

        extra = {
            "request_id": request.request_id,
            "method": request.method,
            "url": target,
            "status": status,
            "duration_ms": round(duration_ms, 2),
            "client_ip": request.client_ip,
        }
        if response.error is not None:
            self.log.log(
                level,
                "%s %s -> %d (%.1fms) ERROR: %s",
                request.method, target, status, duration_ms, response.error.message,
                extra=extra,
            )
        else:
            self.log.log(
                level,
                "%s %s -> %d (%.1fms)",
                request.method, target, status, duration_ms,
                extra=extra,
            )
        return response


class ErrorResponseHandler(Handler):
    """
    Converts exceptions raised further down into responses.

    ReelProxyError keeps its status and message. Anything else becomes an
    InternalError (500); the stack trace is logged server-side only.
    """

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        try:
            return await super().handle(request)
        except ReelProxyError as exc:
            return error_response(exc, request.request_id)
        except Exception as exc:
            logger.error(
                "[%s] Unexpected error: %s",
                request.request_id,
                str(exc),
                exc_info=True,
            )
            return error_response(InternalError(), request.request_id)


# ══════════════════════════════════════════════════════════════════════════
# Guards
# ══════════════════════════════════════════════════════════════════════════

class RateLimitHandler(Handler):
    def __init__(
        self,
        limiter: SlidingWindowRateLimiter,
        next_handler: Optional[Handler] = None,
    ):
        super().__init__(next_handler)
        self.limiter = limiter

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        self.limiter.check(request.client_ip)
        return await super().handle(request)


class MethodValidationHandler(Handler):
    """Rejects verbs outside the allow-list with 405 and an Allow header."""

    def __init__(
        self,
        allowed_methods: Sequence[str],
        next_handler: Optional[Handler] = None,
    ):
        super().__init__(next_handler)
        self.allowed_methods = [m.upper() for m in allowed_methods]

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        if request.method not in self.allowed_methods:
            raise MethodNotAllowedError(request.method, self.allowed_methods)
        return await super().handle(request)


class BodySizeHandler(Handler):
    """
    Enforces max_body_size on POST/PUT/PATCH.

    Checks the declared Content-Length first, then the bytes actually read
    (covers chunked uploads without a Content-Length).
    """

    def __init__(self, max_size: int, next_handler: Optional[Handler] = None):
        super().__init__(next_handler)
        self.max_size = max_size

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        if request.has_body_method:
            declared = request.headers.get("content-length")
            if declared is not None:
                try:
                    declared_size = int(declared)
                except ValueError:
                    declared_size = -1
                if declared_size < 0:
                    raise InvalidBodyError(
                        message="Invalid Content-Length header",
                        context={"content_length": declared},
                    )
                if declared_size > self.max_size:
                    raise PayloadTooLargeError(self.max_size, declared_size)
            if len(request.body) > self.max_size:
                raise PayloadTooLargeError(self.max_size)
        return await super().handle(request)


class ContentTypeHandler(Handler):
    """
    POST/PUT/PATCH must be declared application/json and carry a JSON body.
    """

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        if request.has_body_method:
            content_type = request.headers.get("content-type")
            if not content_type or "application/json" not in content_type.lower():
                raise UnsupportedMediaTypeError(content_type)
            try:
                json.loads(request.body)
            except ValueError:
                raise InvalidBodyError()
        return await super().handle(request)


class PathValidationHandler(Handler):
    """Only URLs on the configured upstream host and port may be proxied."""

    def __init__(self, api_url: str, next_handler: Optional[Handler] = None):
        super().__init__(next_handler)
        self.api_url = api_url

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        if not is_allowed_upstream_url(request.upstream_url, self.api_url):
            logger.debug(
                "[%s] Rejected path %r (resolved to %r)",
                request.request_id,
                request.path,
                request.upstream_url,
            )
            raise InvalidPathError(request.path)
        return await super().handle(request)


# ══════════════════════════════════════════════════════════════════════════
# Forwarding
# ══════════════════════════════════════════════════════════════════════════

class TimeoutHandler(Handler):
    """Bounds every stage below it (cache + upstream call) to `timeout` seconds."""

    def __init__(self, timeout: float, next_handler: Optional[Handler] = None):
        super().__init__(next_handler)
        self.timeout = timeout

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        try:
            return await asyncio.wait_for(super().handle(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise UpstreamTimeoutError(self.timeout)


class CacheHandler(Handler):
    """
    Serves repeated GETs from the in-memory cache.

    Only 2xx GET responses are stored and only those carry X-Cache:
    HIT (served from memory) or MISS (fetched upstream, now stored).
    Non-2xx GET responses pass through without the header.
    """

    def __init__(self, cache: RequestCache, next_handler: Optional[Handler] = None):
        super().__init__(next_handler)
        self.cache = cache

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        if request.method != "GET" or not request.upstream_url:
            return await super().handle(request)

        key = build_cache_key(request)
        cached = self.cache.get(key)
        if cached is not None:
            return ProxyResponse(
                status_code=cached.status_code,
                body=cached.body,
                headers={"Content-Type": cached.content_type, "X-Cache": "HIT"},
            )

        response = await super().handle(request)
        if response.ok:
            self.cache.set(
                key,
                CachedResponse(
                    status_code=response.status_code,
                    body=response.body,
                    content_type=response.content_type or "application/json",
                ),
            )
            set_header(response.headers, "X-Cache", "MISS")
        return response


class UpstreamFetchHandler(Handler):
    """Terminal stage: forwards the request through the UpstreamClient."""

    def __init__(self, upstream: UpstreamClient):
        super().__init__(None)
        self.upstream = upstream

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        return await self.upstream.fetch(request)
