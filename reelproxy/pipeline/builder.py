"""
ReelProxy — Pipeline Assembly
==============================

What:  Wires the handler stages into the fixed order the proxy runs them in.
When:  Once per app, in create_app(). The resulting chain, and the
       cache / rate limiter / circuit breaker it holds, is shared by every
       request served by this process.
"""

from typing import Optional

from reelproxy.config import Settings
from reelproxy.pipeline.cache import RequestCache
from reelproxy.pipeline.handlers import (
    BodySizeHandler,
    CacheHandler,
    ContentTypeHandler,
    CorsHandler,
    ErrorResponseHandler,
    Handler,
    LoggingHandler,
    MethodValidationHandler,
    PathValidationHandler,
    RateLimitHandler,
    TimeoutHandler,
    UpstreamFetchHandler,
    chain,
)
from reelproxy.pipeline.rate_limit import SlidingWindowRateLimiter
from reelproxy.services.upstream import UpstreamClient


def build_pipeline(
    settings: Settings,
    upstream: UpstreamClient,
    cache: Optional[RequestCache] = None,
    rate_limiter: Optional[SlidingWindowRateLimiter] = None,
) -> Handler:
    """
    Build the request pipeline and return its head.

    Args:
        settings:     Source of every limit and CORS value
        upstream:     Client used by the terminal fetch stage
        cache:        Response cache; a new one sized from settings if omitted
        rate_limiter: Per-IP limiter; a new one from settings if omitted
    """
    # Explicit None checks: an empty RequestCache is falsy
    if cache is None:
        cache = RequestCache(max_size=settings.cache_max_size, ttl=settings.cache_ttl)
    if rate_limiter is None:
        rate_limiter = SlidingWindowRateLimiter(
            max_requests=settings.rate_limit_requests,
            window=settings.rate_limit_window,
        )
    allowed_methods = settings.allowed_methods_list

    return chain(
        CorsHandler(
            allow_origin=settings.cors_allow_origin,
            allow_methods=allowed_methods,
            allow_headers=settings.cors_allow_headers,
            max_age=settings.cors_max_age,
        ),
        LoggingHandler(),
        ErrorResponseHandler(),
        RateLimitHandler(rate_limiter),
        MethodValidationHandler(allowed_methods),
        BodySizeHandler(settings.max_body_size),
        ContentTypeHandler(),
        PathValidationHandler(settings.api_url),
        TimeoutHandler(settings.api_timeout),
        CacheHandler(cache),
        UpstreamFetchHandler(upstream),
    )


def find_stage(head: Handler, stage_type: type) -> Optional[Handler]:
    """First stage of the given type in the chain starting at head."""
    current: Optional[Handler] = head
    while current is not None:
        if isinstance(current, stage_type):
            return current
        current = current.next
    return None
