"""
ReelProxy — FastAPI Application Factory
========================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn to start the server (uvicorn reelproxy.main:app).

Application Architecture:
    ┌─────────────────────────────────────────────────────┐
    │                   FastAPI App                       │
    │                                                     │
    │  Middleware:  Request ID → GZip                     │
    │                                                     │
    │  Routes:                                            │
    │  ┌──────────────────────┐ ┌──────────────────────┐  │
    │  │ * /api?path=...      │ │ GET /health          │  │
    │  └──────────┬───────────┘ └──────────────────────┘  │
    │             ▼                                       │
    │  Pipeline (app.state.pipeline):                     │
    │  CORS → Logging → Errors → RateLimit → Method →     │
    │  BodySize → ContentType → Path → Timeout → Cache →  │
    │  Upstream (httpx, retry, circuit breaker)           │
    └─────────────────────────────────────────────────────┘

State (app.state):
    settings, http_client, upstream, cache, rate_limiter, pipeline
    Built eagerly in create_app() so the app also works under transports
    that skip lifespan events (httpx.ASGITransport in tests).

Lifecycle:
    Startup:  configure logging, validate configuration, log upstream host
    Shutdown: close the shared httpx client (when the app created it)
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from reelproxy import __version__
from reelproxy.config import Settings, settings
from reelproxy.exceptions import InternalError, ReelProxyError
from reelproxy.middleware.request_id import RequestIDMiddleware, request_id_var
from reelproxy.pipeline.builder import build_pipeline
from reelproxy.pipeline.cache import RequestCache
from reelproxy.pipeline.rate_limit import SlidingWindowRateLimiter
from reelproxy.routes import health, proxy
from reelproxy.services.upstream import UpstreamClient, create_http_client

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Access lines come from the "reelproxy.access" logger (pipeline
    LoggingHandler); structured fields ride along as record attributes.
    """
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Per-request lines are already written by the pipeline
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    app_settings: Settings = app.state.settings

    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging(app_settings.log_level)
    logger.info("ReelProxy %s starting up...", __version__)

    try:
        app_settings.validate_required_for_production()
    except ValueError as e:
        # Keep serving: /health and path validation still work without a token
        logger.error("Configuration error: %s", str(e))

    logger.info("Proxying to %s", app_settings.api_url)
    logger.info(
        "Server ready at http://%s:%d",
        app_settings.backend_host,
        app_settings.backend_port,
    )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("ReelProxy shutting down...")
    if app.state.owns_http_client:
        await app.state.http_client.aclose()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI) -> None:
    """
    Map errors raised OUTSIDE the pipeline to JSON responses.

    Errors raised inside the pipeline never reach these handlers:
    ErrorResponseHandler converts them so they still get CORS headers
    and an access log line.
    """

    @app.exception_handler(ReelProxyError)
    async def handle_proxy_error(request: Request, exc: ReelProxyError):
        rid = request_id_var.get("")
        logger.warning("[%s] %s: %s", rid, exc.error_code, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": exc.message,
                "details": exc.context,
                "request_id": rid,
            },
            headers=exc.headers or None,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error(
            "[%s] Unexpected error: %s",
            rid,
            str(exc),
            exc_info=True,
        )
        error = InternalError()
        return JSONResponse(
            status_code=error.status_code,
            content={
                "error": error.error_code,
                "message": error.message,
                "details": error.context,
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    app_settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        app_settings: Configuration; the module-level singleton if omitted
        http_client:  Pre-built upstream client (tests pass one backed by
                      httpx.MockTransport). The app only closes clients it
                      created itself.
    """
    app_settings = app_settings or settings

    app = FastAPI(
        title="ReelProxy API",
        description=(
            "Proxy for a movie/TV metadata REST API: injects the bearer credential, "
            "validates and caches requests, and adds CORS headers."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Shared State ──────────────────────────────────────────────────────
    app.state.settings = app_settings
    app.state.owns_http_client = http_client is None
    app.state.http_client = http_client or create_http_client(app_settings)
    app.state.upstream = UpstreamClient(app.state.http_client, app_settings)
    app.state.cache = RequestCache(
        max_size=app_settings.cache_max_size,
        ttl=app_settings.cache_ttl,
    )
    app.state.rate_limiter = SlidingWindowRateLimiter(
        max_requests=app_settings.rate_limit_requests,
        window=app_settings.rate_limit_window,
    )
    app.state.pipeline = build_pipeline(
        app_settings,
        app.state.upstream,
        cache=app.state.cache,
        rate_limiter=app.state.rate_limiter,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Middleware executes in REVERSE order of addition: Request ID runs first
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestIDMiddleware)

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(proxy.router)
    app.include_router(health.router)

    return app


app = create_app()
