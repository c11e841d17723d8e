# Middleware package init
"""
ReelProxy — Middleware Package
===============================

What:  Starlette middleware applied to every request, outside the pipeline.

Middleware Chain:
    Request → [Request ID] → [GZip] → Route Handler → Pipeline

    Request ID runs first so the pipeline, its log lines and error bodies
    all see the ID that ends up in the X-Request-ID response header.
    CORS, rate limiting and access logging are pipeline stages, not
    middleware (see reelproxy.pipeline.handlers).
"""
