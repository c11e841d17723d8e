"""
ReelProxy — Application Package Initializer
============================================

What: Marks the `reelproxy` directory as a Python package.
Who:  Used by uvicorn (`uvicorn reelproxy.main:app`) and pytest.

Architecture Note:
    The service is a thin proxy in front of one upstream REST API:

    ┌─────────────────────────────────────┐
    │        Routes (HTTP surface)        │  ← /api and /health
    ├─────────────────────────────────────┤
    │      Pipeline (handler chain)       │  ← validate, cache, decorate
    ├─────────────────────────────────────┤
    │     Services (upstream client)      │  ← httpx, retry, circuit breaker
    └─────────────────────────────────────┘

    Routes only translate between Starlette and the pipeline's own
    request/response types, so every stage can be tested without HTTP.
"""

__version__ = "1.0.0"
