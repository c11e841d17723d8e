# Routes package init
"""
ReelProxy — HTTP Routes Package
================================

Route Inventory:
    - proxy.py:   *    /api?path=...   (proxied to the upstream API)
    - health.py:  GET  /health         (service and upstream health)

Routes stay thin: they translate between Starlette and the pipeline /
services and hold no proxy logic of their own.
"""
