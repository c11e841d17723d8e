# Pipeline package init
"""
ReelProxy — Request Pipeline
=============================

What:  The chain-of-responsibility that validates, caches, forwards and
       decorates one proxied request.

Modules:
    - context.py:    ProxyRequest / ProxyResponse, upstream URL resolution
    - handlers.py:   The individual stages
    - cache.py:      Bounded in-memory GET response cache
    - rate_limit.py: Per-IP sliding window limiter
    - builder.py:    Assembles the stages in their fixed order

Import submodules directly; context.py is shared with services.upstream,
so this package init stays import-free.
"""
