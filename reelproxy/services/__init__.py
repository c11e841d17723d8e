# Services package init
"""
ReelProxy — Services Layer
===========================

Service Inventory:
    - upstream.py: UpstreamClient (httpx + tenacity) and its CircuitBreaker
"""
