"""
ReelProxy — Pydantic Response Schemas
======================================

What:  Pydantic models for the service's own (non-proxied) responses.
How:   FastAPI serializes route return values through these models and
       publishes them in the OpenAPI document.

Proxied responses are NOT modelled here: their bodies are the upstream's
bytes, passed through unchanged.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """
    What:  Aggregate health of the proxy and its upstream.
    Who:   Returned by GET /health.

    status values:
        healthy   → upstream reachable, circuit closed
        degraded  → upstream unreachable or circuit open (proxy still answers,
                    cached GETs still served)
    """
    status: str = Field(description="healthy or degraded")
    version: str = Field(description="Service version")
    upstream: str = Field(description="available, unavailable or circuit_open")
    upstream_host: str = Field(description="Host every proxied request is sent to")
    cache_entries: int = Field(description="Responses currently held in the cache")
    uptime_seconds: float = Field(description="Seconds since the process started")


class ErrorResponse(BaseModel):
    """
    What:  Shape of every error produced by the proxy itself.

    Upstream errors (4xx/5xx answered by the upstream API) are passed through
    verbatim and do not follow this shape.

    Example:
        {
            "error": "method_not_allowed",
            "message": "Method TRACE not allowed",
            "details": {"allowed_methods": ["GET", "POST"]},
            "request_id": "a1b2c3d4"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable explanation")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Error context")
    request_id: str = Field(default="", description="Correlation ID (X-Request-ID)")
