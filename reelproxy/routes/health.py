"""
ReelProxy — Health Check Route
===============================

What:  Health check endpoint for monitoring and load balancer probes.
How:   Reports the circuit breaker state, probes the upstream when the
       circuit is not open, and includes cache occupancy and uptime.
Who:   Called by container health checks, load balancers and monitoring.

Status levels:
    - healthy:   Upstream reachable (HTTP 200)
    - degraded:  Upstream unreachable or circuit open (HTTP 200; the proxy
                 itself is up and keeps serving cached GETs)
"""

import logging
import time

from fastapi import APIRouter, Request

from reelproxy import __version__
from reelproxy.schemas.health import HealthResponse
from reelproxy.services.upstream import CircuitBreaker

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description=(
        "Returns the health status of the proxy and its upstream API. "
        "The upstream is not probed while its circuit breaker is open."
    ),
)
async def health_check(request: Request) -> HealthResponse:
    upstream = request.app.state.upstream
    cache = request.app.state.cache

    if upstream.circuit_breaker.state == CircuitBreaker.OPEN:
        upstream_status = "circuit_open"
    elif await upstream.health_check():
        upstream_status = "available"
    else:
        upstream_status = "unavailable"

    overall = "healthy" if upstream_status == "available" else "degraded"
    if overall != "healthy":
        logger.warning("Health check: upstream %s", upstream_status)

    return HealthResponse(
        status=overall,
        version=__version__,
        upstream=upstream_status,
        upstream_host=request.app.state.settings.upstream_host,
        cache_entries=len(cache),
        uptime_seconds=round(time.time() - _start_time, 2),
    )
