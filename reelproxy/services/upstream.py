"""
ReelProxy — Upstream API Client
================================

What:  Performs the proxied HTTP call against the configured upstream API.
How:   One shared httpx.AsyncClient (connection pooling), the bearer
       credential injected on every call, tenacity retries for idempotent
       methods and a circuit breaker in front of everything.
Who:   Called by UpstreamFetchHandler, the last stage of the pipeline, and by
       the /health route.

Resilience Strategy:
    1. Tenacity retry with exponential backoff + jitter on transport errors
       (connect/read/DNS), only for GET and DELETE. Timeouts are not retried;
       the pipeline's timeout stage bounds the whole call.
    2. Circuit breaker: after cb_failure_threshold consecutive transport
       failures or timeouts (including calls cancelled by the pipeline's
       timeout stage), calls fail instantly with 503 until cb_recovery_timeout
       has passed.
    3. Redirects are never followed, so a 3xx from the upstream cannot send
       the proxy to another host.

Error mapping:
    upstream answered (any status)   → ProxyResponse, status passed through
    httpx.TimeoutException           → UpstreamTimeoutError (504)
    httpx.TransportError             → UpstreamUnavailableError (502)
    cancelled by the timeout stage   → breaker failure recorded, re-raised
    circuit open                     → CircuitBreakerOpenError (503)
"""

import asyncio
import logging
import time
from typing import Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from reelproxy.config import Settings
from reelproxy.exceptions import (
    CircuitBreakerOpenError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from reelproxy.pipeline.context import ProxyRequest, ProxyResponse

logger = logging.getLogger(__name__)

IDEMPOTENT_METHODS = frozenset({"GET", "DELETE"})

# Never copied from the upstream response to the client
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    # httpx already decoded the body and the length is recomputed
    "content-encoding",
    "content-length",
})


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Circuit breaker guarding the upstream API.

    State Machine:
        CLOSED (normal operation)
            → On failure: increment failure_count
            → When failure_count >= threshold: transition to OPEN

        OPEN (rejecting all requests)
            → All calls raise CircuitBreakerOpenError immediately
            → After recovery_timeout seconds: transition to HALF_OPEN

        HALF_OPEN (testing recovery)
            → Allow the next request through
            → On success: transition to CLOSED (reset failure_count)
            → On failure: transition back to OPEN (reset timer)

    Not thread-safe; one instance per process on a single event loop.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 30):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """
        Check if a request is allowed through the circuit breaker.

        Raises:
            CircuitBreakerOpenError if OPEN and the recovery timeout hasn't elapsed.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = time.monotonic() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info(
                    "Circuit breaker transitioning to HALF_OPEN after %.1fs",
                    elapsed,
                )
                self.state = self.HALF_OPEN
                return True
            remaining = max(1, int(self.recovery_timeout - elapsed))
            raise CircuitBreakerOpenError(recovery_time=remaining)

        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (upstream recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        """Record a failed upstream call. May trigger CLOSED → OPEN."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (test request failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Upstream Client
# ══════════════════════════════════════════════════════════════════════════

def create_http_client(settings: Settings, **kwargs) -> httpx.AsyncClient:
    """
    Shared AsyncClient for upstream calls.

    Extra kwargs are passed through (tests inject `transport=httpx.MockTransport(...)`).
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.api_timeout),
        follow_redirects=False,
        **kwargs,
    )


class UpstreamClient:
    """
    Sends a validated ProxyRequest to the upstream API.

    Args:
        http_client:     Shared httpx.AsyncClient (owned by the app lifespan)
        settings:        Provides api_url, api_access_token, retry/CB tuning
        circuit_breaker: Optional pre-built breaker (tests share one)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: Settings,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.http_client = http_client
        self.api_url = settings.api_url
        self.access_token = settings.api_access_token
        self.retry_max_attempts = settings.retry_max_attempts
        self.retry_min_wait = settings.retry_min_wait
        self.retry_max_wait = settings.retry_max_wait
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )

    def build_headers(self, request: ProxyRequest) -> Dict[str, str]:
        """Outgoing headers. Inbound client headers are never forwarded."""
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }
        if request.has_body_method:
            headers["Content-Type"] = "application/json"
        return headers

    async def fetch(self, request: ProxyRequest) -> ProxyResponse:
        """
        Forward the request upstream and return its answer unchanged.

        Raises:
            CircuitBreakerOpenError:  Too many recent transport failures
            UpstreamTimeoutError:     The upstream did not answer in time
            UpstreamUnavailableError: Transport failure after all retries
        """
        self.circuit_breaker.can_execute()

        start_time = time.perf_counter()
        try:
            upstream = await self._send_with_retry(request)
        except httpx.TimeoutException as e:
            self.circuit_breaker.record_failure()
            logger.warning(
                "[%s] Upstream timed out after %.0fms: %s",
                request.request_id,
                (time.perf_counter() - start_time) * 1000,
                type(e).__name__,
            )
            raise UpstreamTimeoutError()
        except httpx.TransportError as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] Upstream unreachable: %s",
                request.request_id,
                str(e) or type(e).__name__,
            )
            raise UpstreamUnavailableError(context={"error_type": type(e).__name__})
        except asyncio.CancelledError:
            # Cancelled by the timeout stage: a hung upstream counts as a failure
            self.circuit_breaker.record_failure()
            logger.warning(
                "[%s] Upstream call cancelled after %.0fms",
                request.request_id,
                (time.perf_counter() - start_time) * 1000,
            )
            raise

        self.circuit_breaker.record_success()
        logger.debug(
            "[%s] Upstream %s %s answered %d in %.0fms",
            request.request_id,
            request.method,
            request.upstream_url,
            upstream.status_code,
            (time.perf_counter() - start_time) * 1000,
        )
        return self._to_proxy_response(upstream)

    async def _send_with_retry(self, request: ProxyRequest) -> httpx.Response:
        attempts = self.retry_max_attempts if request.method in IDEMPOTENT_METHODS else 1
        retrying = AsyncRetrying(
            retry=(
                retry_if_exception_type(httpx.TransportError)
                & retry_if_not_exception_type(httpx.TimeoutException)
            ),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential_jitter(
                multiplier=self.retry_min_wait,
                max=self.retry_max_wait,
                jitter=self.retry_min_wait,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.http_client.request(
                    request.method,
                    request.upstream_url,
                    headers=self.build_headers(request),
                    content=request.body if request.has_body_method and request.body else None,
                )
        raise AssertionError("unreachable")  # pragma: no cover

    @staticmethod
    def _to_proxy_response(upstream: httpx.Response) -> ProxyResponse:
        headers = {
            name: value
            for name, value in upstream.headers.items()
            if name.lower() not in HOP_BY_HOP_HEADERS
        }
        if "content-type" not in {name.lower() for name in headers}:
            headers["content-type"] = "text/plain"
        return ProxyResponse(
            status_code=upstream.status_code,
            body=upstream.content,
            headers=headers,
        )

    async def health_check(self) -> bool:
        """
        True when the upstream answers an HTTP request at all.

        Any status counts as reachable; only transport errors mean unavailable.
        Bypasses the circuit breaker and the retry policy.
        """
        try:
            await self.http_client.get(
                self.api_url,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Accept": "application/json",
                },
            )
            return True
        except httpx.HTTPError as e:
            logger.warning("Upstream health check failed: %s", str(e) or type(e).__name__)
            return False
