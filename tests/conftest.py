"""
ReelProxy — Test Configuration (conftest.py)
=============================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Hierarchy (all function-scoped):
    ├── test_settings:   Settings pointing at a fake upstream, no retry waits
    ├── upstream_log:    Every request the fake upstream received
    ├── upstream_routes: (method, path) → httpx.Response (or exception) table
    ├── http_client:     httpx.AsyncClient backed by MockTransport
    ├── upstream_client: UpstreamClient using http_client
    ├── make_request:    Factory for ProxyRequest objects
    ├── fake_clock:      Manually advanced time source
    └── test_client:     httpx.AsyncClient talking to the FastAPI app in-process
"""

import os
from typing import Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.datastructures import Headers

# Override settings for testing BEFORE any app imports
os.environ["API_URL"] = "https://api.example.test/3"
os.environ["API_ACCESS_TOKEN"] = "test-token-not-real"
os.environ["LOG_LEVEL"] = "WARNING"

from reelproxy.config import Settings  # noqa: E402
from reelproxy.pipeline.context import ProxyRequest, resolve_upstream_url  # noqa: E402
from reelproxy.services.upstream import UpstreamClient  # noqa: E402

UPSTREAM_BASE = "https://api.example.test/3"


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def test_settings() -> Settings:
    """Settings for a fake upstream with instant retries."""
    return Settings(
        api_url=UPSTREAM_BASE,
        api_access_token="test-token-not-real",
        api_timeout=2.0,
        retry_max_attempts=3,
        retry_min_wait=0,
        retry_max_wait=0,
        cb_failure_threshold=5,
        cb_recovery_timeout=30,
        rate_limit_requests=100,
        rate_limit_window=60,
        cache_max_size=10,
    )


@pytest.fixture
def upstream_log() -> List[httpx.Request]:
    return []


@pytest.fixture
def upstream_routes() -> Dict[Tuple[str, str], object]:
    """
    Canned upstream answers keyed by (method, URL path).

    Values are httpx.Response objects, or exceptions to raise. Unknown
    routes answer 404 with a JSON body like the real API.
    """
    return {
        ("GET", "/3/movie/550"): httpx.Response(
            200, json={"id": 550, "title": "Fight Club"}
        ),
        ("POST", "/3/movie/550/rating"): httpx.Response(
            201, json={"success": True, "status_code": 1}
        ),
    }


@pytest.fixture
def http_client(upstream_log, upstream_routes):
    """httpx.AsyncClient whose transport is the fake upstream."""

    def handler(request: httpx.Request) -> httpx.Response:
        upstream_log.append(request)
        answer = upstream_routes.get((request.method, request.url.path))
        if answer is None:
            return httpx.Response(
                404,
                json={"status_code": 34, "status_message": "The resource could not be found."},
            )
        if isinstance(answer, Exception):
            raise answer
        # Fresh copy per call: a Response object is bound to one request
        return httpx.Response(
            answer.status_code, headers=answer.headers, content=answer.content
        )

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def upstream_client(http_client, test_settings) -> UpstreamClient:
    return UpstreamClient(http_client, test_settings)


@pytest.fixture
def make_request():
    """
    Build a ProxyRequest the way the route would.

    Usage:
        request = make_request("POST", "/movie/550/rating",
                               headers={"content-type": "application/json"},
                               body=b'{"value": 8.5}')
    """

    def _make(
        method: str = "GET",
        path: Optional[str] = "/movie/550",
        headers: Optional[Dict[str, str]] = None,
        body: bytes = b"",
        client_ip: str = "203.0.113.7",
        params: Optional[List[Tuple[str, str]]] = None,
    ) -> ProxyRequest:
        params = params or []
        return ProxyRequest(
            method=method.upper(),
            path=path,
            upstream_url=resolve_upstream_url(path, UPSTREAM_BASE, params),
            headers=Headers(headers=headers or {}),
            body=body,
            client_ip=client_ip,
            request_id="test-rid",
            query_params=params,
        )

    return _make


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def proxy_app(test_settings, http_client):
    """Fresh FastAPI app wired to the fake upstream."""
    from reelproxy.main import create_app

    return create_app(test_settings, http_client=http_client)


@pytest_asyncio.fixture
async def test_client(proxy_app, http_client):
    """
    HTTPX AsyncClient routed directly into proxy_app.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    transport = ASGITransport(app=proxy_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await http_client.aclose()
