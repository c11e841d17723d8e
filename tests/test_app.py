"""
ReelProxy — Endpoint Tests
===========================

What:  The FastAPI app end to end: client → /api → pipeline → fake upstream.
How:   httpx.AsyncClient over ASGITransport (no server); the upstream is the
       MockTransport-backed client from conftest.

What we test:
    ✅ Proxied GET with credential injection, CORS and X-Cache headers
    ✅ Second identical GET served from cache
    ✅ Extra query parameters forwarded
    ✅ Every rejection path returns the JSON error shape with CORS headers
    ✅ Upstream errors passed through, upstream outage → 502
    ✅ A hung upstream trips the circuit breaker (504s, then 503)
    ✅ Rate limiting → 429 with Retry-After
    ✅ X-Request-ID propagation
    ✅ /health
"""

import asyncio

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from reelproxy.main import create_app
from reelproxy.services.upstream import CircuitBreaker


@pytest_asyncio.fixture
async def client_with(test_settings, http_client):
    """Factory: app with some settings overridden, plus a client for it."""
    clients = []

    async def _make(**overrides):
        app = create_app(test_settings.model_copy(update=overrides), http_client=http_client)
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()


class TestProxyGet:

    @pytest.mark.asyncio
    async def test_get_proxied(self, test_client, upstream_log):
        response = await test_client.get("/api", params={"path": "/movie/550"})

        assert response.status_code == 200
        assert response.json() == {"id": 550, "title": "Fight Club"}
        assert response.headers["x-cache"] == "MISS"
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["x-request-id"]
        assert upstream_log[0].headers["authorization"] == "Bearer test-token-not-real"

    @pytest.mark.asyncio
    async def test_second_get_served_from_cache(self, test_client, upstream_log, proxy_app):
        await test_client.get("/api", params={"path": "/movie/550"})
        response = await test_client.get("/api", params={"path": "/movie/550"})

        assert response.status_code == 200
        assert response.headers["x-cache"] == "HIT"
        assert response.json()["title"] == "Fight Club"
        assert len(upstream_log) == 1
        assert len(proxy_app.state.cache) == 1

    @pytest.mark.asyncio
    async def test_extra_params_forwarded(self, test_client, upstream_log):
        await test_client.get(
            "/api", params={"path": "/search/movie", "query": "alien", "page": "2"}
        )
        sent = upstream_log[0].url
        assert sent.path == "/3/search/movie"
        assert sent.params["query"] == "alien"
        assert sent.params["page"] == "2"
        assert "path" not in sent.params

    @pytest.mark.asyncio
    async def test_upstream_error_passed_through(self, test_client):
        response = await test_client.get("/api", params={"path": "/movie/0"})

        assert response.status_code == 404
        assert response.json()["status_code"] == 34
        assert "x-cache" not in response.headers
        assert response.headers["access-control-allow-origin"] == "*"

    @pytest.mark.asyncio
    async def test_upstream_down(self, test_client, upstream_routes):
        upstream_routes[("GET", "/3/movie/550")] = httpx.ConnectError("refused")

        response = await test_client.get("/api", params={"path": "/movie/550"})

        assert response.status_code == 502
        assert response.json()["error"] == "upstream_unavailable"


class TestHungUpstream:

    @pytest.mark.asyncio
    async def test_timeouts_open_the_circuit(self, test_settings):
        calls = []

        async def hang(request):
            calls.append(request)
            await asyncio.sleep(5)
            return httpx.Response(200, json={})

        app_settings = test_settings.model_copy(
            update={"api_timeout": 0.05, "cb_failure_threshold": 3}
        )
        upstream_client = httpx.AsyncClient(transport=httpx.MockTransport(hang))
        app = create_app(app_settings, http_client=upstream_client)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            statuses = [
                (await client.get("/api", params={"path": "/movie/550"})).status_code
                for _ in range(5)
            ]
        await upstream_client.aclose()

        assert statuses == [504, 504, 504, 503, 503]
        assert len(calls) == 3
        assert app.state.upstream.circuit_breaker.state == CircuitBreaker.OPEN


class TestProxyRejections:

    @pytest.mark.asyncio
    async def test_missing_path(self, test_client, upstream_log):
        response = await test_client.get("/api")

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_path"
        assert body["message"] == 'Invalid or missing "path" parameter'
        assert body["request_id"] == response.headers["x-request-id"]
        assert response.headers["access-control-allow-origin"] == "*"
        assert upstream_log == []

    @pytest.mark.asyncio
    async def test_foreign_host_blocked(self, test_client, upstream_log):
        response = await test_client.get(
            "/api", params={"path": "http://169.254.169.254/latest/meta-data/"}
        )
        assert response.status_code == 400
        assert upstream_log == []

    @pytest.mark.asyncio
    async def test_control_character_in_path(self, test_client, upstream_log):
        response = await test_client.get("/api?path=/movie/%00")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_path"
        assert upstream_log == []

    @pytest.mark.asyncio
    async def test_method_not_allowed(self, test_client):
        response = await test_client.request("TRACE", "/api", params={"path": "/movie/550"})

        assert response.status_code == 405
        assert response.headers["allow"] == "GET, POST, PUT, PATCH, DELETE, OPTIONS"
        assert response.json()["error"] == "method_not_allowed"

    @pytest.mark.asyncio
    async def test_preflight(self, test_client, upstream_log):
        response = await test_client.options(
            "/api",
            params={"path": "/movie/550"},
            headers={"Origin": "https://app.example", "Access-Control-Request-Method": "POST"},
        )

        assert response.status_code == 204
        assert response.headers["access-control-allow-headers"] == "Content-Type, Authorization"
        assert response.headers["access-control-max-age"] == "86400"
        assert upstream_log == []

    @pytest.mark.asyncio
    async def test_post_forwarded(self, test_client, upstream_log):
        response = await test_client.post(
            "/api", params={"path": "/movie/550/rating"}, json={"value": 8.5}
        )

        assert response.status_code == 201
        assert response.json()["success"] is True
        assert "x-cache" not in response.headers
        assert upstream_log[0].method == "POST"

    @pytest.mark.asyncio
    async def test_post_wrong_content_type(self, test_client, upstream_log):
        response = await test_client.post(
            "/api",
            params={"path": "/movie/550/rating"},
            content=b"value=8.5",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 415
        assert upstream_log == []

    @pytest.mark.asyncio
    async def test_post_invalid_json(self, test_client, upstream_log):
        response = await test_client.post(
            "/api",
            params={"path": "/movie/550/rating"},
            content=b"{broken",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid JSON body"
        assert upstream_log == []

    @pytest.mark.asyncio
    async def test_post_too_large(self, client_with, upstream_log):
        client = await client_with(max_body_size=16)
        response = await client.post(
            "/api", params={"path": "/movie/550/rating"}, json={"value": "x" * 64}
        )
        assert response.status_code == 413
        assert response.json()["details"]["max_size"] == 16
        assert upstream_log == []

    @pytest.mark.asyncio
    async def test_rate_limited(self, client_with):
        client = await client_with(rate_limit_requests=2)
        for _ in range(2):
            assert (await client.get("/api", params={"path": "/movie/550"})).status_code == 200

        response = await client.get("/api", params={"path": "/movie/550"})

        assert response.status_code == 429
        assert int(response.headers["retry-after"]) > 0
        assert response.headers["access-control-allow-origin"] == "*"

    @pytest.mark.asyncio
    async def test_rate_limit_uses_forwarded_for(self, client_with):
        client = await client_with(rate_limit_requests=1)
        first = await client.get(
            "/api", params={"path": "/movie/550"}, headers={"X-Forwarded-For": "198.51.100.1"}
        )
        second = await client.get(
            "/api", params={"path": "/movie/550"}, headers={"X-Forwarded-For": "198.51.100.2"}
        )
        assert first.status_code == 200
        assert second.status_code == 200


class TestRequestId:

    @pytest.mark.asyncio
    async def test_client_id_echoed(self, test_client):
        response = await test_client.get("/api", headers={"X-Request-ID": "trace-123"})
        assert response.headers["x-request-id"] == "trace-123"
        assert response.json()["request_id"] == "trace-123"

    @pytest.mark.asyncio
    async def test_malformed_id_replaced(self, test_client):
        response = await test_client.get("/api", headers={"X-Request-ID": "bad id with spaces"})
        assert response.headers["x-request-id"] != "bad id with spaces"
        assert len(response.headers["x-request-id"]) == 8


class TestHealth:

    @pytest.mark.asyncio
    async def test_healthy(self, test_client):
        response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["upstream"] == "available"
        assert body["upstream_host"] == "api.example.test"
        assert body["cache_entries"] == 0

    @pytest.mark.asyncio
    async def test_circuit_open_degraded(self, test_client, proxy_app):
        breaker = proxy_app.state.upstream.circuit_breaker
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()
        assert breaker.state == CircuitBreaker.OPEN

        response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["upstream"] == "circuit_open"
