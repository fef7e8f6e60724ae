"""
Tests für den HTTP-Transport.

Die meisten Tests sprechen die FastAPI-App direkt über httpx.ASGITransport
an; nur die Lifecycle-Tests starten uvicorn auf einem freien Port.
"""

from __future__ import annotations

import socket
from typing import Any, AsyncIterator

import httpx
import pytest
from jose import jwt

from toolhost.config import ServerConfig, create_test_config
from toolhost.core.errors import ConfigurationError
from toolhost.core.server import ServerCore
from toolhost.mcp.http import HttpTransport
from toolhost.models import HandlerRegistration
from toolhost.security.rate_limiter import RateLimiter


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _client(transport: HttpTransport) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=transport.app), base_url="http://test",
    )


@pytest.fixture
async def core(server: ServerCore) -> AsyncIterator[ServerCore]:
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def client(core: ServerCore) -> AsyncIterator[httpx.AsyncClient]:
    async with _client(HttpTransport(core)) as c:
        yield c


def _core_with(config: ServerConfig, source: ServerCore) -> ServerCore:
    core = ServerCore(config)
    core.register_handlers(list(source.handlers.values()))
    return core


# ============================================================================
# Endpunkte
# ============================================================================


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, core: ServerCore) -> None:
        transport = HttpTransport(core)
        async with _client(transport) as client:
            resp = await client.get("/mcp/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] in ("healthy", "degraded")
        assert body["sessionId"] == transport.session_id
        assert transport.session_id.startswith("http_")

    @pytest.mark.asyncio
    async def test_health_unhealthy_when_stopped(self, server: ServerCore) -> None:
        async with _client(HttpTransport(server)) as client:
            resp = await client.get("/mcp/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_info(self, client: httpx.AsyncClient) -> None:
        body = (await client.get("/mcp/info")).json()
        assert body["name"] == "test-server"
        assert body["transport"] == "http"
        assert body["transports"] == ["http"]
        assert "rpc" in body["capabilities"]

    @pytest.mark.asyncio
    async def test_list_tools(
        self, client: httpx.AsyncClient, echo_registration: HandlerRegistration,
    ) -> None:
        body = (await client.get("/mcp/tools")).json()
        assert body["count"] == 2
        echo = next(t for t in body["tools"] if t["name"] == "echo")
        assert echo["inputSchema"] == echo_registration.input_schema

    @pytest.mark.asyncio
    async def test_call_tool(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/mcp/tools/echo", json={"message": "hello"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"] == {"echo": "hello"}
        assert body["metadata"]["requestId"] == resp.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_call_tool_failure(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/mcp/tools/fail")
        assert resp.status_code == 500
        body = resp.json()
        assert body["error"] == "Tool Execution Failed"
        assert body["message"] == "boom"
        assert body["code"] == "HANDLER_EXECUTION_ERROR"

    @pytest.mark.asyncio
    async def test_call_unknown_tool(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/mcp/tools/missing", json={})
        assert resp.status_code == 404
        body = resp.json()
        assert body["error"] == "Tool Not Found"
        assert body["availableTools"] == ["echo", "fail"]

    @pytest.mark.asyncio
    async def test_call_tool_invalid_params(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/mcp/tools/echo", json={"message": 42})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid Parameters"

    @pytest.mark.asyncio
    async def test_call_tool_invalid_json(self, client: httpx.AsyncClient) -> None:
        resp = await client.post(
            "/mcp/tools/echo", content=b"{oops", headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid JSON"

    @pytest.mark.asyncio
    async def test_metrics_text(self, client: httpx.AsyncClient) -> None:
        await client.post("/mcp/tools/echo", json={"message": "x"})
        resp = await client.get("/mcp/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "tool_executions_total" in resp.text

    @pytest.mark.asyncio
    async def test_metrics_json(self, client: httpx.AsyncClient) -> None:
        await client.post("/mcp/tools/echo", json={"message": "x"})
        body = (await client.get("/mcp/metrics.json", params={"history": "true"})).json()
        assert body["service"] == "test-server"
        assert "values" in body["metrics"]["tool_execution_time"]

    @pytest.mark.asyncio
    async def test_unknown_route(self, client: httpx.AsyncClient) -> None:
        resp = await client.get("/mcp/nope", headers={"X-Request-ID": "req-123"})
        assert resp.status_code == 404
        body = resp.json()
        assert body["error"] == "Not Found"
        assert "not found" in body["message"]
        assert body["requestId"] == "req-123"
        assert resp.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_request_id_generated(self, client: httpx.AsyncClient) -> None:
        resp = await client.get("/mcp/info")
        assert len(resp.headers["X-Request-ID"]) == 32

    @pytest.mark.asyncio
    async def test_requests_are_counted(self, core: ServerCore) -> None:
        async with _client(HttpTransport(core)) as client:
            await client.get("/mcp/info")
            await client.get("/mcp/nope")
        assert core.metrics.get_latest_value("http_requests_total") == 2
        assert core.metrics.get_latest_value("http_errors_total") == 1


# ============================================================================
# JSON-RPC über HTTP
# ============================================================================


class TestRpcEndpoint:
    @pytest.mark.asyncio
    async def test_call(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/mcp/rpc", json={
            "jsonrpc": "2.0", "id": 7, "method": "tools/call",
            "params": {"name": "echo", "arguments": {"message": "rpc"}},
        })
        assert resp.status_code == 200
        assert resp.json()["result"]["structuredContent"] == {"echo": "rpc"}

    @pytest.mark.asyncio
    async def test_invalid_envelope(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/mcp/rpc", json={"id": 3, "method": "ping"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == -32600
        assert resp.json()["id"] == 3

    @pytest.mark.asyncio
    async def test_malformed_json(self, client: httpx.AsyncClient) -> None:
        resp = await client.post(
            "/mcp/rpc", content=b"{nope", headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == -32700

    @pytest.mark.asyncio
    async def test_notification_accepted(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/mcp/rpc", json={"jsonrpc": "2.0", "method": "ping"})
        assert resp.status_code == 202
        assert resp.content == b""

    @pytest.mark.asyncio
    async def test_batch(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/mcp/rpc", json=[
            {"jsonrpc": "2.0", "id": 1, "method": "ping"},
            {"jsonrpc": "2.0", "id": 2, "method": "tools/list"},
        ])
        assert resp.status_code == 200
        assert [r["id"] for r in resp.json()] == [1, 2]


# ============================================================================
# Auth, Rate-Limiting, CORS
# ============================================================================


class TestSecurity:
    @pytest.mark.asyncio
    async def test_api_key_required(self, server: ServerCore) -> None:
        config = create_test_config("secure", security={
            "auth": {"enabled": True, "type": "apikey", "api_keys": ["secret"]},
        })
        core = _core_with(config, server)
        async with _client(HttpTransport(core)) as client:
            missing = await client.get("/mcp/tools")
            wrong = await client.get("/mcp/tools", headers={"X-API-Key": "nope"})
            ok = await client.get("/mcp/tools", headers={"X-API-Key": "secret"})
            health = await client.get("/mcp/health")

        assert missing.status_code == 401
        assert missing.json()["error"] == "Unauthorized"
        assert missing.json()["code"] == "MISSING_CREDENTIALS"
        assert wrong.status_code == 401
        assert ok.status_code == 200
        # Health ist von der Authentifizierung ausgenommen (503: Kern nicht gestartet)
        assert health.status_code == 503

    @pytest.mark.asyncio
    async def test_tool_named_health_needs_key(self, server: ServerCore) -> None:
        config = create_test_config("secure", security={
            "auth": {"enabled": True, "type": "apikey", "api_keys": ["secret"]},
        })
        core = _core_with(config, server)
        core.register_handler(HandlerRegistration(name="health", handler=lambda params: "ok"))
        await core.start()
        try:
            async with _client(HttpTransport(core)) as client:
                anonymous = await client.post("/mcp/tools/health", json={})
                keyed = await client.post(
                    "/mcp/tools/health", json={}, headers={"X-API-Key": "secret"},
                )
                health = await client.get("/mcp/health")
        finally:
            await core.stop()

        assert anonymous.status_code == 401
        assert core.stats.request_count == 1
        assert keyed.status_code == 200
        assert keyed.json()["data"] == "ok"
        assert health.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_scope_is_forbidden(self, server: ServerCore) -> None:
        config = create_test_config("scoped", security={"auth": {
            "enabled": True, "type": "jwt", "jwt_secret": "s3cret",
            "jwt_required_scope": "tools:call",
        }})
        token = jwt.encode({"sub": "bob", "scope": "tools:read"}, "s3cret", algorithm="HS256")
        async with _client(HttpTransport(_core_with(config, server))) as client:
            resp = await client.get("/mcp/tools", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 403
        assert resp.json()["error"] == "Forbidden"
        assert resp.json()["code"] == "INSUFFICIENT_SCOPE"

    @pytest.mark.asyncio
    async def test_rate_limit(self, core: ServerCore, clock: Any) -> None:
        clock.now = 60_000
        limiter = RateLimiter(max_requests=2, window_ms=60_000, clock=clock)
        async with _client(HttpTransport(core, rate_limiter=limiter)) as client:
            first = await client.get("/mcp/info")
            second = await client.get("/mcp/info")
            third = await client.get("/mcp/info")
            other_route = await client.get("/mcp/tools")

        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.headers["X-RateLimit-Remaining"] == "0"
        assert third.status_code == 429
        assert third.json()["error"] == "Too Many Requests"
        assert third.headers["Retry-After"] == "60"
        assert third.headers["X-RateLimit-Remaining"] == "0"
        assert other_route.status_code == 200

    @pytest.mark.asyncio
    async def test_rate_limit_from_config(self, server: ServerCore) -> None:
        config = create_test_config("limited", security={
            "rate_limiting": {"enabled": True, "max_requests": 1, "window_ms": 3_600_000},
        })
        async with _client(HttpTransport(_core_with(config, server))) as client:
            assert (await client.get("/mcp/tools")).status_code == 200
            assert (await client.get("/mcp/tools")).status_code == 429

    @pytest.mark.asyncio
    async def test_cors(self, server: ServerCore) -> None:
        config = create_test_config("cors", security={
            "cors": {"enabled": True, "origins": ["http://example.com"]},
        })
        async with _client(HttpTransport(_core_with(config, server))) as client:
            simple = await client.get("/mcp/tools", headers={"Origin": "http://example.com"})
            preflight = await client.options("/mcp/rpc", headers={
                "Origin": "http://example.com",
                "Access-Control-Request-Method": "POST",
            })

        assert simple.headers["access-control-allow-origin"] == "http://example.com"
        assert preflight.status_code == 200
        assert "POST" in preflight.headers["access-control-allow-methods"]

    @pytest.mark.asyncio
    async def test_custom_base_path(self, server: ServerCore) -> None:
        config = create_test_config("root", http={"base_path": "/"})
        transport = HttpTransport(_core_with(config, server))
        assert transport.base_path == ""
        async with _client(transport) as client:
            assert (await client.get("/tools")).status_code == 200
        assert transport.endpoints()["rpc"] == "http://localhost:8001/rpc"


# ============================================================================
# Lifecycle mit uvicorn
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_close(self, server: ServerCore) -> None:
        port = _free_port()
        config = create_test_config("live", host="127.0.0.1", port=port)
        core = _core_with(config, server)
        await core.start()
        transport = HttpTransport(core)
        try:
            await transport.start()
            assert transport.is_running
            async with httpx.AsyncClient() as client:
                resp = await client.get(f"http://127.0.0.1:{port}/mcp/health")
            assert resp.status_code == 200

            with pytest.raises(ConfigurationError, match="already started"):
                await transport.start()
        finally:
            await transport.close()
            await core.stop()
        assert not transport.is_running

    @pytest.mark.asyncio
    async def test_port_in_use(self, server: ServerCore) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            port = blocker.getsockname()[1]

            config = create_test_config("busy", host="127.0.0.1", port=port)
            transport = HttpTransport(_core_with(config, server))
            with pytest.raises(ConfigurationError, match="failed to listen"):
                await transport.start()
            assert not transport.is_running

    @pytest.mark.asyncio
    async def test_close_without_start(self, core: ServerCore) -> None:
        await HttpTransport(core).close()
