"""
Tests für toolhost.core.server – ServerCore.

Testet:
  - Handler-Registrierung (Duplikate, Namen, Schemas)
  - Zustandsmaschine (start/stop/reset/restart)
  - invoke() mit Erfolg, Fehler, Timeout und Validierung
  - Health-Aggregation und eigene Sub-Checks
  - Events
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from pydantic import BaseModel

from toolhost.config import ServerConfig, create_test_config
from toolhost.core.errors import (
    AuthorizationError,
    ConfigurationError,
    NotFoundError,
    ServerStateError,
    ValidationError,
)
from toolhost.core.events import HandlerError, HandlerInvoked, ServerEvent
from toolhost.core.server import (
    ServerBuilder,
    ServerCore,
    ServerCoreProtocol,
    create_basic_server,
)
from toolhost.models import (
    CheckStatus,
    HandlerRegistration,
    HealthCheck,
    HealthStatus,
    ServerState,
    ToolCategory,
)


class AddParams(BaseModel):
    a: int
    b: int


def add(params: AddParams) -> int:
    return params.a + params.b


# ============================================================================
# Registrierung
# ============================================================================


class TestRegistration:
    def test_register_and_list(self, server: ServerCore) -> None:
        assert set(server.handlers) == {"echo", "fail"}
        assert server.get_handler("echo") is not None
        assert server.get_handler("missing") is None

    def test_duplicate_rejected_first_kept(self, server: ServerCore) -> None:
        original = server.get_handler("echo")
        with pytest.raises(ValidationError, match="already registered"):
            server.register_handler(HandlerRegistration(name="echo", handler=add))
        assert server.get_handler("echo") is original

    @pytest.mark.parametrize("name", ["", "1starts-with-digit", "has space", "x" * 101])
    def test_invalid_names(self, server: ServerCore, name: str) -> None:
        with pytest.raises(ValidationError):
            server.register_handler(HandlerRegistration(name=name, handler=add))

    def test_not_callable(self, server: ServerCore) -> None:
        with pytest.raises(ValidationError, match="not callable"):
            server.register_handler(HandlerRegistration(name="bad", handler="nope"))  # type: ignore[arg-type]

    def test_invalid_json_schema(self, server: ServerCore) -> None:
        with pytest.raises(ValidationError, match="Invalid input schema"):
            server.register_handler(HandlerRegistration(
                name="bad_schema", handler=add, input_schema={"type": "not-a-type"},
            ))

    def test_unregister(self, server: ServerCore) -> None:
        server.unregister_handler("fail")
        assert "fail" not in server.handlers
        with pytest.raises(NotFoundError):
            server.unregister_handler("fail")

    def test_handlers_mapping_is_read_only(self, server: ServerCore) -> None:
        with pytest.raises(TypeError):
            server.handlers["x"] = None  # type: ignore[index]

    def test_list_by_category(self, server: ServerCore) -> None:
        server.register_handler(HandlerRegistration(
            name="add", handler=add, input_schema=AddParams, category=ToolCategory.ANALYTICS,
        ))
        assert [h.name for h in server.list_handlers(ToolCategory.ANALYTICS)] == ["add"]
        assert len(server.list_handlers()) == 3

    def test_decorator(self, config: ServerConfig) -> None:
        core = ServerCore(config)

        @core.handler(category=ToolCategory.DATA)
        async def lookup(params: dict[str, Any]) -> str:
            """Look something up.

            Longer explanation.
            """
            return "found"

        reg = core.get_handler("lookup")
        assert reg is not None
        assert reg.description == "Look something up."
        assert reg.category is ToolCategory.DATA

    def test_satisfies_protocol(self, server: ServerCore) -> None:
        assert isinstance(server, ServerCoreProtocol)


# ============================================================================
# Lebenszyklus
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self, server: ServerCore) -> None:
        assert server.state is ServerState.STOPPED
        await server.start()
        assert server.state is ServerState.RUNNING
        assert server.is_running
        assert server.metrics.is_running
        await server.stop()
        assert server.state is ServerState.STOPPED
        assert not server.metrics.is_running

    @pytest.mark.asyncio
    async def test_double_start_rejected(self, server: ServerCore) -> None:
        await server.start()
        try:
            with pytest.raises(ServerStateError):
                await server.start()
            assert server.state is ServerState.RUNNING
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_rejected(self, server: ServerCore) -> None:
        with pytest.raises(ServerStateError):
            await server.stop()

    @pytest.mark.asyncio
    async def test_invalid_config_moves_to_error(self) -> None:
        core = ServerCore(ServerConfig(name="bad name!", port=8001))
        events: list[ServerEvent] = []
        core.subscribe(events.append)

        with pytest.raises(ConfigurationError):
            await core.start()
        assert core.state is ServerState.ERROR
        assert "server:error" in [e.type for e in events]

        # Aus error: erneuter Start nur nach reset()/stop()
        with pytest.raises(ServerStateError):
            await core.start()
        core.reset()
        assert core.state is ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_reset_only_from_error(self, server: ServerCore) -> None:
        with pytest.raises(ServerStateError):
            server.reset()

    @pytest.mark.asyncio
    async def test_shutdown_hooks_run_in_reverse(self, server: ServerCore) -> None:
        order: list[str] = []

        async def first() -> None:
            order.append("first")

        async def second() -> None:
            order.append("second")

        await server.start()
        server.add_shutdown_hook(first)
        server.add_shutdown_hook(second)
        await server.stop()
        assert order == ["second", "first"]

        # Hooks gelten nur für einen Lauf
        await server.start()
        await server.stop()
        assert order == ["second", "first"]

    @pytest.mark.asyncio
    async def test_failing_hook_runs_others_and_reraises(self, server: ServerCore) -> None:
        ran: list[str] = []

        async def good() -> None:
            ran.append("good")

        async def bad() -> None:
            raise RuntimeError("close failed")

        await server.start()
        server.add_shutdown_hook(good)
        server.add_shutdown_hook(bad)
        with pytest.raises(RuntimeError, match="close failed"):
            await server.stop()
        assert ran == ["good"]
        assert server.state is ServerState.ERROR

        await server.stop()
        assert server.state is ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_restart(self, server: ServerCore) -> None:
        states: list[str] = []
        server.subscribe(lambda e: states.append(e.type))
        await server.start()
        await server.restart()
        assert server.state is ServerState.RUNNING
        assert states.count("server:started") == 2
        assert states.count("server:stopped") == 1
        await server.stop()

    @pytest.mark.asyncio
    async def test_restart_recovers_from_failed_stop(self, server: ServerCore) -> None:
        async def bad() -> None:
            raise RuntimeError("close failed")

        await server.start()
        server.add_shutdown_hook(bad)
        await server.restart()
        assert server.state is ServerState.RUNNING
        await server.stop()

    @pytest.mark.asyncio
    async def test_uptime(self, server: ServerCore) -> None:
        assert server.uptime_s == 0.0
        await server.start()
        await asyncio.sleep(0.01)
        assert server.uptime_s > 0
        await server.stop()
        assert server.uptime_s == 0.0


# ============================================================================
# Aufrufe
# ============================================================================


class TestInvoke:
    @pytest.mark.asyncio
    async def test_success(self, server: ServerCore) -> None:
        result = await server.invoke("echo", {"message": "hi"}, request_id="req-1")
        assert result.success
        assert result.data == {"echo": "hi"}
        assert result.metadata.request_id == "req-1"
        assert result.metadata.execution_time_ms >= 0
        assert server.stats.request_count == 1
        assert server.metrics.get_tool_execution_counts() == {"echo": 1}

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_result(self, server: ServerCore) -> None:
        result = await server.invoke("fail")
        assert not result.success
        assert result.error == "boom"
        assert result.error_code == "HANDLER_EXECUTION_ERROR"
        stats = server.stats
        assert stats.error_count == 1
        assert stats.last_error == "boom"
        assert server.metrics.error_count == 1

    @pytest.mark.asyncio
    async def test_handler_error_code_is_kept(self, server: ServerCore) -> None:
        def denied(params: dict) -> None:
            raise AuthorizationError("no access to payroll", error_code="PAYROLL_DENIED")

        server.register_handler(HandlerRegistration(name="payroll", handler=denied))
        result = await server.invoke("payroll")
        assert not result.success
        assert result.error == "no access to payroll"
        assert result.error_code == "PAYROLL_DENIED"

    @pytest.mark.asyncio
    async def test_unknown_handler(self, server: ServerCore) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await server.invoke("missing")
        assert exc_info.value.details["available"] == ["echo", "fail"]

    @pytest.mark.asyncio
    async def test_json_schema_validation(self, server: ServerCore) -> None:
        with pytest.raises(ValidationError):
            await server.invoke("echo", {"message": 42})
        with pytest.raises(ValidationError):
            await server.invoke("echo", {})
        # Validierungsfehler zählen nicht als Handler-Fehler
        assert server.stats.error_count == 0
        assert server.stats.request_count == 0

    @pytest.mark.asyncio
    async def test_pydantic_validation(self, server: ServerCore) -> None:
        server.register_handler(HandlerRegistration(name="add", handler=add, input_schema=AddParams))
        result = await server.invoke("add", {"a": 2, "b": "3"})
        assert result.data == 5

        with pytest.raises(ValidationError) as exc_info:
            await server.invoke("add", {"a": "x"})
        locs = [e["loc"] for e in exc_info.value.details["errors"]]
        assert ["a"] in locs
        assert ["b"] in locs

    @pytest.mark.asyncio
    async def test_params_must_be_object(self, server: ServerCore) -> None:
        with pytest.raises(ValidationError):
            await server.invoke("echo", ["not", "a", "dict"])

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        core = ServerCore(create_test_config("timeout-test", performance={"tool_timeout_ms": 100}))

        async def slow(params: dict[str, Any]) -> str:
            await asyncio.sleep(5)
            return "never"

        core.register_handler(HandlerRegistration(name="slow", handler=slow))
        result = await core.invoke("slow")
        assert not result.success
        assert result.error_code == "HANDLER_TIMEOUT"
        assert "timed out" in (result.error or "")

    @pytest.mark.asyncio
    async def test_events_published(self, server: ServerCore) -> None:
        events: list[ServerEvent] = []
        server.subscribe(events.append)
        await server.invoke("echo", {"message": "hi"})
        await server.invoke("fail")

        invoked = [e for e in events if isinstance(e, HandlerInvoked)]
        errors = [e for e in events if isinstance(e, HandlerError)]
        assert [(e.name, e.success) for e in invoked] == [("echo", True), ("fail", False)]
        assert len(errors) == 1
        assert errors[0].error == "boom"

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_invoke(self, server: ServerCore) -> None:
        def broken(event: ServerEvent) -> None:
            raise RuntimeError("listener broke")

        server.subscribe(broken)
        result = await server.invoke("echo", {"message": "still works"})
        assert result.success

    @pytest.mark.asyncio
    async def test_concurrent_invocations(self, server: ServerCore) -> None:
        results = await asyncio.gather(*(
            server.invoke("echo", {"message": str(i)}) for i in range(50)
        ))
        assert all(r.success for r in results)
        assert server.stats.request_count == 50
        assert server.stats.active_requests == 0


# ============================================================================
# Health
# ============================================================================


class TestHealth:
    @pytest.mark.asyncio
    async def test_stopped_server_is_unhealthy(self, server: ServerCore) -> None:
        health = await server.get_health()
        assert health.status is HealthStatus.UNHEALTHY
        assert health.checks["server"].status is CheckStatus.FAIL

    @pytest.mark.asyncio
    async def test_running_server(self, server: ServerCore) -> None:
        await server.start()
        try:
            health = await server.get_health()
            assert set(health.checks) >= {"server", "handlers", "memory", "metrics"}
            assert health.checks["server"].status is CheckStatus.PASS
            assert health.checks["handlers"].status is CheckStatus.PASS
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_no_handlers_warns(self, config: ServerConfig) -> None:
        core = ServerCore(config)
        health = await core.get_health()
        assert health.checks["handlers"].status is CheckStatus.WARN

    @pytest.mark.asyncio
    async def test_custom_checks(self, server: ServerCore) -> None:
        async def db_check() -> HealthCheck:
            return HealthCheck(status=CheckStatus.WARN, message="slow replica")

        def cache_check() -> tuple[str, str]:
            return ("pass", "warm")

        def broken_check() -> bool:
            raise ConnectionError("redis down")

        server.add_health_check("db", db_check)
        server.add_health_check("cache", cache_check)
        server.add_health_check("redis", broken_check)
        server.add_health_check("garbage", lambda: "not-a-status")

        health = await server.get_health()
        assert health.checks["db"].status is CheckStatus.WARN
        assert health.checks["cache"].message == "warm"
        assert health.checks["redis"].status is CheckStatus.FAIL
        assert health.checks["redis"].message == "redis down"
        assert health.checks["garbage"].status is CheckStatus.FAIL
        assert health.status is HealthStatus.UNHEALTHY


# ============================================================================
# Builder
# ============================================================================


class TestBuilder:
    def test_builder(self, config: ServerConfig) -> None:
        core = (
            ServerBuilder()
            .with_config(config)
            .with_handler(HandlerRegistration(name="add", handler=add, input_schema=AddParams))
            .with_health_check("always", lambda: True)
            .build()
        )
        assert core.config is config
        assert list(core.handlers) == ["add"]

    def test_create_basic_server(self) -> None:
        core = create_basic_server(
            "basic", [HandlerRegistration(name="add", handler=add)], port=9001,
        )
        assert core.config.name == "basic"
        assert core.config.port == 9001
        assert "add" in core.handlers
