"""Toolhost · ServerCore.

Besitzt Konfiguration, Handler-Registry, Zustandsmaschine und Event-Bus und
vermittelt jeden Handler-Aufruf. Transports kennen nur die schmale
Schnittstelle ServerCoreProtocol {start, stop, invoke, get_health}.

Zustandsmaschine:

    stopped → starting → running → stopping → stopped
                 ↘          ↘          ↙
                          error ──stop()/reset()──→ stopped

Handler-Fehler werden in invoke() abgefangen und als ToolResult mit
success=False zurückgegeben. Sie erreichen den Transport nie als Exception.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable

import jsonschema
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from toolhost.config import ServerConfig, validate_server_config
from toolhost.core.errors import (
    HandlerExecutionError,
    NotFoundError,
    ServerStateError,
    ToolhostError,
    ValidationError,
)
from toolhost.core.events import (
    EventBus,
    EventListener,
    HandlerError,
    HandlerInvoked,
    HandlerRegistered,
    ServerError,
    ServerEvent,
    ServerStarted,
    ServerStarting,
    ServerStopped,
    ServerStopping,
    StateChanged,
)
from toolhost.models import (
    HANDLER_NAME_PATTERN,
    CheckStatus,
    HandlerRegistration,
    HealthCheck,
    HealthCheckResult,
    ServerState,
    ServerStats,
    ToolCategory,
    ToolResult,
    ToolResultMetadata,
)
from toolhost.telemetry.metrics import MetricsCollector
from toolhost.utils.logging import get_logger

log = get_logger(__name__)

# Schwellwerte der eingebauten Health-Checks
MEMORY_WARN_MB = 500
MEMORY_FAIL_MB = 1024
SCORE_WARN = 70
SCORE_FAIL = 30

HealthCheckFn = Callable[[], Any]
ShutdownHook = Callable[[], Awaitable[None]]


@runtime_checkable
class ServerCoreProtocol(Protocol):
    """Fähigkeiten, die ein Transport vom Server braucht."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def invoke(
        self, name: str, params: Any = None, request_id: str | None = None,
    ) -> ToolResult: ...

    async def get_health(self) -> HealthCheckResult: ...


class ServerCore:
    """Lebenszyklus, Handler-Registry und Aufruf-Vermittlung eines Servers."""

    def __init__(
        self,
        config: ServerConfig | None = None,
        *,
        metrics: MetricsCollector | None = None,
        server_id: str | None = None,
    ) -> None:
        self._config = config or ServerConfig()
        self._server_id = server_id or f"{self._config.name}-{uuid.uuid4().hex[:8]}"
        self._metrics = metrics or MetricsCollector(
            self._config.name,
            max_data_points=self._config.metrics.max_data_points,
            retention_ms=self._config.metrics.retention_ms,
            cleanup_interval_s=self._config.metrics.cleanup_interval_s,
            snapshot_interval_s=self._config.metrics.snapshot_interval_s,
        )
        self._events = EventBus()

        self._state = ServerState.STOPPED
        self._handlers: dict[str, HandlerRegistration] = {}
        self._health_checks: dict[str, HealthCheckFn] = {}
        self._shutdown_hooks: list[ShutdownHook] = []

        self._started_at: float | None = None
        self._request_count = 0
        self._error_count = 0
        self._active_requests = 0
        self._last_error: str | None = None

    # ── Properties ───────────────────────────────────────────────

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def server_id(self) -> str:
        return self._server_id

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ServerState.RUNNING

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def handlers(self) -> Mapping[str, HandlerRegistration]:
        return MappingProxyType(self._handlers)

    @property
    def uptime_s(self) -> float:
        if self._started_at is None:
            return 0.0
        return round(time.monotonic() - self._started_at, 3)

    # ── Events ───────────────────────────────────────────────────

    def subscribe(self, listener: EventListener) -> None:
        self._events.subscribe(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        self._events.unsubscribe(listener)

    def _publish(self, event_cls: type[ServerEvent], **fields: Any) -> None:
        self._events.publish(event_cls(server_id=self._server_id, **fields))

    def _set_state(self, state: ServerState) -> None:
        previous, self._state = self._state, state
        log.debug("server_state_changed", server=self._server_id,
                  previous=str(previous), current=str(state))
        self._publish(StateChanged, previous=str(previous), current=str(state))

    # ── Registration API ─────────────────────────────────────────

    def register_handler(self, registration: HandlerRegistration) -> None:
        """Registriert einen Handler. Doppelte Namen werden abgewiesen."""
        name = registration.name
        if not name:
            raise ValidationError("Handler name is required", details={"field": "name"})
        if not HANDLER_NAME_PATTERN.match(name):
            raise ValidationError(
                f"Invalid handler name '{name}'",
                details={"field": "name", "value": name},
            )
        if not callable(registration.handler):
            raise ValidationError(
                f"Handler '{name}' is not callable",
                details={"field": "handler", "name": name},
            )
        if name in self._handlers:
            raise ValidationError(
                f"Handler '{name}' is already registered",
                details={"field": "name", "value": name},
            )
        _check_schema(registration)

        self._handlers[name] = registration
        log.info("handler_registered", name=name, category=str(registration.category))
        self._publish(HandlerRegistered, name=name, category=str(registration.category))

    def register_handlers(self, registrations: list[HandlerRegistration]) -> None:
        for registration in registrations:
            self.register_handler(registration)

    def unregister_handler(self, name: str) -> None:
        if name not in self._handlers:
            raise NotFoundError(f"Handler '{name}' not found", details={"name": name})
        del self._handlers[name]
        log.info("handler_unregistered", name=name)

    def get_handler(self, name: str) -> HandlerRegistration | None:
        return self._handlers.get(name)

    def list_handlers(self, category: ToolCategory | str | None = None) -> list[HandlerRegistration]:
        handlers = list(self._handlers.values())
        if category is not None:
            handlers = [h for h in handlers if h.category == category]
        return handlers

    def handler(
        self,
        name: str = "",
        *,
        description: str = "",
        input_schema: type[BaseModel] | dict[str, Any] | None = None,
        category: ToolCategory = ToolCategory.UTILITY,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator-Variante von register_handler.

        Usage:
            @server.handler("echo", description="Echo back")
            async def echo(params): ...
        """
        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_handler(HandlerRegistration(
                name=name or fn.__name__,
                handler=fn,
                description=description or (inspect.getdoc(fn) or "").split("\n")[0],
                input_schema=input_schema,
                category=category,
            ))
            return fn

        return decorator

    def add_health_check(self, name: str, check: HealthCheckFn) -> None:
        """Registriert einen zusätzlichen Sub-Check (sync oder async)."""
        self._health_checks[name] = check

    def add_shutdown_hook(self, hook: ShutdownHook) -> None:
        """Hooks laufen bei stop() in umgekehrter Reihenfolge, einmal pro Lauf."""
        self._shutdown_hooks.append(hook)

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Startet den Server. Nur aus dem Zustand stopped gültig."""
        if self._state is not ServerState.STOPPED:
            raise ServerStateError(
                f"Cannot start server in state '{self._state}'",
                details={"state": str(self._state), "expected": "stopped"},
            )

        self._set_state(ServerState.STARTING)
        self._publish(ServerStarting)
        try:
            validate_server_config(self._config)
            self._metrics.start()
        except Exception as exc:
            self._fail(exc, "server_start_failed")
            raise

        self._started_at = time.monotonic()
        self._set_state(ServerState.RUNNING)
        log.info(
            "server_started",
            server=self._server_id,
            name=self._config.name,
            version=self._config.version,
            handlers=len(self._handlers),
        )
        self._publish(ServerStarted)

    async def stop(self) -> None:
        """Stoppt den Server. Gültig aus running und error.

        Alle Shutdown-Hooks laufen, auch wenn einer fehlschlägt; der erste
        Fehler wird danach erneut geworfen und der Server landet in error.
        """
        if self._state not in (ServerState.RUNNING, ServerState.ERROR):
            raise ServerStateError(
                f"Cannot stop server in state '{self._state}'",
                details={"state": str(self._state), "expected": "running|error"},
            )

        self._set_state(ServerState.STOPPING)
        self._publish(ServerStopping)

        first_error: BaseException | None = None
        hooks, self._shutdown_hooks = self._shutdown_hooks, []
        for hook in reversed(hooks):
            try:
                await hook()
            except Exception as exc:
                log.error("shutdown_hook_failed", server=self._server_id, error=str(exc))
                if first_error is None:
                    first_error = exc

        try:
            await self._metrics.shutdown()
        except Exception as exc:
            if first_error is None:
                first_error = exc

        if first_error is not None:
            self._fail(first_error, "server_stop_failed")
            raise first_error

        self._started_at = None
        self._set_state(ServerState.STOPPED)
        log.info("server_stopped", server=self._server_id)
        self._publish(ServerStopped)

    def reset(self) -> None:
        """Setzt einen Server im Zustand error zurück auf stopped."""
        if self._state is not ServerState.ERROR:
            raise ServerStateError(
                f"Cannot reset server in state '{self._state}'",
                details={"state": str(self._state), "expected": "error"},
            )
        self._started_at = None
        self._set_state(ServerState.STOPPED)

    async def restart(self) -> None:
        """Harter Neustart: stop() ohne Drain, dann start().

        Scheitert stop(), wird der Fehlerzustand per reset() normalisiert,
        bevor neu gestartet wird.
        """
        if self._state in (ServerState.RUNNING, ServerState.ERROR):
            try:
                await self.stop()
            except Exception as exc:
                log.warning("server_restart_stop_failed", server=self._server_id, error=str(exc))
                self.reset()
        await self.start()

    def _fail(self, exc: BaseException, event: str) -> None:
        self._last_error = str(exc)
        log.error(event, server=self._server_id, error=str(exc), exc_type=type(exc).__name__)
        self._set_state(ServerState.ERROR)
        self._publish(ServerError, error=str(exc))

    # ── Invocation ───────────────────────────────────────────────

    async def invoke(
        self, name: str, params: Any = None, request_id: str | None = None,
    ) -> ToolResult:
        """Ruft einen Handler auf.

        Raises:
            NotFoundError: Handler unbekannt.
            ValidationError: Eingabe passt nicht zum input_schema.

        Handler-Fehler und Timeouts werden als ToolResult(success=False)
        zurückgegeben.
        """
        registration = self._handlers.get(name)
        if registration is None:
            raise NotFoundError(
                f"Handler '{name}' not found",
                details={"name": name, "available": sorted(self._handlers)},
            )

        validated = _validate_input(registration, {} if params is None else params)
        request_id = request_id or uuid.uuid4().hex
        timeout_s = self._config.performance.tool_timeout_ms / 1000

        self._request_count += 1
        self._active_requests += 1
        start = time.monotonic()
        data: Any = None
        failure: ToolhostError | None = None
        try:
            result = registration.handler(validated)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=timeout_s)
            data = result
        except asyncio.TimeoutError:
            failure = HandlerExecutionError(
                f"Handler '{name}' timed out after {self._config.performance.tool_timeout_ms} ms",
                error_code="HANDLER_TIMEOUT",
            )
        except ToolhostError as exc:
            failure = exc
        except Exception as exc:
            failure = HandlerExecutionError(str(exc) or type(exc).__name__)
        finally:
            self._active_requests -= 1

        error = failure.message if failure is not None else None
        error_code = failure.error_code if failure is not None else None

        duration_ms = round((time.monotonic() - start) * 1000, 3)
        success = failure is None
        self._metrics.record_tool_execution(name, duration_ms, success)

        if not success:
            self._error_count += 1
            self._last_error = error
            log.warning("handler_failed", name=name, request_id=request_id, error=error)
            self._publish(HandlerError, name=name, message=error or "", request_id=request_id)

        self._publish(
            HandlerInvoked,
            name=name, duration_ms=duration_ms, success=success, request_id=request_id,
        )
        return ToolResult(
            success=success,
            data=data,
            error=error,
            error_code=error_code,
            metadata=ToolResultMetadata(execution_time_ms=duration_ms, request_id=request_id),
        )

    # ── Health & Stats ───────────────────────────────────────────

    async def get_health(self) -> HealthCheckResult:
        """Führt alle Sub-Checks aus und aggregiert sie."""
        checks: dict[str, HealthCheck] = {}
        all_checks: dict[str, HealthCheckFn] = {
            "server": self._check_server,
            "handlers": self._check_handlers,
            "memory": self._check_memory,
            "metrics": self._check_metrics,
            **self._health_checks,
        }
        for name, check in all_checks.items():
            checks[name] = await _run_check(check)
        return HealthCheckResult.aggregate(checks, uptime_s=self.uptime_s)

    def _check_server(self) -> HealthCheck:
        if self._state is ServerState.RUNNING:
            return HealthCheck(status=CheckStatus.PASS)
        return HealthCheck(status=CheckStatus.FAIL, message=f"Server state is '{self._state}'")

    def _check_handlers(self) -> HealthCheck:
        if not self._handlers:
            return HealthCheck(status=CheckStatus.WARN, message="No handlers registered")
        return HealthCheck(status=CheckStatus.PASS, metadata={"count": len(self._handlers)})

    def _check_memory(self) -> HealthCheck:
        memory_mb = self._metrics.get_current_resource_usage()["memory_mb"]
        metadata = {"memoryMb": memory_mb}
        if memory_mb > MEMORY_FAIL_MB:
            return HealthCheck(status=CheckStatus.FAIL, message="Memory usage critical", metadata=metadata)
        if memory_mb > MEMORY_WARN_MB:
            return HealthCheck(status=CheckStatus.WARN, message="Memory usage high", metadata=metadata)
        return HealthCheck(status=CheckStatus.PASS, metadata=metadata)

    def _check_metrics(self) -> HealthCheck:
        score = self._metrics.get_health_score()
        metadata = {"healthScore": score}
        if score < SCORE_FAIL:
            return HealthCheck(status=CheckStatus.FAIL, message="Health score critical", metadata=metadata)
        if score < SCORE_WARN:
            return HealthCheck(status=CheckStatus.WARN, message="Health score low", metadata=metadata)
        return HealthCheck(status=CheckStatus.PASS, metadata=metadata)

    @property
    def stats(self) -> ServerStats:
        usage = self._metrics.get_current_resource_usage()
        return ServerStats(
            state=self._state,
            uptime_s=self.uptime_s,
            request_count=self._request_count,
            error_count=self._error_count,
            active_requests=self._active_requests,
            last_error=self._last_error,
            avg_response_time_ms=self._metrics.get_average_response_time(),
            memory_mb=usage["memory_mb"],
            cpu_percent=usage["cpu_percent"],
            registered_tools=len(self._handlers),
            tool_executions=self._metrics.get_tool_execution_counts(),
        )


# ============================================================================
# Builder
# ============================================================================


class ServerBuilder:
    """Fluent-Aufbau eines ServerCore.

    Usage:
        server = (
            ServerBuilder()
            .with_config(create_dev_config("demo"))
            .with_handler(HandlerRegistration("echo", echo))
            .build()
        )
    """

    def __init__(self) -> None:
        self._config: ServerConfig | None = None
        self._registrations: list[HandlerRegistration] = []
        self._health_checks: dict[str, HealthCheckFn] = {}
        self._metrics: MetricsCollector | None = None

    def with_config(self, config: ServerConfig) -> ServerBuilder:
        self._config = config
        return self

    def with_metrics(self, metrics: MetricsCollector) -> ServerBuilder:
        self._metrics = metrics
        return self

    def with_handler(self, registration: HandlerRegistration) -> ServerBuilder:
        self._registrations.append(registration)
        return self

    def with_handlers(self, registrations: list[HandlerRegistration]) -> ServerBuilder:
        self._registrations.extend(registrations)
        return self

    def with_health_check(self, name: str, check: HealthCheckFn) -> ServerBuilder:
        self._health_checks[name] = check
        return self

    def build(self) -> ServerCore:
        server = ServerCore(self._config, metrics=self._metrics)
        server.register_handlers(self._registrations)
        for name, check in self._health_checks.items():
            server.add_health_check(name, check)
        return server


def create_basic_server(
    name: str, handlers: list[HandlerRegistration] | None = None, **overrides: Any,
) -> ServerCore:
    """ServerCore mit Default-Konfiguration und den gegebenen Handlern."""
    config = ServerConfig(name=name, **overrides)
    return ServerBuilder().with_config(config).with_handlers(handlers or []).build()


# ============================================================================
# Helpers
# ============================================================================


def _check_schema(registration: HandlerRegistration) -> None:
    schema = registration.input_schema
    if schema is None:
        return
    if isinstance(schema, dict):
        try:
            jsonschema.validators.validator_for(schema).check_schema(schema)
        except jsonschema.SchemaError as exc:
            raise ValidationError(
                f"Invalid input schema for handler '{registration.name}': {exc.message}",
                details={"field": "input_schema", "name": registration.name},
            ) from exc
        return
    if not (isinstance(schema, type) and issubclass(schema, BaseModel)):
        raise ValidationError(
            f"Input schema for handler '{registration.name}' must be a pydantic model or a JSON schema",
            details={"field": "input_schema", "name": registration.name},
        )


def _validate_input(registration: HandlerRegistration, params: Any) -> Any:
    """Prüft params gegen das input_schema und gibt den typisierten Wert zurück."""
    if not isinstance(params, dict):
        raise ValidationError(
            f"Parameters for '{registration.name}' must be an object",
            details={"name": registration.name},
        )

    schema = registration.input_schema
    if schema is None:
        return params

    if isinstance(schema, dict):
        try:
            jsonschema.validate(params, schema)
        except jsonschema.ValidationError as exc:
            raise ValidationError(
                f"Invalid parameters for '{registration.name}': {exc.message}",
                details={"name": registration.name, "path": list(exc.absolute_path)},
            ) from exc
        return params

    try:
        return schema.model_validate(params)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid parameters for '{registration.name}'",
            details={
                "name": registration.name,
                "errors": [
                    {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
                    for e in exc.errors()
                ],
            },
        ) from exc


async def _run_check(check: HealthCheckFn) -> HealthCheck:
    """Führt einen Sub-Check zeitgemessen aus. Exceptions werden zu fail."""
    start = time.monotonic()
    try:
        outcome = check()
        if inspect.isawaitable(outcome):
            outcome = await outcome
        duration_ms = round((time.monotonic() - start) * 1000, 3)
        if isinstance(outcome, HealthCheck):
            return outcome.model_copy(update={"duration_ms": duration_ms})
        if isinstance(outcome, tuple):
            status, message = outcome
            return HealthCheck(status=CheckStatus(status), duration_ms=duration_ms, message=message)
        if isinstance(outcome, bool):
            return HealthCheck(
                status=CheckStatus.PASS if outcome else CheckStatus.FAIL, duration_ms=duration_ms,
            )
        return HealthCheck(status=CheckStatus(outcome), duration_ms=duration_ms)
    except Exception as exc:
        return HealthCheck(
            status=CheckStatus.FAIL,
            duration_ms=round((time.monotonic() - start) * 1000, 3),
            message=str(exc) or type(exc).__name__,
        )
