"""MCP-Server: ServerCore plus die konfigurierten Transports.

  - http.enabled  → HttpTransport (FastAPI/uvicorn)
  - enable_stdio  → StdioTransport (stdin/stdout)

start() startet zuerst den Kern, dann die Transports; deren close() wird
als Shutdown-Hook am Kern registriert, sodass stop() die Transports vor
dem Kern schließt.
"""

from __future__ import annotations

import asyncio
from typing import Any, TextIO

from toolhost.config import ServerConfig, create_dev_config, create_prod_config
from toolhost.core.server import ServerCore
from toolhost.mcp.http import HttpTransport
from toolhost.mcp.rpc import RpcDispatcher
from toolhost.mcp.stdio import StdioTransport
from toolhost.models import HandlerRegistration, ServerState
from toolhost.telemetry.metrics import MetricsCollector
from toolhost.utils.logging import get_logger

log = get_logger(__name__)

__all__ = [
    "McpServer",
    "create_development_server",
    "create_production_server",
]


class McpServer:
    """Toolhost-Server mit HTTP- und/oder stdio-Transport."""

    def __init__(
        self,
        config: ServerConfig | None = None,
        *,
        core: ServerCore | None = None,
        metrics: MetricsCollector | None = None,
        handlers: list[HandlerRegistration] | None = None,
        stdin: asyncio.StreamReader | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self._core = core or ServerCore(config, metrics=metrics)
        self._config = self._core.config

        self._http: HttpTransport | None = None
        self._stdio: StdioTransport | None = None
        if self._config.http.enabled:
            self._http = HttpTransport(
                self._core, config=self._config, info_provider=self._transport_info,
            )
        if self._config.enable_stdio:
            dispatcher = RpcDispatcher(
                self._core,
                info_provider=self.info,
                max_batch_size=self._config.performance.max_batch_size,
            )
            self._stdio = StdioTransport(
                dispatcher,
                reader=stdin,
                writer=stdout,
                max_concurrency=self._config.performance.max_concurrent_requests,
                max_message_bytes=self._config.performance.max_message_bytes,
            )

        if handlers:
            self._core.register_handlers(handlers)

    # ── Properties ───────────────────────────────────────────────

    @property
    def core(self) -> ServerCore:
        return self._core

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def http(self) -> HttpTransport | None:
        return self._http

    @property
    def stdio(self) -> StdioTransport | None:
        return self._stdio

    @property
    def state(self) -> ServerState:
        return self._core.state

    @property
    def is_running(self) -> bool:
        return self._core.is_running

    def register_handler(self, registration: HandlerRegistration) -> None:
        self._core.register_handler(registration)

    def enabled_transports(self) -> list[str]:
        transports = []
        if self._http is not None:
            transports.append("http")
        if self._stdio is not None:
            transports.append("stdio")
        return transports

    def _transport_info(self) -> dict[str, Any]:
        return {"transports": self.enabled_transports()}

    def info(self) -> dict[str, Any]:
        return {
            "name": self._config.name,
            "version": self._config.version,
            "description": self._config.description,
            "protocol": "mcp",
            "transports": self.enabled_transports(),
            "primaryTransport": self._config.primary_transport,
        }

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Startet Kern und Transports.

        Scheitert ein Transport, wird der Kern wieder gestoppt (bereits
        gestartete Transports schließen dabei über ihre Hooks) und der
        Fehler weitergereicht.
        """
        await self._core.start()
        try:
            for transport in (self._http, self._stdio):
                if transport is None:
                    continue
                await transport.start()
                self._core.add_shutdown_hook(transport.close)
        except Exception as exc:
            log.error("transport_start_failed", error=str(exc))
            await self._core.stop()
            raise

        log.info(
            "mcp_server_started",
            name=self._config.name,
            transports=self.enabled_transports(),
            primary=self._config.primary_transport,
        )

    async def stop(self) -> None:
        await self._core.stop()
        log.info("mcp_server_stopped", name=self._config.name)

    async def restart(self) -> None:
        """Harter Neustart von Kern und Transports."""
        if self._core.state in (ServerState.RUNNING, ServerState.ERROR):
            try:
                await self._core.stop()
            except Exception as exc:
                log.warning("mcp_server_restart_stop_failed", error=str(exc))
                self._core.reset()
        await self.start()

    async def wait_closed(self) -> None:
        """Wartet, bis der erste Transport endet (stdin EOF, uvicorn beendet)."""
        waiters = [
            asyncio.create_task(transport.wait_closed())
            for transport in (self._http, self._stdio)
            if transport is not None and transport.is_running
        ]
        if not waiters:
            return
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

    # ── Status ───────────────────────────────────────────────────

    def get_status(self) -> dict[str, Any]:
        stats = self._core.stats
        status: dict[str, Any] = {
            "name": self._config.name,
            "version": self._config.version,
            "serverId": self._core.server_id,
            "state": str(self._core.state),
            "uptime": stats.uptime_s,
            "requestCount": stats.request_count,
            "errorCount": stats.error_count,
            "registeredTools": stats.registered_tools,
            "transports": {
                "http": {
                    "enabled": self._http is not None,
                    "port": self._config.port,
                    "host": self._config.host,
                    "base_path": self._config.http.base_path,
                    "session_id": self._http.session_id if self._http else None,
                    "running": bool(self._http and self._http.is_running),
                },
                "stdio": {
                    "enabled": self._stdio is not None,
                    "running": bool(self._stdio and self._stdio.is_running),
                },
            },
            "endpoints": self._http.endpoints() if self._http else {},
        }
        return status


# ============================================================================
# Factories
# ============================================================================


def create_development_server(
    name: str = "toolhost-dev",
    handlers: list[HandlerRegistration] | None = None,
    **overrides: Any,
) -> McpServer:
    """Entwicklungs-Server: DEBUG-Logs, CORS offen, keine Auth."""
    return McpServer(create_dev_config(name, **overrides), handlers=handlers)


def create_production_server(
    name: str,
    api_keys: list[str],
    handlers: list[HandlerRegistration] | None = None,
    **overrides: Any,
) -> McpServer:
    """Produktions-Server: API-Key-Auth, Rate-Limiting, JSON-Logs."""
    return McpServer(create_prod_config(name, api_keys, **overrides), handlers=handlers)
