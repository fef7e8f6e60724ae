"""JSON-RPC 2.0 Dispatcher für beide Transports.

Methoden:
  - initialize     Protokoll-Version, Capabilities, Server-Info
  - ping           leeres Ergebnis
  - tools/list     Handler-Deskriptoren
  - tools/call     {name, arguments} → ServerCore.invoke
  - server/health  Health-Report
  - server/info    Name, Version, Transports

Notifications (ohne "id") liefern keine Antwort. Batches (JSON-Arrays)
werden bis MAX_BATCH_SIZE Einträge unterstützt.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable

from toolhost import PROTOCOL_VERSION
from toolhost.core.errors import ToolhostError
from toolhost.core.server import ServerCoreProtocol, ServerCore
from toolhost.models import ToolResult
from toolhost.utils.logging import get_logger

log = get_logger(__name__)

JSONRPC_VERSION = "2.0"
MAX_BATCH_SIZE = 50

# Standard-Fehlercodes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


def rpc_error(
    code: int, message: str, msg_id: Any = None, data: Any = None,
) -> dict[str, Any]:
    """Baut eine JSON-RPC-Fehlerantwort."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": msg_id, "error": error}


def rpc_result(result: Any, msg_id: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": msg_id, "result": result}


def is_valid_envelope(message: Any) -> bool:
    return (
        isinstance(message, dict)
        and message.get("jsonrpc") == JSONRPC_VERSION
        and isinstance(message.get("method"), str)
        and bool(message.get("method"))
    )


class _RpcFailure(Exception):
    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class RpcDispatcher:
    """Übersetzt JSON-RPC-Nachrichten in ServerCore-Aufrufe."""

    def __init__(
        self,
        server: ServerCoreProtocol,
        *,
        info_provider: Callable[[], dict[str, Any]] | None = None,
        max_batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        self._server = server
        self._info_provider = info_provider
        self._max_batch_size = max_batch_size
        self._methods: dict[str, Callable[[dict[str, Any], str | None], Awaitable[Any]]] = {
            "initialize": self._handle_initialize,
            "ping": self._handle_ping,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "server/health": self._handle_health,
            "server/info": self._handle_info,
        }

    @property
    def methods(self) -> list[str]:
        return list(self._methods)

    # ── Message Processing ───────────────────────────────────────

    async def handle_payload(
        self, payload: Any, request_id: str | None = None,
    ) -> dict[str, Any] | list[dict[str, Any]] | None:
        """Einzelnachricht oder Batch verarbeiten."""
        if isinstance(payload, list):
            if not payload:
                return rpc_error(INVALID_REQUEST, "Invalid Request")
            if len(payload) > self._max_batch_size:
                return rpc_error(
                    INVALID_REQUEST,
                    f"Batch too large ({len(payload)} > {self._max_batch_size})",
                )
            responses = await asyncio.gather(
                *(self.handle_message(msg, request_id) for msg in payload),
            )
            batch = [r for r in responses if r is not None]
            return batch or None
        return await self.handle_message(payload, request_id)

    async def handle_text(self, text: str | bytes, request_id: str | None = None) -> Any:
        """Parst JSON und verarbeitet es. Parse-Fehler → -32700."""
        try:
            payload = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            log.warning("rpc_parse_error", error=str(exc))
            return rpc_error(PARSE_ERROR, "Parse error")
        return await self.handle_payload(payload, request_id)

    async def handle_message(
        self, message: Any, request_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Verarbeitet eine JSON-RPC-Nachricht. None bei Notifications."""
        msg_id = message.get("id") if isinstance(message, dict) else None
        if not is_valid_envelope(message):
            return rpc_error(INVALID_REQUEST, "Invalid Request", msg_id)

        is_notification = "id" not in message
        method = message["method"]
        params = message.get("params")
        if params is None:
            params = {}

        try:
            if not isinstance(params, dict):
                raise _RpcFailure(INVALID_PARAMS, "Invalid params: expected an object")
            handler = self._methods.get(method)
            if handler is None:
                raise _RpcFailure(METHOD_NOT_FOUND, f"Method not found: {method}")
            result = await handler(params, request_id)
        except asyncio.CancelledError:
            raise
        except _RpcFailure as exc:
            response = rpc_error(exc.code, exc.message, msg_id, exc.data)
        except ToolhostError as exc:
            response = rpc_error(exc.rpc_code, exc.message, msg_id, exc.details or None)
        except Exception as exc:
            log.error("rpc_dispatch_error", method=method, error=str(exc))
            response = rpc_error(INTERNAL_ERROR, "Internal error", msg_id)
        else:
            response = rpc_result(result, msg_id)

        if is_notification:
            return None
        return response

    # ── Method Handlers ──────────────────────────────────────────

    async def _handle_initialize(self, params: dict[str, Any], request_id: str | None) -> Any:
        info = self._server_info()
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": info.get("name", ""), "version": info.get("version", "")},
        }

    async def _handle_ping(self, params: dict[str, Any], request_id: str | None) -> Any:
        return {}

    async def _handle_tools_list(self, params: dict[str, Any], request_id: str | None) -> Any:
        if not isinstance(self._server, ServerCore):
            return {"tools": []}
        return {"tools": [h.to_descriptor() for h in self._server.list_handlers()]}

    async def _handle_tools_call(self, params: dict[str, Any], request_id: str | None) -> Any:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise _RpcFailure(INVALID_PARAMS, "Invalid params: 'name' is required")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        result = await self._server.invoke(name, arguments, request_id=request_id)
        return tool_result_content(result)

    async def _handle_health(self, params: dict[str, Any], request_id: str | None) -> Any:
        health = await self._server.get_health()
        return health.to_dict()

    async def _handle_info(self, params: dict[str, Any], request_id: str | None) -> Any:
        return self._server_info()

    def _server_info(self) -> dict[str, Any]:
        if self._info_provider is not None:
            return self._info_provider()
        if isinstance(self._server, ServerCore):
            config = self._server.config
            return {
                "name": config.name,
                "version": config.version,
                "description": config.description,
                "protocol": "mcp",
            }
        return {}


def tool_result_content(result: ToolResult) -> dict[str, Any]:
    """ToolResult im MCP-Format {content, isError, structuredContent?}."""
    if not result.success:
        return {
            "content": [{"type": "text", "text": result.error or "Tool execution failed"}],
            "isError": True,
        }
    data = result.data
    text = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False, default=str)
    payload: dict[str, Any] = {"content": [{"type": "text", "text": text}], "isError": False}
    if isinstance(data, dict):
        payload["structuredContent"] = data
    return payload
