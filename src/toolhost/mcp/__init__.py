"""Toolhost MCP-Modul: JSON-RPC Dispatcher, stdio- und HTTP-Transport, Server."""

from toolhost.mcp.rpc import RpcDispatcher, tool_result_content
from toolhost.mcp.stdio import StdioTransport
from toolhost.mcp.http import HttpTransport
from toolhost.mcp.server import (
    McpServer,
    create_development_server,
    create_production_server,
)

__all__ = [
    # Protokoll
    "RpcDispatcher",
    "tool_result_content",
    # Transports
    "StdioTransport",
    "HttpTransport",
    # Server
    "McpServer",
    "create_development_server",
    "create_production_server",
]
