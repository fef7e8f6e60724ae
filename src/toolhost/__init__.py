"""Toolhost · Server-Runtime für Tool-Server (stdio + HTTP/JSON-RPC)."""

__version__ = "0.3.0"

PROTOCOL_VERSION = "2024-11-05"
