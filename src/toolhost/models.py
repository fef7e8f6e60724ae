"""
Toolhost · Central data models.

Handler-Registrierung, Ergebnisse, Health-Checks und Server-Statistik.
Alles, was über die Transports nach außen geht, ist JSON-serialisierbar
über to_dict() (camelCase-Schlüssel wie auf der Leitung).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Callable

from pydantic import BaseModel, Field

# ============================================================================
# Hilfsfunktionen
# ============================================================================


def _utc_now() -> datetime:
    """Aktuelle Zeit in UTC. Einheitlich im gesamten System."""
    return datetime.now(UTC)


def utc_iso() -> str:
    return _utc_now().isoformat()


HANDLER_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]{0,99}$")


# ============================================================================
# Enums
# ============================================================================


class ServerState(StrEnum):
    """Lebenszyklus eines Servers.

    stopped → starting → running → stopping → stopped
    error ist aus starting, running und stopping erreichbar.
    """

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class ToolCategory(StrEnum):
    """Kategorie eines Handlers (nur für Listing und Filter)."""

    DATA = "data"
    CONTENT = "content"
    ANALYTICS = "analytics"
    DATABASE = "database"
    API = "api"
    WORKFLOW = "workflow"
    UTILITY = "utility"
    AUTH = "auth"
    TEMPLATE = "template"
    SEARCH = "search"


class CheckStatus(StrEnum):
    """Ergebnis eines einzelnen Health-Checks."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class HealthStatus(StrEnum):
    """Aggregierter Gesundheitszustand."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ============================================================================
# Handler
# ============================================================================


@dataclass(frozen=True)
class HandlerRegistration:
    """Ein benannter Handler.

    input_schema ist entweder eine Pydantic-Modellklasse (der Handler erhält
    dann die validierte Instanz) oder ein JSON-Schema-Dict (der Handler
    erhält das geprüfte Dict). None = keine Validierung.
    """

    name: str
    handler: Callable[[Any], Any]
    description: str = ""
    input_schema: type[BaseModel] | dict[str, Any] | None = None
    category: ToolCategory = ToolCategory.UTILITY

    def json_schema(self) -> dict[str, Any]:
        if self.input_schema is None:
            return {"type": "object"}
        if isinstance(self.input_schema, dict):
            return self.input_schema
        return self.input_schema.model_json_schema()

    def to_descriptor(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "category": str(self.category),
            "inputSchema": self.json_schema(),
        }


# ============================================================================
# Ergebnisse
# ============================================================================


class ToolResultMetadata(BaseModel, frozen=True):
    execution_time_ms: float = 0.0
    request_id: str = ""
    timestamp: datetime = Field(default_factory=_utc_now)


class ToolResult(BaseModel, frozen=True):
    """Ergebnis eines ServerCore.invoke()-Aufrufs."""

    success: bool
    data: Any = None
    error: str | None = None
    error_code: str | None = None
    metadata: ToolResultMetadata = Field(default_factory=ToolResultMetadata)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "success": self.success,
            "data": self.data,
            "metadata": {
                "executionTime": self.metadata.execution_time_ms,
                "requestId": self.metadata.request_id,
                "timestamp": self.metadata.timestamp.isoformat(),
            },
        }
        if self.error is not None:
            d["error"] = self.error
        if self.error_code is not None:
            d["errorCode"] = self.error_code
        return d


# ============================================================================
# Health
# ============================================================================


class HealthCheck(BaseModel, frozen=True):
    """Ergebnis eines benannten Sub-Checks."""

    status: CheckStatus
    duration_ms: float = 0.0
    message: str | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"status": str(self.status), "duration": self.duration_ms}
        if self.message is not None:
            d["message"] = self.message
        if self.metadata:
            d["metadata"] = self.metadata
        return d


class HealthCheckResult(BaseModel, frozen=True):
    """Aggregierter Health-Report."""

    status: HealthStatus
    checks: dict[str, HealthCheck] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)
    uptime_s: float = 0.0

    @classmethod
    def aggregate(cls, checks: dict[str, HealthCheck], uptime_s: float) -> HealthCheckResult:
        """fail → unhealthy, warn → degraded, sonst healthy."""
        statuses = {c.status for c in checks.values()}
        if CheckStatus.FAIL in statuses:
            status = HealthStatus.UNHEALTHY
        elif CheckStatus.WARN in statuses:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return cls(status=status, checks=checks, uptime_s=uptime_s)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "checks": {name: c.to_dict() for name, c in self.checks.items()},
            "timestamp": self.timestamp.isoformat(),
            "uptime": self.uptime_s,
        }


# ============================================================================
# Statistik
# ============================================================================


class ServerStats(BaseModel, frozen=True):
    """Momentaufnahme des Server-Zustands."""

    state: ServerState
    uptime_s: float
    request_count: int
    error_count: int
    active_requests: int = 0
    last_error: str | None = None
    avg_response_time_ms: float = 0.0
    memory_mb: float = 0.0
    cpu_percent: float = 0.0
    registered_tools: int = 0
    tool_executions: dict[str, int] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": str(self.state),
            "uptime": self.uptime_s,
            "requestCount": self.request_count,
            "errorCount": self.error_count,
            "activeRequests": self.active_requests,
            "lastError": self.last_error,
            "performance": {
                "avgResponseTime": self.avg_response_time_ms,
                "memoryUsage": self.memory_mb,
                "cpuUsage": self.cpu_percent,
            },
            "tools": {
                "registered": self.registered_tools,
                "executions": self.tool_executions,
            },
        }
