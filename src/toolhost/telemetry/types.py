"""Metric Types.

Datenmodelle für den MetricsCollector:
  - MetricKind:          counter, gauge, histogram, timer
  - MetricConfig:        Metadaten einer Metrik (einmal registriert, überschreibbar)
  - MetricValue:         Ein zeitgestempelter Messwert (Millisekunden)
  - MetricStats:         Abgeleitete Statistik, nie gespeichert
  - TimeSeries:          Bucket-aggregierte Zeitreihe
  - PerformanceSnapshot: Speicher/CPU/Event-Loop zu einem Zeitpunkt
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Aktuelle Zeit in Millisekunden seit Epoch."""
    return int(time.time() * 1000)


# ── Enums ────────────────────────────────────────────────────────

class MetricKind(str, Enum):
    """Art einer Metrik."""
    COUNTER = "counter"       # Laufende Summe
    GAUGE = "gauge"           # Aktueller Wert
    HISTOGRAM = "histogram"   # Verteilung
    TIMER = "timer"           # Dauer, exportiert als Histogram

    @property
    def prometheus_type(self) -> str:
        return "histogram" if self is MetricKind.TIMER else self.value


class Aggregation(str, Enum):
    """Aggregationsmethode pro Zeitreihen-Bucket."""
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    COUNT = "count"
    P95 = "p95"
    P99 = "p99"


# ── Metric Config & Values ───────────────────────────────────────

@dataclass
class MetricConfig:
    """Metadaten einer registrierten Metrik."""
    name: str
    kind: MetricKind = MetricKind.GAUGE
    description: str = ""
    unit: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "name": self.name,
            "type": self.kind.value,
            "description": self.description,
        }
        if self.unit:
            d["unit"] = self.unit
        if self.labels:
            d["labels"] = self.labels
        return d


@dataclass(frozen=True)
class MetricValue:
    """Ein einzelner Messwert."""
    value: float
    timestamp: int
    labels: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"value": self.value, "timestamp": self.timestamp}
        if self.labels:
            d["labels"] = self.labels
        return d


@dataclass
class MetricStats:
    """Aus einer Wertefolge berechnete Statistik."""
    count: int
    sum: float
    avg: float
    min: float
    max: float
    p95: float
    p99: float
    latest: float
    oldest: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "sum": self.sum,
            "avg": self.avg,
            "min": self.min,
            "max": self.max,
            "p95": self.p95,
            "p99": self.p99,
            "latest": self.latest,
            "oldest": self.oldest,
        }


# ── Time Series ──────────────────────────────────────────────────

@dataclass
class TimeSeriesPoint:
    """Ein aggregierter Bucket."""
    timestamp: int
    value: float
    count: int
    bucket_size_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "value": self.value,
            "metadata": {"count": self.count, "bucketSize": self.bucket_size_ms},
        }


@dataclass
class TimeSeries:
    """Bucket-aggregierte Zeitreihe einer Metrik."""
    name: str
    description: str
    unit: str
    aggregation: Aggregation
    points: list[TimeSeriesPoint] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "unit": self.unit,
            "aggregation": self.aggregation.value,
            "dataPoints": [p.to_dict() for p in self.points],
        }


# ── Performance ──────────────────────────────────────────────────

@dataclass
class PerformanceSnapshot:
    """Prozesszustand zu einem Zeitpunkt. Speicher in MB, CPU-Deltas in ms."""
    timestamp: int
    heap_used_mb: float
    heap_total_mb: float
    external_mb: float
    rss_mb: float
    cpu_user_ms: float
    cpu_system_ms: float
    event_loop_delay_ms: float
    event_loop_utilization: float
    uptime_s: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "memory": {
                "heapUsed": self.heap_used_mb,
                "heapTotal": self.heap_total_mb,
                "external": self.external_mb,
                "rss": self.rss_mb,
            },
            "cpu": {"user": self.cpu_user_ms, "system": self.cpu_system_ms},
            "eventLoop": {
                "delay": self.event_loop_delay_ms,
                "utilization": self.event_loop_utilization,
            },
            "uptime": self.uptime_s,
        }


# Standard-Metriken, die jeder Collector beim Erzeugen registriert
DEFAULT_METRICS: tuple[MetricConfig, ...] = (
    MetricConfig("tool_execution_time", MetricKind.HISTOGRAM,
                 "Tool execution time in milliseconds", "ms"),
    MetricConfig("tool_executions_total", MetricKind.COUNTER,
                 "Total number of tool executions"),
    MetricConfig("tool_errors_total", MetricKind.COUNTER,
                 "Total number of tool execution errors"),
    MetricConfig("memory_heap_used_mb", MetricKind.GAUGE,
                 "Resident memory used by the process", "MB"),
    MetricConfig("memory_heap_total_mb", MetricKind.GAUGE,
                 "Virtual memory reserved by the process", "MB"),
    MetricConfig("cpu_user_ms", MetricKind.GAUGE,
                 "User CPU time since last snapshot", "ms"),
    MetricConfig("cpu_system_ms", MetricKind.GAUGE,
                 "System CPU time since last snapshot", "ms"),
    MetricConfig("event_loop_delay_ms", MetricKind.GAUGE,
                 "Event loop scheduling delay", "ms"),
)
