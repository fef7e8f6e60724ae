"""MetricsCollector -- Aufzeichnung, Aggregation und Export von Messwerten.

Jede Metrik ist eine append-only Folge von MetricValue-Einträgen:
  - Counter:  laufende Summe (increment liest den letzten Wert und addiert)
  - Gauge:    aktueller Wert
  - Timer:    Dauer in ms, zusätzlich in einer globalen Antwortzeit-Liste

Speichergrenzen:
  - max_data_points pro Metrik (FIFO, älteste zuerst verworfen)
  - retention_ms (cleanup() entfernt ältere Einträge)
  - max. 1000 Performance-Snapshots und 1000 Antwortzeiten (halbiert bei Überlauf)

Zwei Hintergrund-Tasks (cleanup, snapshot) laufen nach start() auf dem
Event-Loop und werden von shutdown()/destroy() beendet.

Usage:
    metrics = MetricsCollector("my-server")
    metrics.increment("requests_total", labels={"route": "/rpc"})
    metrics.timing("latency_ms", 42.5)
    print(metrics.export_prometheus())
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable

import psutil

from toolhost.telemetry.instrumentation import calculate_percentile
from toolhost.telemetry.types import (
    DEFAULT_METRICS,
    Aggregation,
    MetricConfig,
    MetricKind,
    MetricStats,
    MetricValue,
    PerformanceSnapshot,
    TimeSeries,
    TimeSeriesPoint,
    now_ms,
)
from toolhost.utils.logging import get_logger

log = get_logger(__name__)

MAX_RESPONSE_TIMES = 1000
MAX_SNAPSHOTS = 1000
HISTORY_EXPORT_LIMIT = 100

_MB = 1024 * 1024

EVENTS = frozenset({
    "metric_registered", "metric_recorded", "performance_snapshot", "cleanup", "reset",
})

Listener = Callable[[dict[str, Any]], Any]


class MetricsCollector:
    """Zentrale Instanz für Metriken eines Servers."""

    def __init__(
        self,
        service_name: str = "toolhost",
        *,
        max_data_points: int = 10_000,
        retention_ms: int = 3_600_000,
        cleanup_interval_s: float = 300.0,
        snapshot_interval_s: float = 30.0,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._service_name = service_name
        self._max_data_points = max_data_points
        self._retention_ms = retention_ms
        self._cleanup_interval_s = cleanup_interval_s
        self._snapshot_interval_s = snapshot_interval_s
        self._clock = clock or now_ms

        self._metrics: dict[str, list[MetricValue]] = {}
        self._configs: dict[str, MetricConfig] = {}
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

        self._request_count = 0
        self._error_count = 0
        self._total_response_time = 0.0
        self._tool_executions: dict[str, int] = defaultdict(int)
        self._response_times: list[float] = []

        self._snapshots: list[PerformanceSnapshot] = []
        self._process = psutil.Process()
        self._last_cpu = self._process.cpu_times()
        self._last_wall = time.monotonic()
        self._start_time = self._clock()
        self._loop_delay_ms = 0.0

        self._tasks: list[asyncio.Task[None]] = []

        self.register_metrics(DEFAULT_METRICS)
        self.record_performance_snapshot()

    @property
    def service_name(self) -> str:
        return self._service_name

    @property
    def request_count(self) -> int:
        return self._request_count

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    # ── Registration ─────────────────────────────────────────────

    def register_metric(self, config: MetricConfig) -> None:
        """Registriert oder überschreibt die Metadaten. Die Historie bleibt erhalten."""
        self._configs[config.name] = config
        self._metrics.setdefault(config.name, [])
        self._emit("metric_registered", {"name": config.name, "type": config.kind.value})

    def register_metrics(self, configs: list[MetricConfig] | tuple[MetricConfig, ...]) -> None:
        for config in configs:
            self.register_metric(config)

    def get_metric_config(self, name: str) -> MetricConfig | None:
        return self._configs.get(name)

    def get_metric_names(self) -> list[str]:
        return list(self._metrics.keys())

    # ── Recording ────────────────────────────────────────────────

    def record(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        """Hängt einen Messwert an. Überzählige Einträge werden vorne abgeschnitten."""
        config = self._configs.get(name)
        if config is not None and config.labels:
            labels = {**config.labels, **(labels or {})}

        values = self._metrics.setdefault(name, [])
        values.append(MetricValue(value=value, timestamp=self._clock(), labels=labels or None))
        overflow = len(values) - self._max_data_points
        if overflow > 0:
            del values[:overflow]

        self._emit("metric_recorded", {"name": name, "value": value, "labels": labels})

    def gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        self.record(name, value, labels)

    def increment(self, name: str, delta: float = 1, labels: dict[str, str] | None = None) -> None:
        """Counter als laufende Summe in derselben Wertefolge."""
        latest = self.get_latest_value(name) or 0
        self.record(name, latest + delta, labels)

    def timing(self, name: str, duration_ms: float, labels: dict[str, str] | None = None) -> None:
        """Zeichnet eine Dauer auf und merkt sie für globale Perzentile vor."""
        self.record(name, duration_ms, labels)
        self._response_times.append(duration_ms)
        if len(self._response_times) > MAX_RESPONSE_TIMES:
            del self._response_times[:MAX_RESPONSE_TIMES // 2]

    def record_tool_execution(self, tool_name: str, duration_ms: float, success: bool) -> None:
        """Standard-Messpunkt für jeden Handler-Aufruf."""
        self._request_count += 1
        self._total_response_time += duration_ms
        if not success:
            self._error_count += 1
        self._tool_executions[tool_name] += 1

        self.timing("tool_execution_time", duration_ms, {"tool": tool_name})
        self.increment(
            "tool_executions_total", 1,
            {"tool": tool_name, "status": "success" if success else "error"},
        )
        if not success:
            self.increment("tool_errors_total", 1, {"tool": tool_name})

    # ── Queries ──────────────────────────────────────────────────

    def get_tool_execution_counts(self) -> dict[str, int]:
        return dict(self._tool_executions)

    def get_average_response_time(self) -> float:
        if self._request_count == 0:
            return 0.0
        return self._total_response_time / self._request_count

    def get_response_time_percentiles(self) -> dict[str, float]:
        samples = list(self._response_times)
        return {
            "p50": calculate_percentile(samples, 0.5),
            "p95": calculate_percentile(samples, 0.95),
            "p99": calculate_percentile(samples, 0.99),
        }

    def get_latest_value(self, name: str) -> float | None:
        values = self._metrics.get(name)
        if not values:
            return None
        return values[-1].value

    def get_values(
        self, name: str, since: int | None = None, until: int | None = None,
    ) -> list[MetricValue]:
        values = list(self._metrics.get(name, ()))
        if since is not None:
            values = [v for v in values if v.timestamp >= since]
        if until is not None:
            values = [v for v in values if v.timestamp <= until]
        return values

    def get_metric_stats(self, name: str, since: int | None = None) -> MetricStats | None:
        """Statistik über die (optional ab since gefilterte) Wertefolge.

        Perzentile: nearest-rank, Index floor(n * p), begrenzt auf n - 1.
        """
        values = self.get_values(name, since=since)
        if not values:
            return None

        numbers = [v.value for v in values]
        ordered = sorted(numbers)
        total = sum(numbers)
        return MetricStats(
            count=len(numbers),
            sum=total,
            avg=total / len(numbers),
            min=ordered[0],
            max=ordered[-1],
            p95=calculate_percentile(ordered, 0.95),
            p99=calculate_percentile(ordered, 0.99),
            latest=numbers[-1],
            oldest=numbers[0],
        )

    def get_time_series(
        self,
        name: str,
        aggregation: Aggregation | str = Aggregation.AVG,
        bucket_size_ms: int = 60_000,
        since: int | None = None,
    ) -> TimeSeries:
        """Aggregiert Werte in zeitlich ausgerichtete Buckets, aufsteigend sortiert."""
        aggregation = Aggregation(aggregation)
        if bucket_size_ms <= 0:
            raise ValueError("bucket_size_ms must be positive")

        buckets: dict[int, list[float]] = defaultdict(list)
        for v in self.get_values(name, since=since):
            buckets[(v.timestamp // bucket_size_ms) * bucket_size_ms].append(v.value)

        config = self._configs.get(name)
        return TimeSeries(
            name=name,
            description=config.description if config else "",
            unit=config.unit if config else "",
            aggregation=aggregation,
            points=[
                TimeSeriesPoint(
                    timestamp=ts,
                    value=_aggregate(bucket, aggregation),
                    count=len(bucket),
                    bucket_size_ms=bucket_size_ms,
                )
                for ts, bucket in sorted(buckets.items())
            ],
        )

    def get_summary(self) -> dict[str, MetricStats]:
        summary: dict[str, MetricStats] = {}
        for name in list(self._metrics):
            stats = self.get_metric_stats(name)
            if stats is not None:
                summary[name] = stats
        return summary

    # ── Performance ──────────────────────────────────────────────

    def record_performance_snapshot(self) -> PerformanceSnapshot:
        """Erfasst Speicher, CPU-Deltas und Event-Loop-Verzögerung.

        Die Verzögerung stammt aus der zuletzt abgeschlossenen Messung; eine
        neue Messung wird auf dem laufenden Loop eingeplant und fließt in den
        nächsten Snapshot ein.
        """
        mem = self._process.memory_info()
        cpu = self._process.cpu_times()
        wall = time.monotonic()

        user_ms = (cpu.user - self._last_cpu.user) * 1000
        system_ms = (cpu.system - self._last_cpu.system) * 1000
        wall_ms = (wall - self._last_wall) * 1000
        utilization = min(1.0, (user_ms + system_ms) / wall_ms) if wall_ms > 0 else 0.0
        self._last_cpu = cpu
        self._last_wall = wall

        snapshot = PerformanceSnapshot(
            timestamp=self._clock(),
            heap_used_mb=round(mem.rss / _MB, 2),
            heap_total_mb=round(mem.vms / _MB, 2),
            external_mb=round(getattr(mem, "shared", 0) / _MB, 2),
            rss_mb=round(mem.rss / _MB, 2),
            cpu_user_ms=round(user_ms, 3),
            cpu_system_ms=round(system_ms, 3),
            event_loop_delay_ms=round(self._loop_delay_ms, 3),
            event_loop_utilization=round(max(0.0, utilization), 4),
            uptime_s=round((self._clock() - self._start_time) / 1000, 3),
        )

        self._snapshots.append(snapshot)
        if len(self._snapshots) > MAX_SNAPSHOTS:
            del self._snapshots[:MAX_SNAPSHOTS // 2]

        self.gauge("memory_heap_used_mb", snapshot.heap_used_mb)
        self.gauge("memory_heap_total_mb", snapshot.heap_total_mb)
        self.gauge("cpu_user_ms", snapshot.cpu_user_ms)
        self.gauge("cpu_system_ms", snapshot.cpu_system_ms)
        self.gauge("event_loop_delay_ms", snapshot.event_loop_delay_ms)

        self._schedule_loop_probe()
        self._emit("performance_snapshot", snapshot.to_dict())
        return snapshot

    def _schedule_loop_probe(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        scheduled = time.perf_counter()
        loop.call_soon(self._on_loop_probe, scheduled)

    def _on_loop_probe(self, scheduled: float) -> None:
        self._loop_delay_ms = (time.perf_counter() - scheduled) * 1000

    def get_performance_snapshots(self, count: int = 10) -> list[PerformanceSnapshot]:
        if count <= 0:
            return []
        return list(self._snapshots[-count:])

    def get_current_resource_usage(self) -> dict[str, float]:
        """Aktueller Speicher (MB) und CPU-Auslastung (%) seit dem letzten Snapshot."""
        mem = self._process.memory_info()
        cpu = self._process.cpu_times()
        wall_s = time.monotonic() - self._last_wall
        busy_s = (cpu.user - self._last_cpu.user) + (cpu.system - self._last_cpu.system)
        cpu_percent = (busy_s / wall_s) * 100 if wall_s > 0 else 0.0
        return {
            "memory_mb": round(mem.rss / _MB, 2),
            "cpu_percent": round(max(0.0, cpu_percent), 2),
        }

    # ── Health ───────────────────────────────────────────────────

    def get_error_rate(self) -> float:
        if self._request_count == 0:
            return 0.0
        return self._error_count / self._request_count

    def get_health_score(self) -> float:
        """Heuristik 0-100 aus Fehlerquote, Antwortzeit und Speicherverbrauch."""
        score = 100.0
        score -= self.get_error_rate() * 50

        avg = self.get_average_response_time()
        if avg > 1000:
            score -= 20
        if avg > 5000:
            score -= 30

        heap_used_mb = self._process.memory_info().rss / _MB
        if heap_used_mb > 500:
            score -= 10
        if heap_used_mb > 1000:
            score -= 20

        return max(0.0, min(100.0, score))

    # ── Export ───────────────────────────────────────────────────

    def export_prometheus(self) -> str:
        """Prometheus-Textformat, pro Metrik nur der letzte Wert."""
        lines: list[str] = []
        for name, values in list(self._metrics.items()):
            if not values:
                continue
            latest = values[-1]
            config = self._configs.get(name)

            if config is not None and config.description:
                lines.append(f"# HELP {name} {config.description}")
            kind = config.kind if config is not None else MetricKind.GAUGE
            lines.append(f"# TYPE {name} {kind.prometheus_type}")

            labels = {"service": self._service_name, **(latest.labels or {})}
            label_str = ",".join(f'{k}="{_escape_label(str(v))}"' for k, v in labels.items())
            lines.append(f"{name}{{{label_str}}} {_format_number(latest.value)} {latest.timestamp}")
        return "\n".join(lines)

    def export_json(self, include_history: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {
            "service": self._service_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round((self._clock() - self._start_time) / 1000),
            "summary": {
                "requestCount": self._request_count,
                "errorCount": self._error_count,
                "errorRate": self.get_error_rate(),
                "avgResponseTime": self.get_average_response_time(),
                "healthScore": self.get_health_score(),
            },
            "metrics": {},
        }

        for name in list(self._metrics):
            stats = self.get_metric_stats(name)
            if include_history:
                config = self._configs.get(name)
                result["metrics"][name] = {
                    "config": config.to_dict() if config else None,
                    "values": [
                        v.to_dict()
                        for v in list(self._metrics[name])[-HISTORY_EXPORT_LIMIT:]
                    ],
                    "stats": stats.to_dict() if stats else None,
                }
            else:
                result["metrics"][name] = {
                    "latest": self.get_latest_value(name),
                    "stats": stats.to_dict() if stats else None,
                }
        return result

    # ── Maintenance ──────────────────────────────────────────────

    def cleanup(self) -> int:
        """Entfernt alle Werte und Snapshots, die älter als retention_ms sind."""
        cutoff = self._clock() - self._retention_ms
        removed = 0

        for name, values in list(self._metrics.items()):
            kept = [v for v in values if v.timestamp >= cutoff]
            removed += len(values) - len(kept)
            self._metrics[name] = kept

        kept_snapshots = [s for s in self._snapshots if s.timestamp >= cutoff]
        removed += len(self._snapshots) - len(kept_snapshots)
        self._snapshots = kept_snapshots

        if removed > 0:
            log.debug("metrics_cleanup", removed=removed, service=self._service_name)
            self._emit("cleanup", {"removed": removed, "cutoff": cutoff})
        return removed

    def reset(self) -> None:
        """Löscht alle Daten und Zähler. Registrierungen und Tasks bleiben bestehen."""
        for name in self._metrics:
            self._metrics[name] = []
        self._request_count = 0
        self._error_count = 0
        self._total_response_time = 0.0
        self._tool_executions.clear()
        self._response_times.clear()
        self._snapshots.clear()
        self._emit("reset", {})

    def start(self) -> None:
        """Startet die Hintergrund-Tasks auf dem laufenden Event-Loop."""
        if self.is_running:
            return
        self._tasks = [
            asyncio.create_task(
                self._run_periodic(self._cleanup_interval_s, self.cleanup, "cleanup"),
                name=f"{self._service_name}-metrics-cleanup",
            ),
            asyncio.create_task(
                self._run_periodic(
                    self._snapshot_interval_s, self.record_performance_snapshot, "snapshot",
                ),
                name=f"{self._service_name}-metrics-snapshot",
            ),
        ]
        log.debug("metrics_tasks_started", service=self._service_name)

    async def shutdown(self) -> None:
        """Beendet beide Hintergrund-Tasks und wartet auf ihr Ende."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if tasks:
            log.debug("metrics_tasks_stopped", service=self._service_name)

    async def destroy(self) -> None:
        await self.shutdown()
        self._listeners.clear()
        self.reset()

    async def _run_periodic(self, interval_s: float, fn: Callable[[], Any], label: str) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                fn()
            except Exception as exc:
                log.warning("metrics_task_failed", task=label, error=str(exc))

    # ── Listeners ────────────────────────────────────────────────

    def on(self, event: str, callback: Listener) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown metrics event: {event}")
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Listener | None = None) -> None:
        if callback is None:
            self._listeners.pop(event, None)
            return
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(payload)
            except Exception as exc:
                log.warning("metrics_listener_failed", event_type=event, error=str(exc))

    def stats(self) -> dict[str, Any]:
        return {
            "service_name": self._service_name,
            "metrics": len(self._metrics),
            "data_points": sum(len(v) for v in self._metrics.values()),
            "snapshots": len(self._snapshots),
            "running": self.is_running,
        }


# ============================================================================
# Helpers
# ============================================================================


def _aggregate(values: list[float], aggregation: Aggregation) -> float:
    if aggregation is Aggregation.SUM:
        return sum(values)
    if aggregation is Aggregation.AVG:
        return sum(values) / len(values)
    if aggregation is Aggregation.MIN:
        return min(values)
    if aggregation is Aggregation.MAX:
        return max(values)
    if aggregation is Aggregation.COUNT:
        return float(len(values))
    if aggregation is Aggregation.P95:
        return calculate_percentile(values, 0.95)
    return calculate_percentile(values, 0.99)


def _format_number(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')
