"""Instrumentation -- Hilfsfunktionen rund um den MetricsCollector.

  - calculate_percentile: nearest-rank, ohne Interpolation
  - time_execution:       Ergebnis + Dauer eines (a)sync Aufrufs
  - with_timing:          Decorator mit Timing-Callback
  - measure:              Decorator der Dauer und Status in Metriken schreibt
  - format_metric_value:  lesbare Darstellung für Logs/CLI
  - HttpMetrics / DatabaseMetrics: Standard-Metriken für HTTP und DB

Usage:
    @measure(metrics, "llm_latency_ms", "llm_calls_total", model="local")
    async def call_model(prompt):
        ...
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import math
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:
    from toolhost.telemetry.metrics import MetricsCollector


def calculate_percentile(values: list[float], percentile: float) -> float:
    """Nearest-rank Perzentil (percentile als Anteil 0-1).

    Index = floor(len * percentile), begrenzt auf den letzten gültigen Index.
    Leere Liste → 0.
    """
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.floor(len(ordered) * percentile)
    return ordered[min(max(index, 0), len(ordered) - 1)]


async def time_execution(fn: Callable[[], Any]) -> tuple[Any, float]:
    """Führt fn aus und gibt (Ergebnis, Dauer in ms) zurück."""
    start = time.monotonic()
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result, (time.monotonic() - start) * 1000


# ── Decorator: Timing Callback ───────────────────────────────────

TimingCallback = Callable[[float, Any, "BaseException | None"], None]


def with_timing(on_timing: TimingCallback) -> Callable:
    """Decorator der nach jedem Aufruf on_timing(duration_ms, result, error) meldet.

    Exceptions werden nach dem Callback weitergereicht.

    Usage:
        @with_timing(lambda ms, result, err: print(ms))
        async def fetch():
            ...
    """
    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.monotonic()
            try:
                result = await fn(*args, **kwargs)
            except Exception as exc:
                on_timing((time.monotonic() - start) * 1000, None, exc)
                raise
            on_timing((time.monotonic() - start) * 1000, result, None)
            return result

        @functools.wraps(fn)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.monotonic()
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                on_timing((time.monotonic() - start) * 1000, None, exc)
                raise
            on_timing((time.monotonic() - start) * 1000, result, None)
            return result

        if asyncio.iscoroutinefunction(fn):
            return async_wrapper
        return sync_wrapper

    return decorator


# ── Decorator: Measure Latency ───────────────────────────────────

def measure(
    metrics: MetricsCollector,
    timer_name: str,
    counter_name: str = "",
    **labels: str,
) -> Callable:
    """Decorator der die Dauer als Timer und optional einen Status-Counter schreibt."""
    def _record(elapsed_ms: float, result: Any, error: BaseException | None) -> None:
        metrics.timing(timer_name, elapsed_ms, labels or None)
        if counter_name:
            status = "error" if error is not None else "ok"
            metrics.increment(counter_name, 1, {**labels, "status": status})

    return with_timing(_record)


# ── Formatting ───────────────────────────────────────────────────

def format_metric_value(value: float, unit: str | None = None) -> str:
    """Formatiert einen Messwert mit Einheit (bytes, milliseconds, percent, ...)."""
    if unit in ("bytes", "megabytes"):
        if value >= 1024 ** 3:
            return f"{value / 1024 ** 3:.2f} GB"
        if value >= 1024 ** 2:
            return f"{value / 1024 ** 2:.2f} MB"
        if value >= 1024:
            return f"{value / 1024:.2f} KB"
        return f"{value:.0f} B"
    if unit in ("milliseconds", "ms"):
        if value >= 1000:
            return f"{value / 1000:.2f}s"
        return f"{value:.0f}ms"
    if unit == "percent":
        return f"{value:.1f}%"
    formatted = f"{value:.2f}"
    return f"{formatted} {unit}" if unit else formatted


# ── Standard Metric Helpers ──────────────────────────────────────

class HttpMetrics:
    """HTTP-Request-Metriken auf einem MetricsCollector."""

    def __init__(self, collector: MetricsCollector) -> None:
        self._collector = collector

    def record_request(self, method: str, path: str, status_code: int, duration_ms: float) -> None:
        self._collector.increment(
            "http_requests_total", 1,
            {"method": method, "path": path, "status": str(status_code)},
        )
        self._collector.timing("http_request_duration", duration_ms, {"method": method, "path": path})
        if status_code >= 400:
            self._collector.increment(
                "http_errors_total", 1,
                {"method": method, "path": path, "status": str(status_code)},
            )

    def record_response_size(self, size: int, path: str) -> None:
        self._collector.gauge("http_response_size_bytes", size, {"path": path})


class DatabaseMetrics:
    """Query- und Connection-Pool-Metriken."""

    def __init__(self, collector: MetricsCollector) -> None:
        self._collector = collector

    def record_query(self, operation: str, table: str, duration_ms: float, success: bool) -> None:
        labels = {"operation": operation, "table": table}
        self._collector.timing("db_query_duration", duration_ms, labels)
        self._collector.increment(
            "db_queries_total", 1, {**labels, "status": "success" if success else "error"},
        )
        if not success:
            self._collector.increment("db_errors_total", 1, labels)

    def record_connection_pool(self, active: int, idle: int, total: int) -> None:
        self._collector.gauge("db_connections_active", active)
        self._collector.gauge("db_connections_idle", idle)
        self._collector.gauge("db_connections_total", total)


async def timed(metrics: MetricsCollector, name: str, coro: Awaitable[Any]) -> Any:
    """Wartet auf coro und schreibt die Dauer als Timer."""
    start = time.monotonic()
    try:
        return await coro
    finally:
        metrics.timing(name, (time.monotonic() - start) * 1000)
