"""Toolhost Telemetry -- Metriken, Zeitreihen und Export.

  - MetricsCollector (Counter, Gauge, Histogram, Timer)
  - Bucket-Zeitreihen und nearest-rank Perzentile
  - Export: Prometheus-Text, JSON
  - Hilfen: measure, with_timing, HttpMetrics, DatabaseMetrics

Usage:
    from toolhost.telemetry import MetricsCollector

    metrics = MetricsCollector("my-server")
    metrics.record_tool_execution("echo", 12.5, success=True)
"""

from toolhost.telemetry.types import (
    Aggregation,
    MetricKind,
    MetricConfig,
    MetricValue,
    MetricStats,
    TimeSeries,
    TimeSeriesPoint,
    PerformanceSnapshot,
    DEFAULT_METRICS,
)
from toolhost.telemetry.instrumentation import (
    DatabaseMetrics,
    HttpMetrics,
    calculate_percentile,
    format_metric_value,
    measure,
    time_execution,
    timed,
    with_timing,
)
from toolhost.telemetry.metrics import MetricsCollector

__all__ = [
    # Types
    "Aggregation", "MetricKind", "MetricConfig", "MetricValue", "MetricStats",
    "TimeSeries", "TimeSeriesPoint", "PerformanceSnapshot", "DEFAULT_METRICS",
    # Collector
    "MetricsCollector",
    # Instrumentation
    "DatabaseMetrics", "HttpMetrics", "calculate_percentile", "format_metric_value",
    "measure", "time_execution", "timed", "with_timing",
]
