from tracebridge.obs.metric_registry import REGISTRY, MetricDef, MetricType, validate_registry
from tracebridge.obs.metrics import (
    InMemoryMetricsSink,
    LoggingMetricsSink,
    MetricsSink,
    emit_metric,
    inc_counter,
    observe_histogram,
    set_gauge,
    set_metrics_sink,
)

__all__ = [
    "InMemoryMetricsSink",
    "LoggingMetricsSink",
    "MetricDef",
    "MetricType",
    "MetricsSink",
    "REGISTRY",
    "emit_metric",
    "inc_counter",
    "observe_histogram",
    "set_gauge",
    "set_metrics_sink",
    "validate_registry",
]
