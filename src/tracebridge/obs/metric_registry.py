from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class MetricDef:
    name: str
    type: MetricType
    required_labels: tuple[str, ...] = ()


REGISTRY: dict[str, MetricDef] = {
    "trace_pipeline_stage_total": MetricDef(
        name="trace_pipeline_stage_total",
        type=MetricType.COUNTER,
        required_labels=("action", "stage"),
    ),
    "trace_pipeline_errors_total": MetricDef(
        name="trace_pipeline_errors_total",
        type=MetricType.COUNTER,
        required_labels=("action", "kind"),
    ),
    "trace_pipeline_duration_ms": MetricDef(
        name="trace_pipeline_duration_ms",
        type=MetricType.HISTOGRAM,
        required_labels=("action", "outcome"),
    ),
    "trace_transition_blocked_total": MetricDef(
        name="trace_transition_blocked_total",
        type=MetricType.COUNTER,
        required_labels=("action", "reason"),
    ),
    "trace_records_pending": MetricDef(
        name="trace_records_pending",
        type=MetricType.GAUGE,
        required_labels=("store",),
    ),
    "trace_conversion_cache_total": MetricDef(
        name="trace_conversion_cache_total",
        type=MetricType.COUNTER,
        required_labels=("symbol", "result"),
    ),
}


_NAME_PATTERN = re.compile(r"^[a-z]+(?:_[a-z0-9]+)+$")


def validate_registry(registry: dict[str, MetricDef] | None = None) -> None:
    target = registry or REGISTRY
    for key, metric in target.items():
        if key != metric.name:
            raise ValueError(f"registry key/name mismatch: {key} != {metric.name}")
        if not _NAME_PATTERN.match(metric.name):
            raise ValueError(f"invalid metric name format: {metric.name}")
        if not metric.name.startswith("trace_"):
            raise ValueError(f"metric name must use trace_ namespace: {metric.name}")
        if not metric.required_labels:
            raise ValueError(f"required_labels must be non-empty for {metric.name}")


validate_registry()
