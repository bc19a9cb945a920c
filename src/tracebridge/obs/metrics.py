from __future__ import annotations

import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

from tracebridge.obs.metric_registry import REGISTRY, MetricDef, MetricType
from tracebridge.observability import get_instrumentation

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    def emit(self, defn: MetricDef, value: float | int | Decimal, labels: dict[str, str]) -> None:
        ...


class LoggingMetricsSink:
    def emit(self, defn: MetricDef, value: float | int | Decimal, labels: dict[str, str]) -> None:
        logger.debug(
            "metric_emit",
            extra={
                "extra": {
                    "metric_name": defn.name,
                    "metric_type": defn.type.value,
                    "metric_value": str(value),
                    "labels": labels,
                }
            },
        )
        if defn.type is MetricType.COUNTER:
            get_instrumentation().counter(defn.name, int(value), attrs=labels)
        elif defn.type is MetricType.HISTOGRAM:
            get_instrumentation().histogram(defn.name, float(value), attrs=labels)


@dataclass
class InMemoryMetricsSink:
    counters: Counter[tuple[str, tuple[tuple[str, str], ...]]] = field(default_factory=Counter)
    observations: dict[str, list[float]] = field(default_factory=dict)

    def emit(self, defn: MetricDef, value: float | int | Decimal, labels: dict[str, str]) -> None:
        if defn.type is MetricType.COUNTER:
            self.counters[(defn.name, tuple(sorted(labels.items())))] += int(value)
        else:
            self.observations.setdefault(defn.name, []).append(float(value))

    def count(self, name: str, **labels: str) -> int:
        return sum(
            total
            for (metric, metric_labels), total in self.counters.items()
            if metric == name and set(labels.items()) <= set(metric_labels)
        )


_DEFAULT_SINK: MetricsSink = LoggingMetricsSink()
_STRICT_REGISTRY = os.getenv("OBS_METRICS_STRICT", "1") != "0"


def set_metrics_sink(sink: MetricsSink) -> MetricsSink:
    global _DEFAULT_SINK
    previous = _DEFAULT_SINK
    _DEFAULT_SINK = sink
    return previous


def _validate_labels(defn: MetricDef, labels: dict[str, str]) -> None:
    missing = [label for label in defn.required_labels if label not in labels]
    if missing:
        raise ValueError(f"missing labels for {defn.name}: {missing}")


def emit_metric(name: str, value: float | int | Decimal, labels: dict[str, str]) -> None:
    defn = REGISTRY.get(name)
    if defn is None:
        message = f"unknown metric name: {name}"
        if _STRICT_REGISTRY:
            raise ValueError(message)
        logger.error("metric_unknown", extra={"extra": {"name": name}})
        return
    _validate_labels(defn, labels)
    _DEFAULT_SINK.emit(defn, value, labels)


def inc_counter(name: str, labels: dict[str, str], delta: int = 1) -> None:
    defn = REGISTRY.get(name)
    if defn is not None and defn.type is not MetricType.COUNTER:
        raise ValueError(f"metric {name} is not a counter")
    emit_metric(name, delta, labels)


def set_gauge(name: str, value: float | int | Decimal, labels: dict[str, str]) -> None:
    defn = REGISTRY.get(name)
    if defn is not None and defn.type is not MetricType.GAUGE:
        raise ValueError(f"metric {name} is not a gauge")
    emit_metric(name, value, labels)


def observe_histogram(name: str, value: float | int | Decimal, labels: dict[str, str]) -> None:
    defn = REGISTRY.get(name)
    if defn is not None and defn.type is not MetricType.HISTOGRAM:
        raise ValueError(f"metric {name} is not a histogram")
    emit_metric(name, value, labels)
