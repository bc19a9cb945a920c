from __future__ import annotations

import atexit
import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from tracebridge.logging_context import get_logging_context

logger = logging.getLogger(__name__)
_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9_.-]+")


def span_attributes(attrs: dict[str, Any] | None) -> dict[str, Any]:
    """Explicit attributes over the current transition context; ``None`` dropped."""
    merged: dict[str, Any] = dict(get_logging_context())
    merged.update(attrs or {})
    return {key: value for key, value in merged.items() if value is not None}


class Instrumentation:
    """No-op base; the registry in ``obs.metrics`` feeds counters and histograms here."""

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        return None

    @contextmanager
    def span(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        yield

    def shutdown(self) -> None:
        return None


class OTelInstrumentation(Instrumentation):
    """Pipeline runs and rate fetches as spans; registry metrics over OTLP."""

    def __init__(self, *, service_name: str, otlp_endpoint: str | None) -> None:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        resource = Resource.create({"service.name": service_name})
        endpoint = {"endpoint": otlp_endpoint} if otlp_endpoint else {}

        self._tracer_provider = TracerProvider(resource=resource)
        self._tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**endpoint)))
        trace.set_tracer_provider(self._tracer_provider)
        self._tracer = trace.get_tracer("tracebridge")

        reader = PeriodicExportingMetricReader(OTLPMetricExporter(**endpoint))
        self._meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
        metrics.set_meter_provider(self._meter_provider)
        self._meter = metrics.get_meter("tracebridge")
        self._instruments: dict[tuple[str, str], Any] = {}

    def _instrument(self, kind: str, name: str) -> Any:
        key = (kind, _UNSAFE_NAME.sub("_", name).strip("_") or "unnamed")
        instrument = self._instruments.get(key)
        if instrument is None:
            if kind == "counter":
                instrument = self._meter.create_counter(key[1])
            else:
                instrument = self._meter.create_histogram(key[1])
            self._instruments[key] = instrument
        return instrument

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        self._instrument("counter", name).add(value, attrs or {})

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        self._instrument("histogram", name).record(value, attrs or {})

    @contextmanager
    def span(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        with self._tracer.start_as_current_span(name, attributes=span_attributes(attrs)):
            yield

    def shutdown(self) -> None:
        for provider in (self._meter_provider, self._tracer_provider):
            provider.force_flush()
            provider.shutdown()


_LOCK = threading.Lock()
_ACTIVE: Instrumentation = Instrumentation()


def configure_instrumentation(
    *,
    enabled: bool,
    service_name: str = "tracebridge",
    otlp_endpoint: str | None = None,
) -> Instrumentation:
    """Install the process-wide instrumentation; repeated calls keep the first OTel setup."""
    global _ACTIVE
    with _LOCK:
        if isinstance(_ACTIVE, OTelInstrumentation) or not enabled:
            return _ACTIVE
        try:
            _ACTIVE = OTelInstrumentation(service_name=service_name, otlp_endpoint=otlp_endpoint)
        except Exception:  # noqa: BLE001
            logger.exception("observability_setup_failed_falling_back_to_noop")
        return _ACTIVE


def get_instrumentation() -> Instrumentation:
    return _ACTIVE


atexit.register(lambda: _ACTIVE.shutdown())
