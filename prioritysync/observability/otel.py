"""OpenTelemetry + Prometheus fallback wiring for the PrioritySync backend.

Both exporters share one instrument table. Sync outcomes are labelled by
result and installation, remote calls by gateway operation and status.
Everything here is a no-op until ``initialize`` succeeds.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, NamedTuple

from fastapi import FastAPI

from prioritysync import config

logger = logging.getLogger("prioritysync.observability")


class _Instrument(NamedTuple):
    name: str
    kind: str  # "counter" | "histogram"
    unit: str
    description: str
    prom_labels: tuple[str, ...]


_INSTRUMENTS = {
    "sync_runs": _Instrument(
        "prioritysync_sync_runs_total",
        "counter",
        "1",
        "Per-link sync outcomes (noop, synced, partial, skipped, failed)",
        ("result", "installation"),
    ),
    "sync_latency": _Instrument(
        "prioritysync_sync_latency_ms",
        "histogram",
        "ms",
        "Wall time of a single link sync",
        ("result", "installation"),
    ),
    "remote_calls": _Instrument(
        "prioritysync_remote_calls_total",
        "counter",
        "1",
        "Azure DevOps REST calls by operation and outcome",
        ("operation", "status"),
    ),
    "remote_latency": _Instrument(
        "prioritysync_remote_call_latency_ms",
        "histogram",
        "ms",
        "Azure DevOps REST call latency",
        ("operation",),
    ),
}

_initialized = False
_enabled = False
_prom_enabled = False
_tracer: Any | None = None
_providers: list[Any] = []
_fastapi_instrumentor: Any | None = None
_otel_instruments: dict[str, Any] = {}
_prom_instruments: dict[str, Any] = {}


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _label(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def _start_prometheus() -> None:
    global _prom_enabled
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        return

    for key, spec in _INSTRUMENTS.items():
        factory = Counter if spec.kind == "counter" else Histogram
        _prom_instruments[key] = factory(spec.name, spec.description, list(spec.prom_labels))
    _prom_enabled = True
    logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _fastapi_instrumentor

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (PRIORITYSYNC_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    service_name = config.OTEL_SERVICE_NAME or "prioritysync-backend"
    resource = Resource.create({"service.name": service_name, "service.namespace": "prioritysync"})

    span_exporter = OTLPSpanExporter(
        endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None
    )
    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(span_exporter))
    trace.set_tracer_provider(trace_provider)

    metric_exporter = OTLPMetricExporter(
        endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None
    )
    meter_provider = MeterProvider(
        resource=resource, metric_readers=[PeriodicExportingMetricReader(metric_exporter)]
    )
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("prioritysync.backend")

    for key, spec in _INSTRUMENTS.items():
        create = meter.create_counter if spec.kind == "counter" else meter.create_histogram
        _otel_instruments[key] = create(spec.name, unit=spec.unit, description=spec.description)

    _providers[:] = [meter_provider, trace_provider]
    _tracer = trace.get_tracer("prioritysync.backend")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True
    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus()

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception:  # noqa: BLE001
        logger.debug("FastAPI uninstrumentation failed", exc_info=True)
    for provider in _providers:
        try:
            provider.shutdown()
        except Exception:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed", exc_info=True)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def _emit(key: str, value: float, labels: dict[str, str]) -> None:
    spec = _INSTRUMENTS[key]
    if _enabled and key in _otel_instruments:
        instrument = _otel_instruments[key]
        if spec.kind == "counter":
            instrument.add(value, labels)
        else:
            instrument.record(value, labels)
    if _prom_enabled and key in _prom_instruments:
        bound = _prom_instruments[key].labels(**{name: labels[name] for name in spec.prom_labels})
        if spec.kind == "counter":
            bound.inc(value)
        else:
            bound.observe(value)


def record_sync_outcome(result: str, duration_ms: float, *, installation_id: str) -> None:
    labels = {"result": _label(result), "installation": _label(installation_id)}
    _emit("sync_runs", 1, labels)
    _emit("sync_latency", max(0.0, float(duration_ms)), labels)


def record_remote_call(operation: str, status: str, duration_ms: float = 0.0) -> None:
    labels = {"operation": _label(operation), "status": _label(status)}
    _emit("remote_calls", 1, labels)
    if duration_ms > 0:
        _emit("remote_latency", float(duration_ms), {"operation": labels["operation"]})
