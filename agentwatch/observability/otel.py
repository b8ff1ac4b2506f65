"""OpenTelemetry metrics/traces for agentwatch, with a Prometheus fallback.

Both backends are optional. Nothing is imported until `initialize` runs with
``AGENTWATCH_OTEL_ENABLED`` set, and every ``record_*`` helper is a no-op
until then.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from agentwatch import config

logger = logging.getLogger("agentwatch.observability")

# counter key -> (metric name, description, label names besides "project")
_COUNTERS: dict[str, tuple[str, str, tuple[str, ...]]] = {
    "lines": (
        "agentwatch_transcript_lines_total",
        "Complete transcript lines handed to the parser",
        (),
    ),
    "parser_failures": (
        "agentwatch_parser_failures_total",
        "Transcript lines dropped as malformed",
        ("parser",),
    ),
    "transitions": (
        "agentwatch_state_transitions_total",
        "Session state transitions by kind",
        ("kind",),
    ),
    "tool_activity": (
        "agentwatch_tool_activity_total",
        "Tool starts and finishes observed in transcripts",
        ("tool", "phase"),
    ),
}

_initialized = False
_enabled = False
_tracer: Any | None = None
_providers: list[Any] = []
_fastapi_instrumentor: Any | None = None
_otel_counters: dict[str, Any] = {}
_prom_counters: dict[str, Any] = {}


def _otlp_endpoint(base_endpoint: str, signal_path: str) -> str | None:
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint:
        return None
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        endpoint = endpoint[: -len("/v1")]
    return endpoint + signal_path


def _labels(project: str, **extra: str) -> dict[str, str]:
    labels = {key: (value or "").strip() or "unknown" for key, value in extra.items()}
    labels["project"] = project or "unknown"
    return labels


def _start_prometheus(port: int) -> None:
    try:
        from prometheus_client import Counter, start_http_server

        start_http_server(port)
        for key, (name, description, label_names) in _COUNTERS.items():
            _prom_counters[key] = Counter(name, description, [*label_names, "project"])
    except Exception as exc:  # noqa: BLE001
        _prom_counters.clear()
        logger.warning("Prometheus fallback not started: %s", exc)
        return
    logger.info("Prometheus fallback metrics server listening on port %s", port)


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _fastapi_instrumentor

    if _initialized:
        if _enabled and app is not None and _fastapi_instrumentor is not None:
            _fastapi_instrumentor.instrument_app(app)
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (AGENTWATCH_OTEL_ENABLED=false)")
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

    service_name = config.OTEL_SERVICE_NAME or "agentwatch"
    resource = Resource.create({"service.name": service_name, "service.namespace": "agentwatch"})

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")))
    )
    trace.set_tracer_provider(tracer_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics"))
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)

    meter = metrics.get_meter("agentwatch")
    for key, (name, description, _label_names) in _COUNTERS.items():
        _otel_counters[key] = meter.create_counter(name, unit="1", description=description)

    _providers[:] = [meter_provider, tracer_provider]
    _tracer = trace.get_tracer("agentwatch")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True
    if app is not None:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus(config.PROM_PORT)

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    if app is not None and _fastapi_instrumentor is not None:
        try:
            _fastapi_instrumentor.uninstrument_app(app)
        except Exception:
            logger.debug("FastAPI uninstrument failed", exc_info=True)
    for provider in _providers:
        try:
            provider.shutdown()
        except Exception:
            logger.debug("%s shutdown failed", type(provider).__name__, exc_info=True)
    _providers.clear()
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


def _count(key: str, amount: int, project: str, **labels: str) -> None:
    if amount <= 0:
        return
    attrs = _labels(project, **labels)
    counter = _otel_counters.get(key)
    if _enabled and counter is not None:
        counter.add(amount, attrs)
    prom_counter = _prom_counters.get(key)
    if prom_counter is not None:
        prom_counter.labels(**attrs).inc(amount)


def record_lines_ingested(count: int, *, project: str = "") -> None:
    _count("lines", max(0, int(count)), project)


def record_parser_failure(parser: str, *, project: str = "") -> None:
    _count("parser_failures", 1, project, parser=parser)


def record_transition(kind: str, *, project: str = "") -> None:
    _count("transitions", 1, project, kind=kind)


def record_tool_activity(tool: str, phase: str, *, project: str = "") -> None:
    _count("tool_activity", 1, project, tool=tool, phase=phase)
