"""Optional OpenTelemetry tracing and metrics for Dewey.

The OTel packages come with the ``[otel]`` extra.  Without them, or while
telemetry is disabled, tracers hand out inert spans and every instrument
swallows its measurements, so the store and dispatcher can be instrumented
unconditionally.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from dewey.settings import ObservabilitySettings

try:
    from opentelemetry import metrics as otel_metrics
    from opentelemetry import trace as otel_trace

    _HAS_OTEL = True
except ModuleNotFoundError:
    _HAS_OTEL = False


class _NoOpSpan:
    """Stands in for a span when tracing is off."""

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def record_exception(self, exception: BaseException, **kwargs: Any) -> None:
        pass

    def __enter__(self) -> _NoOpSpan:
        return self

    def __exit__(self, *exc_info: object) -> None:
        pass


class _NoOpCounter:
    def add(self, amount: int | float, attributes: dict[str, Any] | None = None) -> None:
        pass


class _NoOpHistogram:
    def record(self, amount: int | float, attributes: dict[str, Any] | None = None) -> None:
        pass


@dataclass
class _Metrics:
    """Instruments recorded by the dispatcher and the document store."""

    events_received: Any = field(default_factory=_NoOpCounter)
    events_unrecognized: Any = field(default_factory=_NoOpCounter)
    event_latency: Any = field(default_factory=_NoOpHistogram)
    documents_written: Any = field(default_factory=_NoOpCounter)

    @classmethod
    def from_meter(cls, meter: Any) -> _Metrics:
        return cls(
            events_received=meter.create_counter("dewey_events_received_total", description="Change events received"),
            events_unrecognized=meter.create_counter(
                "dewey_events_unrecognized_total", description="Change events with an unknown routing key"
            ),
            event_latency=meter.create_histogram(
                "dewey_event_latency_seconds", description="Handling time per change event", unit="s"
            ),
            documents_written=meter.create_counter(
                "dewey_documents_written_total", description="Index documents created, patched or removed"
            ),
        )


@dataclass
class _State:
    initialized: bool = False
    enabled: bool = False
    metrics: _Metrics = field(default_factory=_Metrics)


_state = _State()


class _LazyTracer:
    """Looks up the real tracer per span so module-level tracers follow late initialization."""

    def __init__(self, name: str) -> None:
        self._name = name

    def start_as_current_span(self, name: str, **kwargs: Any) -> Any:
        if _HAS_OTEL and _state.enabled:
            return otel_trace.get_tracer(self._name).start_as_current_span(name, **kwargs)
        return _NoOpSpan()


def get_tracer(name: str) -> _LazyTracer:
    return _LazyTracer(name)


def get_metrics() -> _Metrics:
    """Current instruments; inert until :func:`init_telemetry` enables OTel."""
    return _state.metrics


def init_telemetry(settings: ObservabilitySettings) -> None:
    """Install OTel providers according to *settings*.

    Only the first call in a process has any effect.
    """
    if _state.initialized:
        return
    _state.initialized = True

    if not (settings.enabled and _HAS_OTEL):
        logger.debug("Telemetry off (enabled={}, otel_installed={})", settings.enabled, _HAS_OTEL)
        return

    from opentelemetry.sdk.metrics import MeterProvider  # noqa: PLC0415
    from opentelemetry.sdk.resources import Resource  # noqa: PLC0415
    from opentelemetry.sdk.trace import TracerProvider  # noqa: PLC0415
    from opentelemetry.sdk.trace.export import BatchSpanProcessor  # noqa: PLC0415
    from opentelemetry.sdk.trace.sampling import TraceIdRatioBased  # noqa: PLC0415

    resource = Resource.create({"service.name": settings.service_name, "service.version": _package_version()})
    span_exporter, metric_reader = _exporters(settings)

    tracer_provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.sample_rate))
    if span_exporter is not None:
        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
    otel_trace.set_tracer_provider(tracer_provider)
    otel_metrics.set_meter_provider(
        MeterProvider(resource=resource, metric_readers=[metric_reader] if metric_reader is not None else [])
    )

    _state.enabled = True
    _state.metrics = _Metrics.from_meter(otel_metrics.get_meter("dewey"))
    logger.info("Telemetry on (exporter={}, sample_rate={})", settings.exporter, settings.sample_rate)


def shutdown_telemetry() -> None:
    """Flush pending spans and metrics. A no-op unless telemetry was initialized."""
    if not _state.initialized:
        return
    _state.initialized = False
    if not (_state.enabled and _HAS_OTEL):
        return

    for provider in (otel_trace.get_tracer_provider(), otel_metrics.get_meter_provider()):
        if hasattr(provider, "shutdown"):
            provider.shutdown()
    _state.enabled = False
    _state.metrics = _Metrics()
    logger.debug("Telemetry flushed and stopped")


def _package_version() -> str:
    from importlib.metadata import PackageNotFoundError, version  # noqa: PLC0415

    try:
        return version("dewey")
    except PackageNotFoundError:
        return "0.0.0-dev"


def _exporters(settings: ObservabilitySettings) -> tuple[Any, Any]:
    """Return ``(span_exporter, metric_reader)`` for the configured exporter kind."""
    if settings.exporter == "none":
        return None, None

    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader  # noqa: PLC0415

    if settings.exporter == "console":
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter  # noqa: PLC0415
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter  # noqa: PLC0415

        return ConsoleSpanExporter(), PeriodicExportingMetricReader(ConsoleMetricExporter())

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter  # noqa: PLC0415
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter  # noqa: PLC0415

    return (
        OTLPSpanExporter(endpoint=settings.endpoint),
        PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=settings.endpoint)),
    )
