from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from typing import Any

import structlog
from opentelemetry import metrics, propagate, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter as GrpcMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter as GrpcSpanExporter
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter as HttpMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter as HttpSpanExporter
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.propagators.textmap import TextMapPropagator
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.sampling import (
    ALWAYS_OFF,
    ALWAYS_ON,
    ParentBased,
    Sampler,
    TraceIdRatioBased,
)

from soma_service.telemetry.config import (
    ExporterConfig,
    OpenTelemetryConfiguration,
    SamplerConfig,
    SpanProcessorConfig,
)
from soma_service.telemetry.errors import ConfigError, TelemetryError


logger = structlog.get_logger(__name__)


@dataclass
class TelemetrySDK:
    """Providers and propagator built from one configuration document."""

    tracer_provider: trace.TracerProvider
    meter_provider: metrics.MeterProvider
    propagator: TextMapPropagator
    _shut_down: bool = field(default=False, repr=False)

    def register_global(self) -> None:
        trace.set_tracer_provider(self.tracer_provider)
        metrics.set_meter_provider(self.meter_provider)
        propagate.set_global_textmap(self.propagator)

    def shutdown(self) -> None:
        """Flush pending telemetry and stop the export pipeline.

        Only one call is supported.
        """

        if self._shut_down:
            raise TelemetryError("telemetry SDK already shut down")
        self._shut_down = True

        try:
            if isinstance(self.tracer_provider, TracerProvider):
                self.tracer_provider.shutdown()
            if isinstance(self.meter_provider, MeterProvider):
                self.meter_provider.shutdown()
        except Exception as exc:
            raise TelemetryError(f"failed to shut down telemetry SDK: {exc}") from exc


def _span_exporter(conf: ExporterConfig) -> Any:
    if conf.console is not None:
        return ConsoleSpanExporter()

    otlp = conf.otlp
    kwargs: dict[str, Any] = {"headers": otlp.header_dict() or None, "timeout": otlp.timeout / 1000.0}
    if otlp.endpoint:
        kwargs["endpoint"] = otlp.endpoint
    if otlp.protocol == "grpc":
        return GrpcSpanExporter(insecure=otlp.insecure, **kwargs)
    return HttpSpanExporter(**kwargs)


def _metric_exporter(conf: ExporterConfig) -> Any:
    if conf.console is not None:
        return ConsoleMetricExporter()

    otlp = conf.otlp
    kwargs: dict[str, Any] = {"headers": otlp.header_dict() or None, "timeout": otlp.timeout / 1000.0}
    if otlp.endpoint:
        kwargs["endpoint"] = otlp.endpoint
    if otlp.protocol == "grpc":
        return GrpcMetricExporter(insecure=otlp.insecure, **kwargs)
    return HttpMetricExporter(**kwargs)


def _span_processor(conf: SpanProcessorConfig) -> SpanProcessor:
    if conf.batch is not None:
        return BatchSpanProcessor(
            _span_exporter(conf.batch.exporter),
            max_queue_size=conf.batch.max_queue_size,
            schedule_delay_millis=conf.batch.schedule_delay,
            max_export_batch_size=conf.batch.max_export_batch_size,
            export_timeout_millis=conf.batch.export_timeout,
        )
    return SimpleSpanProcessor(_span_exporter(conf.simple.exporter))


def build_sampler(conf: SamplerConfig | None) -> Sampler:
    if conf is None:
        return ParentBased(ALWAYS_ON)
    if conf.always_off is not None:
        return ALWAYS_OFF
    if conf.trace_id_ratio_based is not None:
        return TraceIdRatioBased(conf.trace_id_ratio_based.ratio)
    if conf.parent_based is not None:
        return ParentBased(build_sampler(conf.parent_based.root) if conf.parent_based.root else ALWAYS_ON)
    return ALWAYS_ON


def build_propagator(names: Iterable[str]) -> TextMapPropagator:
    """Compose propagators registered under the ``opentelemetry_propagator`` entry point group."""

    propagators: list[TextMapPropagator] = []
    for name in names:
        found = list(entry_points(group="opentelemetry_propagator", name=name))
        if not found:
            raise ConfigError(f"unknown propagator: {name}")
        propagators.append(found[0].load()())
    return CompositePropagator(propagators)


def build_sdk(
    conf: OpenTelemetryConfiguration,
    *,
    span_processors: Iterable[SpanProcessor] = (),
    metric_readers: Iterable[MetricReader] = (),
) -> TelemetrySDK:
    """Construct SDK providers for ``conf``.

    ``span_processors`` and ``metric_readers`` are attached in addition to
    the ones the document declares.
    """

    propagator = build_propagator(conf.propagator.composite)

    if conf.disabled:
        logger.info("telemetry_disabled")
        return TelemetrySDK(
            tracer_provider=trace.NoOpTracerProvider(),
            meter_provider=metrics.NoOpMeterProvider(),
            propagator=propagator,
        )

    try:
        resource = Resource.create(conf.resource.as_dict())

        tracer_conf = conf.tracer_provider
        tracer_provider = TracerProvider(
            resource=resource,
            sampler=build_sampler(tracer_conf.sampler if tracer_conf else None),
        )
        processors = [_span_processor(item) for item in (tracer_conf.processors if tracer_conf else [])]
        processors.extend(span_processors)
        for processor in processors:
            tracer_provider.add_span_processor(processor)

        readers: list[MetricReader] = [
            PeriodicExportingMetricReader(
                _metric_exporter(reader.periodic.exporter),
                export_interval_millis=reader.periodic.interval,
                export_timeout_millis=reader.periodic.timeout,
            )
            for reader in (conf.meter_provider.readers if conf.meter_provider else [])
        ]
        readers.extend(metric_readers)
        meter_provider = MeterProvider(resource=resource, metric_readers=readers)
    except (TypeError, ValueError) as exc:
        raise TelemetryError(f"failed to create OpenTelemetry SDK: {exc}") from exc

    logger.info(
        "telemetry_sdk_created",
        span_processors=len(processors),
        metric_readers=len(readers),
        propagators=list(conf.propagator.composite),
    )
    return TelemetrySDK(tracer_provider=tracer_provider, meter_provider=meter_provider, propagator=propagator)
