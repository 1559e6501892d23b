from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import timedelta
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Status, StatusCode

from soma_service.telemetry.attributes import SpanAttribute
from soma_service.telemetry.config import TelemetryConfig, load_config
from soma_service.telemetry.logging import CorrelatedLogger, LogSink, new_correlated_logger
from soma_service.telemetry.metrics import HTTPMetrics, register_gauge, register_runtime_metrics
from soma_service.telemetry.sdk import TelemetrySDK, build_sdk


DEFAULT_SERVICE_NAME = "unknown-service"

logger = structlog.get_logger(__name__)


def setup_with_config(config: TelemetryConfig, **build_options: Any) -> TelemetrySDK:
    """Load ``config``, build the SDK and register it as the global provider set."""

    conf = load_config(config.config_path, overrides=config.overrides())
    sdk = build_sdk(conf, **build_options)
    sdk.register_global()
    return sdk


def setup(config_path: str | Path) -> Callable[[], None]:
    """Shortcut for ``setup_with_config`` returning only the shutdown callable."""

    return setup_with_config(TelemetryConfig(config_path=config_path)).shutdown


class TelemetryClient:
    """Tracer, meter and correlated logger scoped to one service.

    Build one per process, before accepting traffic, and call
    :meth:`shutdown` exactly once.
    """

    def __init__(
        self,
        sdk: TelemetrySDK,
        service_name: str = "",
        *,
        log_sink: LogSink | None = None,
    ) -> None:
        self.service_name = service_name or DEFAULT_SERVICE_NAME
        self._sdk = sdk
        self.tracer = sdk.tracer_provider.get_tracer(self.service_name)
        self.meter = sdk.meter_provider.get_meter(self.service_name)
        self.logger: CorrelatedLogger = new_correlated_logger(log_sink)

    def shutdown(self) -> None:
        self._sdk.shutdown()
        logger.info("telemetry_shutdown", service_name=self.service_name)

    # -- metrics -----------------------------------------------------------

    def new_http_metrics(self) -> HTTPMetrics:
        return HTTPMetrics(self.meter)

    def register_runtime_metrics(self) -> None:
        register_runtime_metrics(self.meter)

    def register_gauge(
        self,
        name: str,
        sample: Callable[[], int | float],
        *,
        description: str = "",
        unit: str = "1",
    ) -> None:
        register_gauge(self.meter, name, sample, description=description, unit=unit)

    # -- logging -----------------------------------------------------------

    def info_with_trace(
        self,
        msg: str,
        attrs: Mapping[str, Any] | None = None,
        *,
        ctx: Context | None = None,
    ) -> None:
        self.logger.info(msg, attrs, ctx=ctx)

    def log_error(
        self,
        err: BaseException,
        msg: str,
        attrs: Mapping[str, Any] | None = None,
        *,
        ctx: Context | None = None,
    ) -> None:
        """Record ``err`` on the active span, then log it at ERROR level."""

        span = trace.get_current_span(ctx)
        if span.is_recording():
            span.record_exception(err)
            span.set_status(Status(StatusCode.ERROR, str(err)))

        self.logger.error(msg, {"error": str(err), **(attrs or {})}, ctx=ctx)

    def log_http_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration: float | timedelta,
        attrs: Mapping[str, Any] | None = None,
        *,
        ctx: Context | None = None,
    ) -> None:
        seconds = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)

        level = logging.INFO
        if status_code >= 400:
            level = logging.WARNING
        if status_code >= 500:
            level = logging.ERROR

        fields = {
            "http_method": method,
            "http_path": path,
            "http_status_code": status_code,
            "duration_ms": int(seconds * 1000),
        }
        fields.update(attrs or {})
        self.logger.log(level, "HTTP request completed", fields, ctx=ctx)

    def log_with_span_attributes(
        self,
        level: int,
        msg: str,
        attrs: Sequence[SpanAttribute],
        *,
        ctx: Context | None = None,
    ) -> None:
        """Log ``attrs`` as fields and mirror them onto the recording span."""

        fields = {attr.key: attr.value for attr in attrs}
        span = trace.get_current_span(ctx)
        if span.is_recording():
            span.set_attributes(fields)

        self.logger.log(level, msg, fields, ctx=ctx)


def new_client(config: TelemetryConfig, *, log_sink: LogSink | None = None, **build_options: Any) -> TelemetryClient:
    """Set up the SDK from ``config`` and return a client bound to it.

    Raises :class:`~soma_service.telemetry.errors.TelemetryError` (or a
    subclass) when the file cannot be loaded or the SDK cannot be built.
    """

    sdk = setup_with_config(config, **build_options)
    client = TelemetryClient(sdk, config.service_name, log_sink=log_sink)
    logger.info(
        "telemetry_client_created",
        service_name=client.service_name,
        config_path=str(config.config_path),
    )
    return client
