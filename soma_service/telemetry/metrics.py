from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from datetime import timedelta

import psutil
from opentelemetry.context import Context
from opentelemetry.metrics import CallbackOptions, Meter, ObservableGauge, Observation

from soma_service.telemetry.errors import MetricsSetupError


class HTTPMetrics:
    """Request/error counters and a duration histogram with a fixed label schema.

    Instruments are created once; the SDK instruments are thread-safe so the
    recorder can be shared by every concurrently handled request.
    """

    def __init__(self, meter: Meter) -> None:
        try:
            self.requests_total = meter.create_counter(
                "http_requests_total",
                unit="1",
                description="Total number of HTTP requests",
            )
            self.request_duration = meter.create_histogram(
                "http_request_duration_seconds",
                unit="s",
                description="Duration of HTTP requests in seconds",
            )
            self.errors_total = meter.create_counter(
                "http_errors_total",
                unit="1",
                description="Total number of HTTP errors",
            )
        except Exception as exc:
            raise MetricsSetupError(f"failed to create HTTP metrics: {exc}") from exc

    def record_request(
        self,
        method: str,
        endpoint: str,
        status_code: int | str,
        duration: float | timedelta,
        *,
        ctx: Context | None = None,
    ) -> None:
        """Count one completed request and sample its duration in seconds."""

        seconds = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
        attributes = {
            "method": method,
            "endpoint": endpoint,
            "status_code": str(status_code),
        }
        self.requests_total.add(1, attributes=attributes, context=ctx)
        self.request_duration.record(seconds, attributes=attributes, context=ctx)

    def record_error(self, error_type: str, endpoint: str, *, ctx: Context | None = None) -> None:
        self.errors_total.add(
            1,
            attributes={"error_type": error_type, "endpoint": endpoint},
            context=ctx,
        )


def register_gauge(
    meter: Meter,
    name: str,
    sample: Callable[[], int | float],
    *,
    description: str = "",
    unit: str = "1",
) -> ObservableGauge:
    """Register a gauge whose value is read from ``sample`` on each collection.

    ``sample`` runs on the metric reader's schedule, never on request paths.
    """

    def _observe(options: CallbackOptions) -> Iterable[Observation]:
        _ = options
        yield Observation(sample())

    try:
        return meter.create_observable_gauge(name, callbacks=[_observe], unit=unit, description=description)
    except Exception as exc:
        raise MetricsSetupError(f"failed to create gauge {name}: {exc}") from exc


def _resident_memory_bytes() -> int:
    return psutil.Process().memory_info().rss


def register_runtime_metrics(meter: Meter) -> list[ObservableGauge]:
    return [
        register_gauge(
            meter,
            "process_threads",
            threading.active_count,
            description="Number of live threads",
        ),
        register_gauge(
            meter,
            "process_memory_rss_bytes",
            _resident_memory_bytes,
            description="Resident memory in bytes",
            unit="By",
        ),
    ]
