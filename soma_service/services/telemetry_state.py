from __future__ import annotations

from soma_service.telemetry.client import TelemetryClient
from soma_service.telemetry.metrics import HTTPMetrics


_telemetry: TelemetryClient | None = None
_http_metrics: HTTPMetrics | None = None


def set_telemetry(client: TelemetryClient | None, http_metrics: HTTPMetrics | None = None) -> None:
    """Install the process-wide telemetry client (startup hook and tests)."""

    global _telemetry, _http_metrics
    _telemetry = client
    _http_metrics = http_metrics


def get_telemetry() -> TelemetryClient | None:
    return _telemetry


def require_telemetry() -> TelemetryClient:
    if _telemetry is None:
        raise RuntimeError("telemetry client not initialised; the app startup hook has not run")
    return _telemetry


def require_http_metrics() -> HTTPMetrics:
    if _http_metrics is None:
        raise RuntimeError("HTTP metrics not initialised; the app startup hook has not run")
    return _http_metrics
