from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from typing import Any

import httpx
import pytest
import structlog
from httpx import ASGITransport, AsyncClient
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from soma_service.config import get_settings
from soma_service.main import app
from soma_service.services.calc_client import CalcClient, set_calc_client
from soma_service.services.telemetry_state import set_telemetry
from soma_service.telemetry import logging as telemetry_logging
from soma_service.telemetry.client import TelemetryClient
from soma_service.telemetry.logging import LogRecord
from soma_service.telemetry.sdk import TelemetrySDK


class RecordingSink:
    """In-memory sink; derived sinks share the same record list."""

    def __init__(
        self,
        records: list[dict[str, Any]] | None = None,
        attrs: dict[str, Any] | None = None,
        groups: tuple[str, ...] = (),
    ) -> None:
        self.records = records if records is not None else []
        self.attrs = dict(attrs or {})
        self.groups = groups

    def enabled(self, level: int) -> bool:
        _ = level
        return True

    def handle(self, ctx: Any, record: LogRecord) -> None:
        _ = ctx
        self.records.append(
            {
                "level": record.level,
                "message": record.message,
                "attrs": {**self.attrs, **record.attrs},
                "groups": self.groups,
            }
        )

    def with_attrs(self, attrs: dict[str, Any]) -> RecordingSink:
        return RecordingSink(self.records, {**self.attrs, **attrs}, self.groups)

    def with_group(self, name: str) -> RecordingSink:
        return RecordingSink(self.records, self.attrs, (*self.groups, name))

    def messages(self) -> list[str]:
        return [record["message"] for record in self.records]

    def find(self, message: str) -> dict[str, Any]:
        matches = [record for record in self.records if record["message"] == message]
        assert matches, f"no log record {message!r}; got {self.messages()}"
        return matches[-1]


class FakeCalcBackend:
    """httpx.MockTransport handler standing in for the downstream /calc service."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.body = "7"
        self.error: Exception | None = None
        self.delay: float = 0.0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, text=self.body)


def metric_points(reader: InMemoryMetricReader, name: str) -> list[Any]:
    data = reader.get_metrics_data()
    points: list[Any] = []
    if data is None:
        return points
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                if metric.name == name:
                    points.extend(metric.data.data_points)
    return points


def counter_value(reader: InMemoryMetricReader, name: str, **attributes: str) -> int:
    return sum(
        point.value
        for point in metric_points(reader, name)
        if all(point.attributes.get(key) == value for key, value in attributes.items())
    )


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    return InMemoryMetricReader()


@pytest.fixture
def log_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def telemetry_sdk(span_exporter: InMemorySpanExporter, metric_reader: InMemoryMetricReader) -> TelemetrySDK:
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return TelemetrySDK(
        tracer_provider=tracer_provider,
        meter_provider=MeterProvider(metric_readers=[metric_reader]),
        propagator=CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()]),
    )


@pytest.fixture
def telemetry(telemetry_sdk: TelemetrySDK, log_sink: RecordingSink) -> TelemetryClient:
    return TelemetryClient(telemetry_sdk, "soma-test", log_sink=log_sink)


@pytest.fixture
def calc_backend() -> FakeCalcBackend:
    return FakeCalcBackend()


@pytest.fixture(autouse=True)
def test_environment(
    monkeypatch: pytest.MonkeyPatch,
    telemetry: TelemetryClient,
    calc_backend: FakeCalcBackend,
) -> Iterator[None]:
    monkeypatch.setenv("CALC_SERVICE_URL", "http://calc.test")
    get_settings.cache_clear()

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(calc_backend))
    set_telemetry(telemetry, telemetry.new_http_metrics())
    set_calc_client(CalcClient("http://calc.test", telemetry.meter, timeout=2.0, http_client=http_client))

    yield

    set_calc_client(None)
    set_telemetry(None)
    get_settings.cache_clear()


@pytest.fixture
async def api_client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def restore_logging(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Let a test run ``configure_logging`` and put stdlib/structlog back afterwards."""

    monkeypatch.setattr(telemetry_logging, "_CONFIGURED", False)
    root = logging.getLogger()
    saved_root = (list(root.handlers), root.level)
    saved_server = {
        name: (list(logging.getLogger(name).handlers), logging.getLogger(name).propagate, logging.getLogger(name).level)
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access")
    }

    yield

    structlog.reset_defaults()
    root.handlers, level = saved_root
    root.setLevel(level)
    for name, (handlers, propagate, server_level) in saved_server.items():
        server_logger = logging.getLogger(name)
        server_logger.handlers = handlers
        server_logger.propagate = propagate
        server_logger.setLevel(server_level)
