from __future__ import annotations

from time import perf_counter
from typing import Any, Callable

from opentelemetry import context as otel_context
from opentelemetry import propagate
from opentelemetry.trace import SpanKind, Status, StatusCode

from soma_service.telemetry.client import TelemetryClient
from soma_service.telemetry.metrics import HTTPMetrics


class _HeaderGetter:
    """Reads ASGI ``(bytes, bytes)`` header pairs for propagators."""

    def get(self, carrier: dict[str, Any], key: str) -> list[str] | None:
        key_bytes = key.lower().encode("latin-1")
        values = [value.decode("latin-1") for name, value in carrier.get("headers", []) if name.lower() == key_bytes]
        return values or None

    def keys(self, carrier: dict[str, Any]) -> list[str]:
        return [name.decode("latin-1") for name, _ in carrier.get("headers", [])]


_GETTER = _HeaderGetter()


class TelemetryMiddleware:
    """Server span, access log and (optionally) HTTP metrics for every request.

    The incoming trace context is extracted with the global propagator so
    handlers continue the caller's trace. ``client_getter`` is resolved per
    request, letting the app install its client at startup.
    """

    def __init__(
        self,
        app: Callable[..., Any],
        client_getter: Callable[[], TelemetryClient | None],
        metrics_getter: Callable[[], HTTPMetrics | None] | None = None,
        excluded_paths: set[str] | None = None,
    ) -> None:
        self.app = app
        self._client_getter = client_getter
        self._metrics_getter = metrics_getter
        # Avoid self-observing health checks.
        self._excluded_paths = excluded_paths if excluded_paths is not None else {"/health"}

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        client = self._client_getter()
        if scope.get("type") != "http" or client is None or scope.get("path") in self._excluded_paths:
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "GET")
        headers = dict(scope.get("headers", []))
        user_agent = headers.get(b"user-agent", b"").decode("latin-1")
        query = scope.get("query_string", b"").decode("latin-1")
        url = f"{path}?{query}" if query else path

        parent = propagate.extract(scope, getter=_GETTER)
        start = perf_counter()
        status_code: int = 500

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code

            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))

            await send(message)

        with client.tracer.start_as_current_span(
            f"{method} {path}",
            context=parent,
            kind=SpanKind.SERVER,
            attributes={
                "http.method": method,
                "http.url": url,
                "http.user_agent": user_agent,
            },
        ) as span:
            try:
                await self.app(scope, receive, send_wrapper)
            finally:
                elapsed = perf_counter() - start
                ctx = otel_context.get_current()

                span.set_attribute("http.status_code", status_code)
                if status_code >= 500:
                    span.set_status(Status(StatusCode.ERROR))

                # Update metrics first so they update even if logging misbehaves.
                metrics = self._metrics_getter() if self._metrics_getter else None
                if metrics is not None:
                    metrics.record_request(method, path, status_code, elapsed, ctx=ctx)
                    if status_code >= 400:
                        error_type = "server_error" if status_code >= 500 else "client_error"
                        metrics.record_error(error_type, path, ctx=ctx)

                client.log_http_request(method, path, status_code, elapsed, ctx=ctx)
