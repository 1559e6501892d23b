from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, TextIO

import structlog
from opentelemetry import trace
from opentelemetry.context import Context


_CONFIGURED = False

# uvicorn installs its own handlers; route them through ours instead.
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _level_value(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level: {level!r}")
    return value


def configure_logging(level: int | str = logging.INFO, *, stream: TextIO | None = None) -> None:
    """Send structlog events and stdlib records to ``stream`` as JSON lines.

    ``level`` is a ``logging`` constant or a name such as ``LOG_LEVEL=debug``.
    Only the first call has an effect.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    threshold = _level_value(level)
    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(threshold)

    for name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
        server_logger.setLevel(threshold)

    _CONFIGURED = True


@dataclass
class LogRecord:
    """One log emission travelling down a chain of sinks."""

    level: int
    message: str
    attrs: dict[str, Any] = field(default_factory=dict)

    def add_attrs(self, **attrs: Any) -> None:
        self.attrs.update(attrs)


class LogSink(Protocol):
    """Minimal capability set of a structured log destination."""

    def enabled(self, level: int) -> bool: ...

    def handle(self, ctx: Context | None, record: LogRecord) -> None: ...

    def with_attrs(self, attrs: Mapping[str, Any]) -> LogSink: ...

    def with_group(self, name: str) -> LogSink: ...


def _nest(groups: tuple[str, ...], attrs: Mapping[str, Any]) -> dict[str, Any]:
    nested: dict[str, Any] = dict(attrs)
    for name in reversed(groups):
        nested = {name: nested}
    return nested


def _merge(base: dict[str, Any], extra: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class StructlogSink:
    """Renders records through a structlog logger.

    Attributes added after ``with_group`` (including the record's own) are
    nested under the open groups.
    """

    def __init__(
        self,
        logger: Any | None = None,
        *,
        name: str = "telemetry",
        attrs: Mapping[str, Any] | None = None,
        groups: tuple[str, ...] = (),
    ) -> None:
        self._name = name
        self._logger = logger if logger is not None else structlog.get_logger(name)
        self._attrs: dict[str, Any] = dict(attrs or {})
        self._groups = groups

    def enabled(self, level: int) -> bool:
        return logging.getLogger(self._name).isEnabledFor(level)

    def handle(self, ctx: Context | None, record: LogRecord) -> None:
        _ = ctx
        fields = _merge(self._attrs, _nest(self._groups, record.attrs))
        # Fields may share names with log()'s own parameters.
        self._logger.bind(**fields).log(record.level, record.message)

    def with_attrs(self, attrs: Mapping[str, Any]) -> StructlogSink:
        return StructlogSink(
            self._logger,
            name=self._name,
            attrs=_merge(self._attrs, _nest(self._groups, attrs)),
            groups=self._groups,
        )

    def with_group(self, name: str) -> StructlogSink:
        if not name:
            return self
        return StructlogSink(self._logger, name=self._name, attrs=self._attrs, groups=(*self._groups, name))


class CorrelatedHandler:
    """Decorates a sink so records carry the active span's identifiers."""

    def __init__(self, inner: LogSink) -> None:
        self.inner = inner

    def enabled(self, level: int) -> bool:
        return self.inner.enabled(level)

    def handle(self, ctx: Context | None, record: LogRecord) -> None:
        span = trace.get_current_span(ctx)
        if span.is_recording():
            span_context = span.get_span_context()
            if span_context.is_valid:
                record.add_attrs(
                    trace_id=trace.format_trace_id(span_context.trace_id),
                    span_id=trace.format_span_id(span_context.span_id),
                )
                if span_context.trace_flags.sampled:
                    record.add_attrs(trace_sampled=True)

        self.inner.handle(ctx, record)

    def with_attrs(self, attrs: Mapping[str, Any]) -> CorrelatedHandler:
        return CorrelatedHandler(self.inner.with_attrs(attrs))

    def with_group(self, name: str) -> CorrelatedHandler:
        return CorrelatedHandler(self.inner.with_group(name))


class CorrelatedLogger:
    """Level-named logging front-end over a sink.

    Fields travel as a mapping so any key (``level``, ``msg``, ``ctx``...)
    can be logged. ``ctx`` selects the OpenTelemetry context used for
    correlation; the current context is used when it is omitted.
    """

    def __init__(self, sink: LogSink) -> None:
        self.sink = sink

    def log(
        self,
        level: int,
        msg: str,
        attrs: Mapping[str, Any] | None = None,
        *,
        ctx: Context | None = None,
    ) -> None:
        if not self.sink.enabled(level):
            return
        self.sink.handle(ctx, LogRecord(level=level, message=msg, attrs=dict(attrs or {})))

    def debug(self, msg: str, attrs: Mapping[str, Any] | None = None, *, ctx: Context | None = None) -> None:
        self.log(logging.DEBUG, msg, attrs, ctx=ctx)

    def info(self, msg: str, attrs: Mapping[str, Any] | None = None, *, ctx: Context | None = None) -> None:
        self.log(logging.INFO, msg, attrs, ctx=ctx)

    def warning(self, msg: str, attrs: Mapping[str, Any] | None = None, *, ctx: Context | None = None) -> None:
        self.log(logging.WARNING, msg, attrs, ctx=ctx)

    def error(self, msg: str, attrs: Mapping[str, Any] | None = None, *, ctx: Context | None = None) -> None:
        self.log(logging.ERROR, msg, attrs, ctx=ctx)

    def bind(self, attrs: Mapping[str, Any]) -> CorrelatedLogger:
        return CorrelatedLogger(self.sink.with_attrs(attrs))

    def group(self, name: str) -> CorrelatedLogger:
        return CorrelatedLogger(self.sink.with_group(name))


def new_correlated_logger(sink: LogSink | None = None) -> CorrelatedLogger:
    return CorrelatedLogger(CorrelatedHandler(sink if sink is not None else StructlogSink()))
