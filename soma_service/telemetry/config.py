from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from soma_service.telemetry.errors import ConfigError


# ${VAR}, ${VAR:-default}, $VAR and the $$ escape.
_PLACEHOLDER = re.compile(
    r"\$(?:(?P<escaped>\$)|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))"
)


@dataclass(frozen=True)
class TelemetryConfig:
    """Where to find the YAML file plus the values published into it."""

    config_path: str | Path
    service_name: str = ""
    service_version: str = ""
    environment: str = ""
    attributes: Mapping[str, str] = field(default_factory=dict)

    def overrides(self) -> dict[str, str]:
        values: dict[str, str] = {}
        if self.service_name:
            values["SERVICE_NAME"] = self.service_name
        if self.service_version:
            values["SERVICE_VERSION"] = self.service_version
        if self.environment:
            values["ENVIRONMENT"] = self.environment
        values.update(self.attributes)
        return values


def expand_env(text: str, mapping: Mapping[str, str]) -> str:
    """Substitute placeholders in ``text`` using only ``mapping``.

    Unset variables expand to an empty string; ``${VAR:-default}`` falls back
    to ``default`` when the variable is unset or empty.
    """

    def _replace(match: re.Match[str]) -> str:
        if match.group("escaped"):
            return "$"
        name = match.group("braced") or match.group("bare")
        value = mapping.get(name, "")
        default = match.group("default")
        if default is not None and not value:
            return default
        return value

    return _PLACEHOLDER.sub(_replace, text)


def substitution_mapping(
    overrides: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    mapping = dict(os.environ if environ is None else environ)
    if overrides:
        mapping.update(overrides)
    return mapping


# ---------------------------------------------------------------------------
# Supported subset of the OpenTelemetry declarative configuration schema.
# ---------------------------------------------------------------------------


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


# `console:` or `always_off:` with no value is YAML null but still selects that kind.
def _empty_if_null(value: Any) -> Any:
    return {} if value is None else value


def _require_one_of(section: BaseModel, label: str, kinds: tuple[str, ...]) -> None:
    chosen = [name for name in kinds if getattr(section, name) is not None]
    if len(chosen) != 1:
        raise ValueError(f"{label} must define exactly one of: {', '.join(kinds)}")


_SAMPLER_KINDS = ("always_on", "always_off", "trace_id_ratio_based", "parent_based")


class ResourceAttribute(_Section):
    name: str
    value: Any
    type: Literal["string", "bool", "int", "double"] | None = None


class ResourceConfig(_Section):
    attributes: list[ResourceAttribute] = Field(default_factory=list)
    attributes_list: str | None = None
    schema_url: str | None = None

    def as_dict(self) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        # attributes_list has lower priority than explicit attributes.
        if self.attributes_list:
            for pair in self.attributes_list.split(","):
                key, sep, value = pair.partition("=")
                if sep and key.strip():
                    merged[key.strip()] = value.strip()
        for attr in self.attributes:
            merged[attr.name] = _coerce_attribute(attr)
        return merged


def _coerce_attribute(attr: ResourceAttribute) -> Any:
    if attr.type == "string":
        return str(attr.value)
    if attr.type == "int":
        return int(attr.value)
    if attr.type == "double":
        return float(attr.value)
    if attr.type == "bool":
        if isinstance(attr.value, str):
            return attr.value.strip().lower() == "true"
        return bool(attr.value)
    return attr.value


class OtlpExporterConfig(_Section):
    protocol: Literal["http/protobuf", "grpc"] = "http/protobuf"
    endpoint: str | None = None
    headers: list[dict[str, str]] = Field(default_factory=list)
    headers_list: str | None = None
    timeout: int = 10000
    insecure: bool | None = None

    def header_dict(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.headers_list:
            for pair in self.headers_list.split(","):
                key, sep, value = pair.partition("=")
                if sep and key.strip():
                    headers[key.strip()] = value.strip()
        for item in self.headers:
            if "name" in item:
                headers[item["name"]] = item.get("value", "")
        return headers


class ExporterConfig(_Section):
    otlp: OtlpExporterConfig | None = None
    console: dict[str, Any] | None = None

    @field_validator("otlp", "console", mode="before")
    @classmethod
    def _present_as_empty(cls, value: Any) -> Any:
        return _empty_if_null(value)

    @model_validator(mode="after")
    def _exactly_one(self) -> ExporterConfig:
        _require_one_of(self, "exporter", ("otlp", "console"))
        return self


class BatchProcessorConfig(_Section):
    schedule_delay: int = 5000
    export_timeout: int = 30000
    max_queue_size: int = 2048
    max_export_batch_size: int = 512
    exporter: ExporterConfig


class SimpleProcessorConfig(_Section):
    exporter: ExporterConfig


class SpanProcessorConfig(_Section):
    batch: BatchProcessorConfig | None = None
    simple: SimpleProcessorConfig | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> SpanProcessorConfig:
        _require_one_of(self, "span processor", ("batch", "simple"))
        return self


class RatioSamplerConfig(_Section):
    ratio: float = Field(default=1.0, ge=0.0, le=1.0)


class SamplerConfig(_Section):
    always_on: dict[str, Any] | None = None
    always_off: dict[str, Any] | None = None
    trace_id_ratio_based: RatioSamplerConfig | None = None
    parent_based: ParentBasedSamplerConfig | None = None

    @field_validator(*_SAMPLER_KINDS, mode="before")
    @classmethod
    def _present_as_empty(cls, value: Any) -> Any:
        return _empty_if_null(value)

    @model_validator(mode="after")
    def _exactly_one(self) -> SamplerConfig:
        _require_one_of(self, "sampler", _SAMPLER_KINDS)
        return self


class ParentBasedSamplerConfig(_Section):
    root: SamplerConfig | None = None


SamplerConfig.model_rebuild()


class TracerProviderConfig(_Section):
    processors: list[SpanProcessorConfig] = Field(default_factory=list)
    sampler: SamplerConfig | None = None


class PeriodicReaderConfig(_Section):
    interval: int = 60000
    timeout: int = 30000
    exporter: ExporterConfig


class MetricReaderConfig(_Section):
    periodic: PeriodicReaderConfig


class MeterProviderConfig(_Section):
    readers: list[MetricReaderConfig] = Field(default_factory=list)


class PropagatorConfig(_Section):
    composite: list[str] = Field(default_factory=lambda: ["tracecontext", "baggage"])


class OpenTelemetryConfiguration(BaseModel):
    """Root of the telemetry YAML document."""

    # Sections we do not map (logger_provider, instrumentation, ...) are ignored.
    model_config = ConfigDict(extra="ignore")

    file_format: str
    disabled: bool = False
    resource: ResourceConfig = Field(default_factory=ResourceConfig)
    propagator: PropagatorConfig = Field(default_factory=PropagatorConfig)
    tracer_provider: TracerProviderConfig | None = None
    meter_provider: MeterProviderConfig | None = None

    @field_validator("file_format", mode="before")
    @classmethod
    def _format_as_string(cls, value: Any) -> Any:
        # An unquoted 0.3 in YAML arrives as a float.
        if isinstance(value, (int, float)):
            return str(value)
        return value


def parse_config(text: str) -> OpenTelemetryConfiguration:
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse YAML config: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError("telemetry config must be a YAML mapping")

    try:
        return OpenTelemetryConfiguration.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"invalid telemetry config: {exc}") from exc


def load_config(
    path: str | Path,
    overrides: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> OpenTelemetryConfiguration:
    """Read, expand and validate the telemetry configuration at ``path``.

    ``overrides`` take precedence over ``environ`` (a snapshot of
    ``os.environ`` when omitted). Nothing is written back to the process
    environment.
    """

    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"failed to read config file {path}: {exc}") from exc

    return parse_config(expand_env(text, substitution_mapping(overrides, environ)))
