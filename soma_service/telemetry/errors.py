from __future__ import annotations


class TelemetryError(Exception):
    """Base error for telemetry setup and lifecycle failures."""


class ConfigError(TelemetryError):
    """The telemetry configuration file could not be read, expanded or validated."""


class MetricsSetupError(TelemetryError):
    """A metric instrument could not be created."""
