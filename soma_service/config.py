from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from soma_service.telemetry.config import TelemetryConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    otel_config_path: str = Field(default="otel-config.yaml", alias="OTEL_CONFIG_PATH")
    service_name: str = Field(default="soma-service", alias="SERVICE_NAME")
    service_version: str = Field(default="0.1.0", alias="SERVICE_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    enable_runtime_metrics: bool = Field(default=True, alias="ENABLE_RUNTIME_METRICS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    calc_service_url: str = Field(default="http://localhost:8082", alias="CALC_SERVICE_URL")
    calc_timeout_seconds: float = Field(default=2.0, alias="CALC_TIMEOUT_SECONDS")

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8085, alias="PORT")

    def telemetry_config(self) -> TelemetryConfig:
        return TelemetryConfig(
            config_path=self.otel_config_path,
            service_name=self.service_name,
            service_version=self.service_version,
            environment=self.environment,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
