import logging

import pytest

from soma_service.config import get_settings
from soma_service.main import app
from soma_service.services.calc_client import get_calc_client
from soma_service.services.telemetry_state import get_telemetry, require_http_metrics, require_telemetry
from soma_service.telemetry.errors import ConfigError
from soma_service.telemetry.metrics import HTTPMetrics


OTEL_CONFIG = """
file_format: "0.3"
resource:
  attributes:
    - name: service.name
      value: ${SERVICE_NAME:-unset}
"""


async def test_startup_wires_clients_from_settings(tmp_path, monkeypatch, restore_logging) -> None:
    path = tmp_path / "otel.yaml"
    path.write_text(OTEL_CONFIG, encoding="utf-8")
    monkeypatch.setenv("OTEL_CONFIG_PATH", str(path))
    monkeypatch.setenv("SERVICE_NAME", "soma-startup")
    monkeypatch.setenv("CALC_TIMEOUT_SECONDS", "1.5")
    monkeypatch.setenv("LOG_LEVEL", "warning")
    get_settings.cache_clear()

    async with app.router.lifespan_context(app):
        client = require_telemetry()
        assert client.service_name == "soma-startup"
        assert isinstance(require_http_metrics(), HTTPMetrics)

        calc = get_calc_client()
        assert calc.base_url == "http://calc.test"
        assert calc.timeout == 1.5
        assert logging.getLogger().level == logging.WARNING

    assert get_telemetry() is None
    with pytest.raises(RuntimeError):
        get_calc_client()


async def test_startup_aborts_on_missing_config(tmp_path, monkeypatch, restore_logging) -> None:
    monkeypatch.setenv("OTEL_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    get_settings.cache_clear()

    with pytest.raises(ConfigError, match="failed to read config file"):
        async with app.router.lifespan_context(app):
            pass
