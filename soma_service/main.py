
import structlog
import uvicorn
from fastapi import FastAPI

from soma_service.api.soma import router as soma_router
from soma_service.config import get_settings
from soma_service.services.calc_client import CalcClient, get_calc_client, set_calc_client
from soma_service.services.telemetry_state import get_telemetry, set_telemetry
from soma_service.telemetry.client import new_client
from soma_service.telemetry.logging import configure_logging
from soma_service.telemetry.middleware import TelemetryMiddleware


logger = structlog.get_logger(__name__)

app = FastAPI(title="Soma Service", version="0.1.0")
app.add_middleware(TelemetryMiddleware, client_getter=get_telemetry)
app.include_router(soma_router)


@app.on_event("startup")
def _startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)

    # Any failure here aborts startup; there is no degraded mode.
    client = new_client(settings.telemetry_config())
    if settings.enable_runtime_metrics:
        client.register_runtime_metrics()
    set_telemetry(client, client.new_http_metrics())
    set_calc_client(CalcClient(settings.calc_service_url, client.meter, timeout=settings.calc_timeout_seconds))

    logger.info("soma_service_started", calc_service_url=settings.calc_service_url)


@app.on_event("shutdown")
async def _shutdown() -> None:
    await get_calc_client().aclose()
    set_calc_client(None)

    client = get_telemetry()
    set_telemetry(None)
    if client is not None:
        client.shutdown()


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


def run() -> None:
    settings = get_settings()
    uvicorn.run("soma_service.main:app", host=settings.host, port=settings.port)
