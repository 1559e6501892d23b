from __future__ import annotations

import asyncio

import httpx
import structlog
from opentelemetry import propagate
from opentelemetry.context import Context
from opentelemetry.metrics import Meter


TARGET_SERVICE = "calc-service"
TARGET_ENDPOINT = "/calc"

logger = structlog.get_logger(__name__)


class CalcServiceError(Exception):
    """The downstream calc service could not produce a usable answer."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CalcClient:
    """Calls ``GET /calc`` on the downstream service with trace headers attached."""

    def __init__(
        self,
        base_url: str,
        meter: Meter,
        *,
        timeout: float = 2.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http_client if http_client is not None else httpx.AsyncClient(timeout=timeout)
        self.external_calls_total = meter.create_counter(
            "external_calls_total",
            unit="1",
            description="Total number of external service calls",
        )

    def calc_url(self, a: float, b: float) -> str:
        return f"{self.base_url}{TARGET_ENDPOINT}?a={a:f}&b={b:f}"

    async def calc(self, a: float, b: float, *, ctx: Context | None = None) -> httpx.Response:
        """Send one request; raise :class:`CalcServiceError` on transport failure or non-2xx."""

        headers: dict[str, str] = {}
        propagate.inject(headers, context=ctx)
        request = self._http.build_request("GET", self.calc_url(a, b), headers=headers, timeout=self.timeout)

        self.external_calls_total.add(
            1,
            attributes={"target_service": TARGET_SERVICE, "endpoint": TARGET_ENDPOINT},
            context=ctx,
        )

        try:
            # httpx timeouts apply per phase; wait_for bounds the whole exchange.
            response = await asyncio.wait_for(self._http.send(request), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise CalcServiceError(f"{TARGET_SERVICE} timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise CalcServiceError(f"{TARGET_SERVICE} request failed: {exc}") from exc

        if not response.is_success:
            raise CalcServiceError(
                f"{TARGET_SERVICE} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        return response

    async def aclose(self) -> None:
        await self._http.aclose()


_client: CalcClient | None = None


def set_calc_client(client: CalcClient | None) -> None:
    global _client
    _client = client


def get_calc_client() -> CalcClient:
    if _client is None:
        raise RuntimeError("calc client not initialised; the app startup hook has not run")
    return _client
