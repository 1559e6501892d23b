from __future__ import annotations

import logging
import math
from time import perf_counter

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from soma_service.services.calc_client import CalcServiceError, get_calc_client
from soma_service.services.telemetry_state import require_http_metrics, require_telemetry
from soma_service.telemetry.attributes import SpanAttribute


ENDPOINT = "/soma"

router = APIRouter(tags=["soma"])


class InvalidParametersError(ValueError):
    pass


_INFINITY_TOKENS = frozenset({"inf", "infinity"})


def parse_float(raw: str) -> float:
    """Strict decimal parsing.

    Rejects surrounding whitespace, digit separators, non-ASCII digits and
    finite-looking input that overflows to infinity.
    """

    if not raw or raw != raw.strip() or "_" in raw or not raw.isascii():
        raise ValueError(f"invalid number: {raw!r}")
    value = float(raw)
    if math.isinf(value) and raw.lstrip("+-").lower() not in _INFINITY_TOKENS:
        raise ValueError(f"number out of range: {raw!r}")
    return value


def parse_operands(raw_a: str, raw_b: str) -> tuple[float, float]:
    errors: list[str] = []
    values: list[float] = []
    for name, raw in (("a", raw_a), ("b", raw_b)):
        try:
            values.append(parse_float(raw))
        except ValueError as exc:
            errors.append(f"{name}: {exc}")
    if errors:
        raise InvalidParametersError("invalid parameters (" + "; ".join(errors) + ")")
    return values[0], values[1]


@router.get(ENDPOINT, response_class=PlainTextResponse)
async def soma(request: Request) -> PlainTextResponse:
    telemetry = require_telemetry()
    http_metrics = require_http_metrics()
    calc = get_calc_client()

    start = perf_counter()
    method = request.method
    raw_a = request.query_params.get("a", "")
    raw_b = request.query_params.get("b", "")

    with telemetry.tracer.start_as_current_span("SomaHandler"):
        try:
            a, b = parse_operands(raw_a, raw_b)
        except InvalidParametersError as exc:
            telemetry.log_error(exc, "soma_invalid_parameters", {"a": raw_a, "b": raw_b})
            http_metrics.record_error("invalid_parameters", ENDPOINT)
            http_metrics.record_request(method, ENDPOINT, 400, perf_counter() - start)
            return PlainTextResponse("Parâmetros inválidos. Use /soma?a=1&b=2", status_code=400)

        telemetry.log_with_span_attributes(
            logging.DEBUG,
            "soma_parameters_parsed",
            [SpanAttribute.float64("param.a", a), SpanAttribute.float64("param.b", b)],
        )

        try:
            response = await calc.calc(a, b)
        except CalcServiceError as exc:
            telemetry.log_error(exc, "soma_calc_failed", {"downstream_status": exc.status_code})
            http_metrics.record_error("external_service_error", ENDPOINT)
            http_metrics.record_request(method, ENDPOINT, 500, perf_counter() - start)
            return PlainTextResponse("erro ao chamar serviço 2", status_code=500)

        body = response.text
        telemetry.info_with_trace("soma_calc_succeeded", {"response_status": response.status_code})
        http_metrics.record_request(method, ENDPOINT, 200, perf_counter() - start)
        return PlainTextResponse(f"Resultado do serviço2: {body}")
