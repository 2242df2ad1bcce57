"""Finnhub quote adapter for equities, indices, commodities and FX."""

from __future__ import annotations

from typing import Any

import httpx

from .http_adapter import DEFAULT_TIMEOUT, HttpJsonAdapter, MalformedPayload, optional_float
from .interface import FailureKind, ProviderResult
from .models import Instrument
from .ticks import build_tick


class FinnhubAdapter(HttpJsonAdapter):
    """Adapter for GET /api/v1/quote.

    Response fields: c (current), d (change), dp (change %), h, l, o,
    pc (previous close), t (unix seconds). Finnhub answers unknown symbols
    with 200 and an all-zero body, which is reported as not-found.
    Finnhub does not report volume on this endpoint.
    """

    name = "finnhub"
    base_url = "https://finnhub.io"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(client, base_url=base_url, timeout=timeout)
        self._api_key = api_key

    async def fetch(self, instrument: Instrument, symbol: str) -> ProviderResult:
        if not self._api_key:
            return self._failure(FailureKind.UNCONFIGURED, "FINNHUB_API_KEY not set")
        return await super().fetch(instrument, symbol)

    def _request(self, symbol: str) -> tuple[str, dict[str, Any]]:
        return "/api/v1/quote", {"symbol": symbol, "token": self._api_key}

    def _parse(self, instrument: Instrument, symbol: str, payload: Any) -> ProviderResult:
        if not isinstance(payload, dict):
            raise MalformedPayload(f"expected object, got {type(payload).__name__}")
        if "c" not in payload:
            raise MalformedPayload("missing field 'c'")

        price = optional_float(payload.get("c")) or 0.0
        if price <= 0:
            if not payload.get("t"):
                return self._failure(FailureKind.NOT_FOUND, f"unknown symbol {symbol}")
            raise MalformedPayload(f"non-positive price {payload.get('c')!r}")

        timestamp = payload.get("t")
        tick = build_tick(
            instrument,
            last=price,
            prev_close=optional_float(payload.get("pc")),
            change_abs=optional_float(payload.get("d")),
            change_pct=optional_float(payload.get("dp")),
            open_=optional_float(payload.get("o")),
            high=optional_float(payload.get("h")),
            low=optional_float(payload.get("l")),
            ts=int(timestamp) * 1000 if timestamp else None,
        )
        return self._success(tick)
