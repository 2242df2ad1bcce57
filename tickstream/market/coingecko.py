"""CoinGecko simple-price adapter (primary crypto source)."""

from __future__ import annotations

from typing import Any

from .http_adapter import HttpJsonAdapter, MalformedPayload, optional_float, positive_float
from .interface import FailureKind, ProviderResult
from .models import Instrument
from .ticks import build_tick


class CoinGeckoAdapter(HttpJsonAdapter):
    """Adapter for GET /api/v3/simple/price.

    The response is keyed by coin id:
        {"bitcoin": {"usd": 65000.1, "usd_24h_change": -1.2,
                     "usd_24h_vol": 3.1e10, "usd_market_cap": 1.2e12,
                     "last_updated_at": 1707580800}}
    An unknown id yields an empty object.
    """

    name = "coingecko"
    base_url = "https://api.coingecko.com"

    def _request(self, symbol: str) -> tuple[str, dict[str, Any]]:
        return "/api/v3/simple/price", {
            "ids": symbol,
            "vs_currencies": "usd",
            "include_24hr_change": "true",
            "include_24hr_vol": "true",
            "include_market_cap": "true",
            "include_last_updated_at": "true",
        }

    def _parse(self, instrument: Instrument, symbol: str, payload: Any) -> ProviderResult:
        if not isinstance(payload, dict):
            raise MalformedPayload(f"expected object, got {type(payload).__name__}")
        info = payload.get(symbol)
        if not info:
            return self._failure(FailureKind.NOT_FOUND, f"unknown coin id {symbol}")

        updated = info.get("last_updated_at")
        tick = build_tick(
            instrument,
            last=positive_float(info.get("usd"), "usd"),
            change_pct=optional_float(info.get("usd_24h_change")) or 0.0,
            volume=optional_float(info.get("usd_24h_vol")) or 0,
            market_cap=optional_float(info.get("usd_market_cap")),
            ts=int(updated) * 1000 if updated else None,
        )
        return self._success(tick)
