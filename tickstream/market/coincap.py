"""CoinCap asset adapter (fallback crypto source)."""

from __future__ import annotations

from typing import Any

from .http_adapter import HttpJsonAdapter, MalformedPayload, optional_float, positive_float
from .interface import ProviderResult
from .models import Instrument
from .ticks import build_tick


class CoinCapAdapter(HttpJsonAdapter):
    """Adapter for GET /v2/assets/{id}.

    CoinCap encodes every number as a string:
        {"data": {"id": "bitcoin", "priceUsd": "65000.12",
                  "changePercent24Hr": "-1.2", "volumeUsd24Hr": "3.1e10",
                  "marketCapUsd": "1.2e12"},
         "timestamp": 1707580800000}
    Unknown ids return HTTP 404.
    """

    name = "coincap"
    base_url = "https://api.coincap.io"

    def _request(self, symbol: str) -> tuple[str, dict[str, Any]]:
        return f"/v2/assets/{symbol}", {}

    def _parse(self, instrument: Instrument, symbol: str, payload: Any) -> ProviderResult:
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise MalformedPayload("missing 'data' object")
        data = payload["data"]
        timestamp = payload.get("timestamp")

        tick = build_tick(
            instrument,
            last=positive_float(data.get("priceUsd"), "priceUsd"),
            change_pct=optional_float(data.get("changePercent24Hr")) or 0.0,
            volume=optional_float(data.get("volumeUsd24Hr")) or 0,
            market_cap=optional_float(data.get("marketCapUsd")),
            ts=int(timestamp) if timestamp else None,
        )
        return self._success(tick)
