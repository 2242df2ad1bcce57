"""Massive (Polygon.io) API adapter for equities snapshots."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .http_adapter import DEFAULT_TIMEOUT
from .interface import FailureKind, ProviderAdapter, ProviderResult
from .models import Instrument
from .ticks import build_tick

logger = logging.getLogger(__name__)


class MassiveAdapter(ProviderAdapter):
    """ProviderAdapter backed by the Massive (Polygon.io) REST API.

    Calls GET /v2/snapshot/locale/us/markets/stocks/tickers/{ticker} through
    the official client. The client is synchronous, so each call runs in a
    worker thread and is bounded by `timeout`.

    Rate limits:
      - Free tier: 5 req/min, which the 5s snapshot cache does not cover on
        its own; keep Massive behind Finnhub in the route table
      - Paid tiers: effectively unlimited for this use
    """

    name = "massive"

    def __init__(self, api_key: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._client: Any = None  # Lazy import to avoid hard dependency at import time

    async def fetch(self, instrument: Instrument, symbol: str) -> ProviderResult:
        if not self._api_key:
            return self._failure(FailureKind.UNCONFIGURED, "MASSIVE_API_KEY not set")

        try:
            snap = await asyncio.wait_for(
                asyncio.to_thread(self._fetch_snapshot, symbol),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return self._failure(FailureKind.TIMEOUT, f"no response after {self._timeout}s")
        except Exception as e:
            # Common failures: 401 (bad key), 429 (rate limit), 404, network errors.
            return self._failure(self._classify(e), f"{type(e).__name__}: {e}")

        if snap is None:
            return self._failure(FailureKind.NOT_FOUND, f"no snapshot for {symbol}")

        try:
            price = snap.last_trade.price
            day = snap.day
            prev_day = snap.prev_day
            # SIP timestamps are Unix nanoseconds
            sip_ns = snap.last_trade.sip_timestamp
            tick = build_tick(
                instrument,
                last=float(price),
                prev_close=_num(getattr(prev_day, "close", None)),
                change_abs=_num(getattr(snap, "todays_change", None)),
                change_pct=_num(getattr(snap, "todays_change_percent", None)),
                open_=_num(getattr(day, "open", None)),
                high=_num(getattr(day, "high", None)),
                low=_num(getattr(day, "low", None)),
                volume=_num(getattr(day, "volume", None)) or 0,
                ts=int(sip_ns) // 1_000_000 if isinstance(sip_ns, (int, float)) and sip_ns else None,
            )
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("Skipping Massive snapshot for %s: %s", symbol, e)
            return self._failure(FailureKind.MALFORMED, str(e))

        if tick.last <= 0:
            return self._failure(FailureKind.MALFORMED, f"non-positive price for {symbol}")
        return self._success(tick)

    async def aclose(self) -> None:
        self._client = None

    def _fetch_snapshot(self, symbol: str) -> Any:
        """Synchronous call to the Massive REST API. Runs in a thread."""
        if self._client is None:
            from massive import RESTClient

            self._client = RESTClient(api_key=self._api_key)
        return self._client.get_snapshot_ticker("stocks", symbol)

    @staticmethod
    def _classify(error: Exception) -> FailureKind:
        text = str(error)
        if "429" in text:
            return FailureKind.RATE_LIMITED
        if "404" in text or "NOT_FOUND" in text:
            return FailureKind.NOT_FOUND
        return FailureKind.FETCH_ERROR


def _num(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None
