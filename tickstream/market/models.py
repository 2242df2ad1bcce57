"""Data models for market data."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AssetClass(str, Enum):
    EQUITY = "Equity"
    INDEX = "Index"
    CRYPTO = "Crypto"
    COMMODITY = "Commodity"
    FX = "FX"
    REAL_ESTATE = "RealEstate"
    BOND = "Bond"


@dataclass(frozen=True, slots=True)
class Instrument:
    """Reference data for a tradable asset. Never mutated at runtime."""

    id: str
    name: str
    asset_class: AssetClass
    exchange: str
    currency: str = "USD"
    timezone: str = "America/New_York"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "assetClass": self.asset_class.value,
            "exchange": self.exchange,
            "currency": self.currency,
            "timezone": self.timezone,
        }


@dataclass(frozen=True, slots=True)
class OHLC:
    open: float
    high: float
    low: float
    close: float

    def to_dict(self) -> dict:
        return {"open": self.open, "high": self.high, "low": self.low, "close": self.close}


@dataclass(frozen=True, slots=True)
class MarketTick:
    """Immutable valuation of one instrument at a point in time.

    Every tick is a complete record and a new tick replaces the previous one
    for the same instrument. The one exception is the sparkline: the cache
    rolls the previous sparkline forward with each new `last`.

    `stale` marks a tick served from an expired cache entry because every
    provider failed.
    """

    id: str
    name: str
    asset_class: AssetClass
    exchange: str
    currency: str
    timezone: str
    last: float
    change_abs: float
    change_pct: float
    day_high: float
    day_low: float
    volume: float
    session: str
    sparkline: tuple[float, ...]
    ohlc: OHLC
    ts: int  # Unix milliseconds
    market_cap: float | None = None
    source: str | None = None
    source_priority: int | None = None
    stale: bool = False

    @property
    def direction(self) -> str:
        """'up', 'down', or 'flat' relative to the reference price."""
        if self.change_abs > 0:
            return "up"
        elif self.change_abs < 0:
            return "down"
        return "flat"

    def to_dict(self) -> dict:
        """Serialize for JSON / SSE transmission."""
        data = {
            "id": self.id,
            "name": self.name,
            "assetClass": self.asset_class.value,
            "exchange": self.exchange,
            "currency": self.currency,
            "timezone": self.timezone,
            "last": self.last,
            "changeAbs": self.change_abs,
            "changePct": self.change_pct,
            "dayHigh": self.day_high,
            "dayLow": self.day_low,
            "volume": self.volume,
            "session": self.session,
            "sparkline": list(self.sparkline),
            "ohlc": self.ohlc.to_dict(),
            "ts": self.ts,
        }
        if self.market_cap is not None:
            data["marketCap"] = self.market_cap
        if self.source is not None:
            data["source"] = self.source
            data["sourcePriority"] = self.source_priority
        if self.stale:
            data["stale"] = True
        return data


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A cached tick and the monotonic time it was fetched."""

    tick: MarketTick
    fetched_at: float

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def is_fresh(self, now: float, ttl: float) -> bool:
        return self.age(now) < ttl
