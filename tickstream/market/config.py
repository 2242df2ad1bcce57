"""Runtime configuration read from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class MarketConfig:
    """Freshness policy and provider credentials.

    Freshness policy:
      - snapshots are served from cache for `cache_ttl` seconds (5s)
      - stream ticks bypass the cache and arrive every 0.5-2.0s per connection
      - stream clients poll snapshots every `cache_ttl` seconds while their
        stream is down, since polling faster only returns cached data
    """

    cache_ttl: float = 5.0
    provider_timeout: float = 8.0
    tick_interval_min: float = 0.5
    tick_interval_max: float = 2.0
    heartbeat_interval: float = 25.0
    stream_queue_size: int = 256
    stream_seed_timeout: float = 3.0
    sparkline_length: int = 24
    simulator_fallback: bool = True
    price_model: str = "random-walk"
    finnhub_api_key: str = ""
    massive_api_key: str = ""
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.cache_ttl < 0:
            raise ValueError("cache_ttl must be >= 0")
        if self.provider_timeout <= 0:
            raise ValueError("provider_timeout must be > 0")
        if not 0 < self.tick_interval_min <= self.tick_interval_max:
            raise ValueError("need 0 < tick_interval_min <= tick_interval_max")
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be > 0")
        if self.stream_queue_size < 1:
            raise ValueError("stream_queue_size must be >= 1")

    @property
    def refresh_interval(self) -> float:
        """Fallback snapshot polling interval for stream clients."""
        return self.cache_ttl

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> MarketConfig:
        """Build a config from environment variables, falling back to defaults.

        Raises ValueError for values that do not parse.
        """
        env = os.environ if environ is None else environ

        def text(name: str, default: str) -> str:
            value = env.get(name, "").strip()
            return value or default

        def number(name: str, default: float) -> float:
            value = env.get(name, "").strip()
            if not value:
                return default
            try:
                return float(value)
            except ValueError:
                raise ValueError(f"{name} must be a number, got {value!r}") from None

        def flag(name: str, default: bool) -> bool:
            value = env.get(name, "").strip().lower()
            if not value:
                return default
            if value in _TRUE:
                return True
            if value in _FALSE:
                return False
            raise ValueError(f"{name} must be a boolean, got {value!r}")

        return cls(
            cache_ttl=number("MARKET_CACHE_TTL", cls.cache_ttl),
            provider_timeout=number("MARKET_PROVIDER_TIMEOUT", cls.provider_timeout),
            tick_interval_min=number("MARKET_TICK_INTERVAL_MIN", cls.tick_interval_min),
            tick_interval_max=number("MARKET_TICK_INTERVAL_MAX", cls.tick_interval_max),
            heartbeat_interval=number("MARKET_HEARTBEAT_INTERVAL", cls.heartbeat_interval),
            stream_queue_size=int(number("MARKET_STREAM_QUEUE_SIZE", cls.stream_queue_size)),
            stream_seed_timeout=number("MARKET_STREAM_SEED_TIMEOUT", cls.stream_seed_timeout),
            sparkline_length=int(number("MARKET_SPARKLINE_LENGTH", cls.sparkline_length)),
            simulator_fallback=flag("MARKET_SIMULATOR_FALLBACK", cls.simulator_fallback),
            price_model=text("MARKET_PRICE_MODEL", cls.price_model),
            finnhub_api_key=text("FINNHUB_API_KEY", ""),
            massive_api_key=text("MASSIVE_API_KEY", ""),
            log_level=text("LOG_LEVEL", cls.log_level).upper(),
        )
