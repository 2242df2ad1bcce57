"""Abstract interface for provider adapters and their result types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Union

from .models import Instrument, MarketTick


class FailureKind(str, Enum):
    RATE_LIMITED = "rate-limited"
    NOT_FOUND = "not-found"
    HTTP_ERROR = "http-error"
    NETWORK_ERROR = "network-error"
    TIMEOUT = "timeout"
    MALFORMED = "malformed"
    FETCH_ERROR = "fetch-error"
    UNCONFIGURED = "unconfigured"


@dataclass(frozen=True, slots=True)
class ProviderSuccess:
    tick: MarketTick
    provider: str


@dataclass(frozen=True, slots=True)
class ProviderFailure:
    provider: str
    kind: FailureKind
    message: str = ""


ProviderResult = Union[ProviderSuccess, ProviderFailure]


class ProviderAdapter(ABC):
    """Contract for upstream data providers.

    One adapter per upstream API. It owns the request shape, authentication
    and response parsing, and normalizes the payload into a MarketTick.

    Expected failures (non-2xx, empty payload, missing field, timeout) come
    back as a ProviderFailure and never raise. The router still guards every
    call, so an unexpected exception only costs that one candidate.

    Lifecycle:
        adapter = FinnhubAdapter(client, api_key="...")
        result = await adapter.fetch(instrument, "AAPL")
        # ... app shutting down ...
        await adapter.aclose()
    """

    name: str = "adapter"

    @abstractmethod
    async def fetch(self, instrument: Instrument, symbol: str) -> ProviderResult:
        """Fetch the current valuation of `instrument`.

        `symbol` is the provider-specific identifier from the instrument's
        route (e.g. "bitcoin" for CoinGecko, "OANDA:EUR_USD" for Finnhub).
        """

    async def aclose(self) -> None:
        """Release provider resources. Safe to call multiple times."""

    def _failure(self, kind: FailureKind, message: str = "") -> ProviderFailure:
        return ProviderFailure(provider=self.name, kind=kind, message=message)

    def _success(self, tick: MarketTick) -> ProviderSuccess:
        return ProviderSuccess(tick=tick, provider=self.name)
