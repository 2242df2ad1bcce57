"""Instrument registry: reference data, provider routes and seed prices."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass

from .models import AssetClass, Instrument

CRYPTO_FAMILY = "crypto"
EQUITIES_FAMILY = "equities"
PROVIDER_FAMILIES = (CRYPTO_FAMILY, EQUITIES_FAMILY)


@dataclass(frozen=True, slots=True)
class ProviderRoute:
    """One candidate source for an instrument. Lower priority wins."""

    provider: str
    symbol: str
    priority: int


# Random-walk bound per tick (fraction of price, peak to peak)
VOLATILITY_BY_CLASS: dict[AssetClass, float] = {
    AssetClass.CRYPTO: 0.02,
    AssetClass.EQUITY: 0.005,
    AssetClass.INDEX: 0.004,
    AssetClass.FX: 0.002,
    AssetClass.COMMODITY: 0.006,
    AssetClass.REAL_ESTATE: 0.004,
    AssetClass.BOND: 0.002,
}

# Decimal places used when rounding prices
PRICE_PRECISION: dict[AssetClass, int] = {
    AssetClass.CRYPTO: 4,
    AssetClass.FX: 5,
}
DEFAULT_PRECISION = 2


def volatility_for(asset_class: AssetClass) -> float:
    return VOLATILITY_BY_CLASS.get(asset_class, 0.005)


def precision_for(asset_class: AssetClass) -> int:
    return PRICE_PRECISION.get(asset_class, DEFAULT_PRECISION)


def session_for(asset_class: AssetClass) -> str:
    """Crypto trades around the clock; everything else reports the regular session."""
    return "24H" if asset_class is AssetClass.CRYPTO else "REG"


def family_for(asset_class: AssetClass) -> str:
    return CRYPTO_FAMILY if asset_class is AssetClass.CRYPTO else EQUITIES_FAMILY


class InstrumentRegistry:
    """Static set of known instruments and the providers that can price them.

    Built once at startup and passed to the router, stream engine and sync
    service. Tests construct their own registries with fake providers.
    """

    def __init__(
        self,
        instruments: Iterable[Instrument],
        routes: Mapping[str, Sequence[ProviderRoute]],
        seed_prices: Mapping[str, float] | None = None,
    ) -> None:
        self._instruments: dict[str, Instrument] = {i.id: i for i in instruments}
        self._routes: dict[str, tuple[ProviderRoute, ...]] = {
            instrument_id: tuple(sorted(candidates, key=lambda r: r.priority))
            for instrument_id, candidates in routes.items()
            if instrument_id in self._instruments
        }
        self._seed_prices = dict(seed_prices or {})

    def get(self, instrument_id: str) -> Instrument | None:
        return self._instruments.get(instrument_id)

    def ids(self) -> list[str]:
        return list(self._instruments)

    def instruments(self) -> list[Instrument]:
        return list(self._instruments.values())

    def unknown(self, ids: Iterable[str]) -> list[str]:
        """Ids not present in the registry, in input order."""
        return [i for i in ids if i not in self._instruments]

    def routes_for(self, instrument_id: str) -> tuple[ProviderRoute, ...]:
        return self._routes.get(instrument_id, ())

    def seed_price(self, instrument_id: str) -> float | None:
        return self._seed_prices.get(instrument_id)

    def family(self, instrument_id: str) -> str | None:
        instrument = self._instruments.get(instrument_id)
        return family_for(instrument.asset_class) if instrument else None

    def ids_in_family(self, family: str) -> list[str]:
        return [i.id for i in self._instruments.values() if family_for(i.asset_class) == family]

    def with_routes(self, keep: Callable[[ProviderRoute], bool]) -> InstrumentRegistry:
        """Copy of this registry keeping only the routes accepted by `keep`."""
        routes = {
            instrument_id: [r for r in candidates if keep(r)]
            for instrument_id, candidates in self._routes.items()
        }
        return InstrumentRegistry(self._instruments.values(), routes, self._seed_prices)

    def __contains__(self, instrument_id: object) -> bool:
        return instrument_id in self._instruments

    def __len__(self) -> int:
        return len(self._instruments)


# --- Default registry ---

_EQUITY_TZ = "America/New_York"

DEFAULT_INSTRUMENTS: tuple[Instrument, ...] = (
    Instrument("AAPL", "Apple Inc.", AssetClass.EQUITY, "NASDAQ", "USD", _EQUITY_TZ),
    Instrument("MSFT", "Microsoft Corp", AssetClass.EQUITY, "NASDAQ", "USD", _EQUITY_TZ),
    Instrument("GOOGL", "Alphabet Inc.", AssetClass.EQUITY, "NASDAQ", "USD", _EQUITY_TZ),
    Instrument("AMZN", "Amazon.com Inc", AssetClass.EQUITY, "NASDAQ", "USD", _EQUITY_TZ),
    Instrument("TSLA", "Tesla, Inc.", AssetClass.EQUITY, "NASDAQ", "USD", _EQUITY_TZ),
    Instrument("SPY", "S&P 500", AssetClass.INDEX, "NYSE", "USD", _EQUITY_TZ),
    Instrument("QQQ", "NASDAQ 100", AssetClass.INDEX, "NASDAQ", "USD", _EQUITY_TZ),
    Instrument("REIT", "REIT Index", AssetClass.REAL_ESTATE, "NYSE", "USD", _EQUITY_TZ),
    Instrument("GLD", "Gold", AssetClass.COMMODITY, "NYSE", "USD", _EQUITY_TZ),
    Instrument("SLV", "Silver", AssetClass.COMMODITY, "NYSE", "USD", _EQUITY_TZ),
    Instrument("TLT", "20+ Year Treasury Bond", AssetClass.BOND, "NASDAQ", "USD", _EQUITY_TZ),
    Instrument("EURUSD", "EUR/USD", AssetClass.FX, "Global", "USD", "UTC"),
    Instrument("GBPUSD", "GBP/USD", AssetClass.FX, "Global", "USD", "UTC"),
    Instrument("BTC", "Bitcoin", AssetClass.CRYPTO, "Global", "USD", "UTC"),
    Instrument("ETH", "Ethereum", AssetClass.CRYPTO, "Global", "USD", "UTC"),
    Instrument("SOL", "Solana", AssetClass.CRYPTO, "Global", "USD", "UTC"),
    Instrument("ADA", "Cardano", AssetClass.CRYPTO, "Global", "USD", "UTC"),
    Instrument("DOGE", "Dogecoin", AssetClass.CRYPTO, "Global", "USD", "UTC"),
)

# Realistic starting prices for the simulator and for stream sessions
# that could not be seeded from a live snapshot
SEED_PRICES: dict[str, float] = {
    "AAPL": 190.00,
    "MSFT": 420.00,
    "GOOGL": 175.00,
    "AMZN": 185.00,
    "TSLA": 250.00,
    "SPY": 520.00,
    "QQQ": 440.00,
    "REIT": 90.00,
    "GLD": 215.00,
    "SLV": 26.00,
    "TLT": 92.00,
    "EURUSD": 1.0850,
    "GBPUSD": 1.2650,
    "BTC": 65000.00,
    "ETH": 3200.00,
    "SOL": 150.00,
    "ADA": 0.45,
    "DOGE": 0.15,
}

# Provider-specific identifiers
_COINGECKO_IDS = {"BTC": "bitcoin", "ETH": "ethereum", "SOL": "solana", "ADA": "cardano", "DOGE": "dogecoin"}
_COINCAP_IDS = {"BTC": "bitcoin", "ETH": "ethereum", "SOL": "solana", "ADA": "cardano", "DOGE": "dogecoin"}
_FINNHUB_FX = {"EURUSD": "OANDA:EUR_USD", "GBPUSD": "OANDA:GBP_USD"}


def _default_routes() -> dict[str, list[ProviderRoute]]:
    routes: dict[str, list[ProviderRoute]] = {}
    for instrument in DEFAULT_INSTRUMENTS:
        iid = instrument.id
        if instrument.asset_class is AssetClass.CRYPTO:
            routes[iid] = [
                ProviderRoute("coingecko", _COINGECKO_IDS[iid], 1),
                ProviderRoute("coincap", _COINCAP_IDS[iid], 2),
                ProviderRoute("simulator", iid, 3),
            ]
        elif instrument.asset_class is AssetClass.FX:
            # Massive snapshots are wired for stocks only
            routes[iid] = [
                ProviderRoute("finnhub", _FINNHUB_FX[iid], 1),
                ProviderRoute("simulator", iid, 2),
            ]
        else:
            routes[iid] = [
                ProviderRoute("finnhub", iid, 1),
                ProviderRoute("massive", iid, 2),
                ProviderRoute("simulator", iid, 3),
            ]
    return routes


def default_registry() -> InstrumentRegistry:
    """The registry the service runs with unless one is injected."""
    return InstrumentRegistry(DEFAULT_INSTRUMENTS, _default_routes(), SEED_PRICES)


def parse_ids(raw: str | Iterable[str] | None) -> list[str]:
    """Normalize requested ids: split on commas, strip, upper-case, dedupe.

    Accepts the comma-separated query form ("btc, AAPL") or a list of ids.
    Order of first appearance is kept.
    """
    if raw is None:
        return []
    parts = raw.split(",") if isinstance(raw, str) else [p for item in raw for p in str(item).split(",")]
    cleaned = (p.strip().upper() for p in parts)
    return list(dict.fromkeys(p for p in cleaned if p))
