"""Factory for wiring providers and market services from configuration."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

import httpx
import numpy as np

from .cache import FreshnessCache
from .coincap import CoinCapAdapter
from .coingecko import CoinGeckoAdapter
from .config import MarketConfig
from .interface import ProviderAdapter
from .registry import InstrumentRegistry, default_registry
from .router import SourceRouter
from .simulator import SimulatedAdapter, create_price_evolution
from .snapshot import SnapshotService
from .stream import TickStreamEngine
from .sync import InMemorySnapshotStore, SnapshotStore, SyncService

logger = logging.getLogger(__name__)


def create_adapters(
    config: MarketConfig,
    client: httpx.AsyncClient,
    registry: InstrumentRegistry,
    rng: np.random.Generator | None = None,
) -> dict[str, ProviderAdapter]:
    """Create the provider adapters the configuration allows.

    - CoinGecko and CoinCap need no key and are always on
    - FINNHUB_API_KEY set and non-empty -> Finnhub quotes
    - MASSIVE_API_KEY set and non-empty -> Massive (Polygon.io) snapshots
    - MARKET_SIMULATOR_FALLBACK on -> simulator as the last resort
    """
    timeout = config.provider_timeout
    adapters: dict[str, ProviderAdapter] = {
        "coingecko": CoinGeckoAdapter(client, timeout=timeout),
        "coincap": CoinCapAdapter(client, timeout=timeout),
    }

    if config.finnhub_api_key:
        from .finnhub import FinnhubAdapter

        adapters["finnhub"] = FinnhubAdapter(client, api_key=config.finnhub_api_key, timeout=timeout)

    if config.massive_api_key:
        from .massive_client import MassiveAdapter

        adapters["massive"] = MassiveAdapter(api_key=config.massive_api_key, timeout=timeout)

    if config.simulator_fallback:
        rng = rng or np.random.default_rng()
        adapters["simulator"] = SimulatedAdapter(
            registry,
            evolution=create_price_evolution(config.price_model, rng),
            rng=rng,
            sparkline_length=config.sparkline_length,
        )

    logger.info("Market data providers: %s", ", ".join(adapters))
    return adapters


@dataclass
class MarketServices:
    """Everything the app needs, built once at startup."""

    config: MarketConfig
    registry: InstrumentRegistry
    adapters: dict[str, ProviderAdapter]
    cache: FreshnessCache
    router: SourceRouter
    snapshot: SnapshotService
    engine: TickStreamEngine
    sync: SyncService
    store: SnapshotStore
    client: httpx.AsyncClient | None = None

    async def aclose(self) -> None:
        """Close streams, background syncs, adapters and the HTTP client."""
        await self.engine.close_all()
        await self.sync.aclose()
        for name, adapter in self.adapters.items():
            try:
                await adapter.aclose()
            except Exception:
                logger.exception("Error closing adapter %s", name)
        if self.client is not None:
            await self.client.aclose()


def create_market_services(
    config: MarketConfig,
    registry: InstrumentRegistry | None = None,
    adapters: Mapping[str, ProviderAdapter] | None = None,
    client: httpx.AsyncClient | None = None,
) -> MarketServices:
    """Build the market services graph.

    When `adapters` is not given they are created from `config` on a shared
    httpx client, which the returned container owns and closes. Routes to
    providers without an adapter are dropped from the registry.
    """
    registry = registry or default_registry()
    owned_client: httpx.AsyncClient | None = None
    if adapters is None:
        if client is None:
            client = owned_client = httpx.AsyncClient(timeout=config.provider_timeout)
        adapters = create_adapters(config, client, registry)
    adapters = dict(adapters)

    registry = registry.with_routes(lambda route: route.provider in adapters)
    cache = FreshnessCache(ttl=config.cache_ttl, sparkline_length=config.sparkline_length)
    router = SourceRouter(registry, adapters, timeout=config.provider_timeout)
    snapshot = SnapshotService(cache, router)
    engine = TickStreamEngine(
        registry,
        config=config,
        evolution=create_price_evolution(config.price_model),
        snapshot_service=snapshot,
    )
    store = InMemorySnapshotStore()
    sync = SyncService(registry, router, store)

    return MarketServices(
        config=config,
        registry=registry,
        adapters=adapters,
        cache=cache,
        router=router,
        snapshot=snapshot,
        engine=engine,
        sync=sync,
        store=store,
        client=owned_client,
    )
