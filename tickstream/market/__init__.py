"""Market data subsystem for tickstream.

Public API:
    MarketTick          - Immutable, fully populated valuation of one instrument
    InstrumentRegistry  - Known instruments and their provider routes
    ProviderAdapter     - Abstract interface for upstream providers
    SourceRouter        - Priority-ordered provider fallback
    FreshnessCache      - Short-TTL tick cache with request coalescing
    SnapshotService     - Freshest tick per requested id
    TickStreamEngine    - Per-connection live tick streams
    ReconnectionController - Client-side stream consumer with backoff
    SyncService         - Background provider sync into a snapshot store
    create_market_services - Factory that wires everything from MarketConfig
    create_*_router     - FastAPI router factories
"""

from .api import create_health_router, create_snapshot_router, create_sync_router
from .cache import FreshnessCache
from .config import MarketConfig
from .errors import MarketDataError, NotAvailableError, TransportError, ValidationError
from .factory import MarketServices, create_adapters, create_market_services
from .interface import FailureKind, ProviderAdapter, ProviderFailure, ProviderResult, ProviderSuccess
from .models import AssetClass, CacheEntry, Instrument, MarketTick
from .reconnect import ControllerState, HttpStreamTransport, ReconnectionController
from .registry import InstrumentRegistry, ProviderRoute, default_registry, parse_ids
from .router import SourceRouter
from .snapshot import SnapshotService
from .stream import TickStreamEngine, create_stream_router
from .sync import InMemorySnapshotStore, SyncService

__all__ = [
    "AssetClass",
    "CacheEntry",
    "ControllerState",
    "FailureKind",
    "FreshnessCache",
    "HttpStreamTransport",
    "InMemorySnapshotStore",
    "Instrument",
    "InstrumentRegistry",
    "MarketConfig",
    "MarketDataError",
    "MarketServices",
    "MarketTick",
    "NotAvailableError",
    "ProviderAdapter",
    "ProviderFailure",
    "ProviderResult",
    "ProviderRoute",
    "ProviderSuccess",
    "ReconnectionController",
    "SnapshotService",
    "SourceRouter",
    "SyncService",
    "TickStreamEngine",
    "TransportError",
    "ValidationError",
    "create_adapters",
    "create_health_router",
    "create_market_services",
    "create_snapshot_router",
    "create_stream_router",
    "create_sync_router",
    "default_registry",
    "parse_ids",
]
