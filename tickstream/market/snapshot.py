"""Request/response path: cache-then-router snapshots."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Iterable

from .cache import FreshnessCache
from .errors import NotAvailableError
from .models import MarketTick
from .router import SourceRouter

logger = logging.getLogger(__name__)


class SnapshotService:
    """Returns the freshest available tick for each requested instrument.

    Instruments are resolved concurrently, so a batch takes as long as its
    slowest instrument. When every provider fails, the last cached tick is
    served with `stale=True`; ids with nothing cached are left out of the
    result rather than failing the batch.
    """

    def __init__(self, cache: FreshnessCache, router: SourceRouter) -> None:
        self._cache = cache
        self._router = router

    async def snapshot(self, ids: Iterable[str]) -> list[MarketTick]:
        unique = list(dict.fromkeys(ids))
        if not unique:
            return []

        results = await asyncio.gather(
            *(self._resolve_one(instrument_id) for instrument_id in unique)
        )
        ticks = [tick for tick in results if tick is not None]
        logger.debug("Snapshot: %d/%d instruments resolved", len(ticks), len(unique))
        return ticks

    async def _resolve_one(self, instrument_id: str) -> MarketTick | None:
        try:
            entry = await self._cache.get_or_fetch(instrument_id, self._router.resolve)
        except NotAvailableError as e:
            logger.info("No provider for %s: %s", instrument_id, e)
            return self._stale(instrument_id)
        except Exception:
            logger.exception("Unexpected error resolving %s", instrument_id)
            return self._stale(instrument_id)
        return entry.tick

    def _stale(self, instrument_id: str) -> MarketTick | None:
        entry = self._cache.peek(instrument_id)
        if entry is None:
            logger.info("Omitting %s from snapshot: nothing cached", instrument_id)
            return None
        logger.warning("Serving stale %s from cache", instrument_id)
        return dataclasses.replace(entry.tick, stale=True)
