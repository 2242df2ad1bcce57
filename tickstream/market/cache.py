"""Short-TTL per-instrument tick cache with request coalescing."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable

from .models import CacheEntry, MarketTick
from .ticks import roll_sparkline

logger = logging.getLogger(__name__)

DEFAULT_TTL = 5.0


class FreshnessCache:
    """In-memory cache of the latest tick for each instrument.

    Bounds upstream traffic to one fetch per instrument per TTL window,
    shared by every concurrent snapshot request. Staleness is judged lazily
    on read; nothing is swept.

    Owned by the event loop: all access happens on one thread, so per-key
    serialization is done by tracking one in-flight fetch task per instrument
    instead of with locks.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
        sparkline_length: int = 24,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._sparkline_length = sparkline_length
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task[CacheEntry]] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, instrument_id: str) -> CacheEntry | None:
        """The entry for `instrument_id` if it is younger than the TTL, else None."""
        entry = self._entries.get(instrument_id)
        if entry is None or not entry.is_fresh(self._clock(), self._ttl):
            return None
        return entry

    def peek(self, instrument_id: str) -> CacheEntry | None:
        """The entry for `instrument_id` regardless of age."""
        return self._entries.get(instrument_id)

    def put(self, instrument_id: str, tick: MarketTick) -> CacheEntry:
        """Replace the cached tick for an instrument. Returns the new entry.

        Keeps `ts` non-decreasing per instrument and extends the previous
        sparkline with the new price when one exists.
        """
        prev = self._entries.get(instrument_id)
        if prev is not None:
            changes: dict = {
                "sparkline": roll_sparkline(prev.tick.sparkline, tick.last, self._sparkline_length),
            }
            if tick.ts < prev.tick.ts:
                logger.debug("Clamping regressing ts for %s: %d < %d", instrument_id, tick.ts, prev.tick.ts)
                changes["ts"] = prev.tick.ts
            tick = dataclasses.replace(tick, **changes)

        entry = CacheEntry(tick=tick, fetched_at=self._clock())
        self._entries[instrument_id] = entry
        return entry

    async def get_or_fetch(
        self,
        instrument_id: str,
        fetch: Callable[[str], Awaitable[MarketTick]],
    ) -> CacheEntry:
        """Return a fresh entry, fetching at most once per instrument at a time.

        Concurrent callers for the same cold instrument await the first
        caller's fetch instead of starting their own. The fetch runs in its
        own task, so a cancelled caller never cancels it for the others, and
        that task is the only writer for the key. Errors from `fetch`
        propagate to every waiter.
        """
        entry = self.get(instrument_id)
        if entry is not None:
            return entry

        task = self._inflight.get(instrument_id)
        if task is None:
            task = asyncio.create_task(
                self._fetch_and_put(instrument_id, fetch),
                name=f"cache-fetch-{instrument_id}",
            )
            task.add_done_callback(_retrieve_exception)
            self._inflight[instrument_id] = task
        return await asyncio.shield(task)

    async def _fetch_and_put(
        self,
        instrument_id: str,
        fetch: Callable[[str], Awaitable[MarketTick]],
    ) -> CacheEntry:
        try:
            tick = await fetch(instrument_id)
            return self.put(instrument_id, tick)
        finally:
            self._inflight.pop(instrument_id, None)

    def inflight(self, instrument_id: str) -> bool:
        return instrument_id in self._inflight


def _retrieve_exception(task: asyncio.Task) -> None:
    # A fetch whose callers were all cancelled would otherwise log "exception was never retrieved"
    if not task.cancelled():
        task.exception()
