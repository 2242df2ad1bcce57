"""On-demand provider sync into the latest-snapshot store."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Protocol

from .errors import NotAvailableError, ValidationError
from .interface import ProviderSuccess
from .models import MarketTick
from .registry import PROVIDER_FAMILIES, InstrumentRegistry
from .router import SourceRouter

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SnapshotRecord:
    instrument_id: str
    source: str
    source_priority: int
    tick: MarketTick
    synced_at: float


@dataclass
class SyncReport:
    family: str
    updated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    primary_source: str | None = None
    fallback_used: bool = False

    def to_dict(self) -> dict:
        return {
            "family": self.family,
            "updated": self.updated,
            "failed": self.failed,
            "primarySource": self.primary_source,
            "fallbackUsed": self.fallback_used,
        }


class SnapshotStore(Protocol):
    """Latest known tick per (instrument, source)."""

    async def upsert(self, record: SnapshotRecord) -> None: ...

    async def latest(self, instrument_id: str) -> SnapshotRecord | None: ...

    async def all(self) -> list[SnapshotRecord]: ...


class InMemorySnapshotStore:
    """SnapshotStore kept in a dict. One row per (instrument, source)."""

    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], SnapshotRecord] = {}

    async def upsert(self, record: SnapshotRecord) -> None:
        self._rows[(record.instrument_id, record.source)] = record

    async def latest(self, instrument_id: str) -> SnapshotRecord | None:
        """Best row for an instrument: lowest priority first, then newest."""
        rows = [r for (iid, _), r in self._rows.items() if iid == instrument_id]
        if not rows:
            return None
        return min(rows, key=lambda r: (r.source_priority, -r.synced_at))

    async def all(self) -> list[SnapshotRecord]:
        return list(self._rows.values())

    def __len__(self) -> int:
        return len(self._rows)


class SyncService:
    """Refreshes a whole provider family through the router.

    Goes straight to the router so a sync always hits upstream, and writes
    each success to the store under the provider that served it.
    """

    def __init__(self, registry: InstrumentRegistry, router: SourceRouter, store: SnapshotStore) -> None:
        self._registry = registry
        self._router = router
        self._store = store
        self._tasks: set[asyncio.Task] = set()

    @property
    def store(self) -> SnapshotStore:
        return self._store

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _family_ids(self, family: str) -> list[str]:
        if family not in PROVIDER_FAMILIES:
            raise ValidationError(f"Unknown sync family: {family}")
        return self._registry.ids_in_family(family)

    async def sync(self, family: str) -> SyncReport:
        """Resolve every instrument of `family` and persist the results."""
        ids = self._family_ids(family)
        results = await asyncio.gather(*(self._sync_one(i) for i in ids))

        report = SyncReport(family=family)
        sources: Counter[str] = Counter()
        for instrument_id, result in zip(ids, results):
            if result is None:
                report.failed.append(instrument_id)
                continue
            report.updated.append(instrument_id)
            sources[result.provider] += 1
            if result.tick.source_priority and result.tick.source_priority > 1:
                report.fallback_used = True
        if sources:
            report.primary_source = sources.most_common(1)[0][0]

        logger.info(
            "Sync %s: %d updated, %d failed (primary source: %s)",
            family,
            len(report.updated),
            len(report.failed),
            report.primary_source,
        )
        return report

    async def _sync_one(self, instrument_id: str) -> ProviderSuccess | None:
        try:
            result = await self._router.resolve_result(instrument_id)
        except NotAvailableError as e:
            logger.warning("Sync skipped %s: %s", instrument_id, e)
            return None
        tick = result.tick
        await self._store.upsert(
            SnapshotRecord(
                instrument_id=instrument_id,
                source=result.provider,
                source_priority=tick.source_priority or 0,
                tick=tick,
                synced_at=time.time(),
            )
        )
        return result

    def trigger(self, family: str) -> asyncio.Task:
        """Schedule sync(family) in the background. Raises ValidationError now for unknown families."""
        self._family_ids(family)
        task = asyncio.create_task(self.sync(family), name=f"sync-{family}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background sync %s failed: %s", task.get_name(), error, exc_info=error)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
