"""HTTP routes for snapshots, instrument listing, sync and health."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from .errors import ValidationError
from .registry import InstrumentRegistry, parse_ids
from .snapshot import SnapshotService
from .stream import TickStreamEngine
from .sync import SyncService

logger = logging.getLogger(__name__)


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, "error": message, **extra}, status_code=status_code)


def create_snapshot_router(service: SnapshotService, registry: InstrumentRegistry) -> APIRouter:
    """Create the snapshot router bound to a snapshot service."""
    router = APIRouter(prefix="/api/market", tags=["market"])

    async def respond(raw_ids: Any) -> JSONResponse:
        ids = parse_ids(raw_ids)
        if not ids:
            return _error("Missing ids parameter", 400)
        try:
            ticks = await service.snapshot(ids)
        except Exception as e:
            logger.exception("Snapshot request failed for %s", ",".join(ids))
            return _error(str(e) or type(e).__name__, 500)
        return JSONResponse({"success": True, "data": [t.to_dict() for t in ticks]})

    @router.get("/snapshot")
    async def get_snapshot(ids: str | None = None) -> JSONResponse:
        """Latest tick per id, e.g. /api/market/snapshot?ids=BTC,AAPL.

        Ids that no provider can serve are omitted from `data`.
        """
        return await respond(ids)

    @router.post("/snapshot")
    async def post_snapshot(request: Request) -> JSONResponse:
        """Same as GET with a JSON body: {"ids": ["BTC", "AAPL"]}."""
        try:
            body = await request.json()
        except ValueError:
            return _error("Request body must be JSON", 400)
        raw = body.get("ids") if isinstance(body, dict) else None
        if raw is not None and not isinstance(raw, (str, list)):
            return _error("ids must be a list of strings", 400)
        return await respond(raw)

    @router.get("/instruments")
    async def list_instruments() -> JSONResponse:
        return JSONResponse({"success": True, "data": [i.to_dict() for i in registry.instruments()]})

    return router


def create_sync_router(sync: SyncService) -> APIRouter:
    router = APIRouter(prefix="/api/sync", tags=["sync"])

    @router.post("/{family}", status_code=202)
    async def trigger_sync(family: str) -> JSONResponse:
        """Start a background sync of one provider family (crypto or equities)."""
        try:
            sync.trigger(family)
        except ValidationError as e:
            return _error(str(e), 400)
        return JSONResponse({"success": True, "family": family, "scheduled": True}, status_code=202)

    return router


def create_health_router(engine: TickStreamEngine) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["health"])

    @router.get("/health")
    async def health() -> dict:
        return {"status": "ok", "streams": engine.active}

    return router
