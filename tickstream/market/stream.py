"""Tick stream engine and the SSE endpoint that serves it."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator, Mapping
from dataclasses import dataclass
from enum import Enum

import numpy as np
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import MarketConfig
from .errors import ValidationError
from .models import Instrument, MarketTick
from .registry import InstrumentRegistry, parse_ids
from .simulator import PriceEvolution, RandomWalkEvolution
from .snapshot import SnapshotService
from .ticks import build_tick, now_ms, synth_sparkline

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class StreamEvent:
    event: str
    data: dict

    def encode(self) -> str:
        """SSE wire format."""
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n"


@dataclass
class _InstrumentSession:
    """Evolving per-instrument state within one connection."""

    instrument: Instrument
    reference: float  # change is measured against this (previous close)
    price: float
    open: float
    high: float
    low: float
    volume: float
    market_cap: float | None
    sparkline: tuple[float, ...]
    last_ts: int = 0


class Subscription:
    """One live stream connection.

    State machine: CONNECTING -> OPEN -> CLOSED. `open()` queues an initial
    tick for every instrument and starts two timers (random ticks and
    heartbeats). `close()` cancels both timers before returning; nothing is
    delivered after it.

    Generation and delivery are decoupled by a bounded queue: the timers
    only enqueue, and the transport pulls with `next_event()`. When the
    reader falls behind, the oldest events are dropped.
    """

    def __init__(
        self,
        connection_id: int,
        instruments: list[Instrument],
        seeds: Mapping[str, MarketTick | float],
        evolution: PriceEvolution,
        config: MarketConfig,
        rng: np.random.Generator,
    ) -> None:
        if not instruments:
            raise ValueError("a subscription needs at least one instrument")
        self.id = connection_id
        self._config = config
        self._evolution = evolution
        self._rng = rng
        self._ids = [i.id for i in instruments]
        self._sessions = {i.id: self._new_session(i, seeds[i.id]) for i in instruments}
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(maxsize=config.stream_queue_size)
        self._tasks: list[asyncio.Task] = []
        self._state = ConnectionState.CONNECTING
        self._overflow_count = 0

        self.created_at = time.time()
        self.opened_at: float | None = None
        self.closed_at: float | None = None

    # --- Public API ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is ConnectionState.CLOSED

    @property
    def instrument_ids(self) -> list[str]:
        return list(self._ids)

    @property
    def base_prices(self) -> dict[str, float]:
        """Last known price per instrument; the next tick perturbs these."""
        return {iid: s.price for iid, s in self._sessions.items()}

    @property
    def overflow_count(self) -> int:
        return self._overflow_count

    def open(self) -> None:
        """Emit the initial tick burst and start the timers. Needs a running loop."""
        if self._state is not ConnectionState.CONNECTING:
            raise RuntimeError(f"cannot open subscription in state {self._state.value}")
        self._state = ConnectionState.OPEN
        self.opened_at = time.time()

        for instrument_id in self._ids:
            self._enqueue(StreamEvent("tick", self._emit(self._sessions[instrument_id]).to_dict()))

        self._tasks = [
            asyncio.create_task(self._tick_loop(), name=f"stream-{self.id}-ticks"),
            asyncio.create_task(self._heartbeat_loop(), name=f"stream-{self.id}-heartbeat"),
        ]
        logger.info("Stream %d open: %s", self.id, ",".join(self._ids))

    def close(self) -> None:
        """Cancel all timers and mark the connection closed. Idempotent."""
        if self._state is ConnectionState.CLOSED:
            return
        self._state = ConnectionState.CLOSED
        self.closed_at = time.time()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks = []
        self._wake_reader()
        logger.info("Stream %d closed", self.id)

    async def next_event(self, timeout: float | None = None) -> StreamEvent | None:
        """Next queued event, or None on timeout or once the stream is closed."""
        if self.closed:
            return None
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if event is None or self.closed:
            return None
        return event

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Iterate over events until the subscription is closed."""
        while True:
            event = await self.next_event()
            if event is None:
                return
            yield event

    def next_tick(self, instrument_id: str) -> MarketTick:
        """Advance one instrument by one evolution step and return its tick."""
        session = self._sessions[instrument_id]
        price = self._evolution.next_price(session.instrument, session.price)
        if price <= 0:
            raise ValueError(f"price evolution produced {price} for {instrument_id}")
        if session.market_cap is not None:
            session.market_cap *= price / session.price
        session.price = price
        session.volume += float(self._rng.integers(100, 10_000))
        return self._emit(session, advance=True)

    # --- Internals ---

    def _new_session(self, instrument: Instrument, seed: MarketTick | float) -> _InstrumentSession:
        if isinstance(seed, MarketTick):
            return _InstrumentSession(
                instrument=instrument,
                reference=seed.last - seed.change_abs,
                price=seed.last,
                open=seed.ohlc.open,
                high=seed.day_high,
                low=seed.day_low,
                volume=seed.volume,
                market_cap=seed.market_cap,
                sparkline=seed.sparkline,
                last_ts=seed.ts,
            )
        price = float(seed)
        return _InstrumentSession(
            instrument=instrument,
            reference=price,
            price=price,
            open=price,
            high=price,
            low=price,
            volume=float(self._rng.integers(1_000_000, 50_000_000)),
            market_cap=None,
            sparkline=synth_sparkline(price, self._config.sparkline_length, self._rng),
        )

    def _emit(self, session: _InstrumentSession, advance: bool = False) -> MarketTick:
        """Build a complete tick from the session state.

        With `advance` the current price is appended to the sparkline;
        otherwise the sparkline already ends at it.
        """
        history = session.sparkline if advance else session.sparkline[:-1]
        ts = max(now_ms(), session.last_ts)
        tick = build_tick(
            session.instrument,
            last=session.price,
            prev_close=session.reference,
            open_=session.open,
            high=session.high,
            low=session.low,
            volume=session.volume,
            market_cap=session.market_cap,
            ts=ts,
            sparkline=history or None,
            sparkline_length=self._config.sparkline_length,
            rng=self._rng,
        )
        session.high = max(session.high, tick.day_high)
        session.low = min(session.low, tick.day_low)
        session.sparkline = tick.sparkline
        session.last_ts = ts
        return tick

    def _next_interval(self) -> float:
        return float(self._rng.uniform(self._config.tick_interval_min, self._config.tick_interval_max))

    async def _tick_loop(self) -> None:
        """Emit a tick for one randomly chosen instrument at irregular intervals."""
        while True:
            await asyncio.sleep(self._next_interval())
            instrument_id = self._ids[int(self._rng.integers(len(self._ids)))]
            try:
                tick = self.next_tick(instrument_id)
            except Exception:
                logger.exception("Stream %d: tick generation failed for %s", self.id, instrument_id)
                continue
            self._enqueue(StreamEvent("tick", tick.to_dict()))

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_interval)
            self._enqueue(StreamEvent("heartbeat", {"ts": now_ms()}))

    def _enqueue(self, event: StreamEvent) -> None:
        """Enqueue with drop-oldest overflow policy."""
        if self.closed:
            return
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self._overflow_count += 1
                if self._overflow_count % 100 == 1:
                    logger.warning(
                        "Stream %d queue overflow, dropped oldest. Total drops: %d",
                        self.id,
                        self._overflow_count,
                    )
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(event)

    def _wake_reader(self) -> None:
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(None)


class TickStreamEngine:
    """Creates, tracks and tears down stream subscriptions.

    Subscriptions are strict: an unknown id rejects the whole connection,
    since the instrument set is fixed for the connection's lifetime.
    Initial prices come from the snapshot service when one is wired in,
    falling back to the registry seed prices.
    """

    def __init__(
        self,
        registry: InstrumentRegistry,
        config: MarketConfig | None = None,
        evolution: PriceEvolution | None = None,
        snapshot_service: SnapshotService | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or MarketConfig()
        self._rng = rng or np.random.default_rng()
        self._evolution = evolution or RandomWalkEvolution(self._rng)
        self._snapshot = snapshot_service
        self._subscriptions: dict[int, Subscription] = {}
        self._counter = itertools.count(1)

    @property
    def active(self) -> int:
        return len(self._subscriptions)

    def validate(self, ids: list[str]) -> list[Instrument]:
        """Resolve ids to instruments, rejecting the request if any is unknown."""
        if not ids:
            raise ValidationError("No valid ids provided")
        unknown = self._registry.unknown(ids)
        if unknown:
            raise ValidationError(f"Unknown instrument ids: {', '.join(unknown)}", unknown)
        return [self._registry.get(i) for i in ids]

    async def open(self, ids: list[str]) -> Subscription:
        """Validate, seed and open a subscription. Raises ValidationError."""
        instruments = self.validate(ids)
        seeds = await self._seed(instruments)
        subscription = Subscription(
            next(self._counter),
            instruments,
            seeds,
            self._evolution,
            self._config,
            self._rng,
        )
        self._subscriptions[subscription.id] = subscription
        subscription.open()
        return subscription

    def close(self, subscription: Subscription) -> None:
        subscription.close()
        self._subscriptions.pop(subscription.id, None)

    async def close_all(self) -> None:
        for subscription in list(self._subscriptions.values()):
            self.close(subscription)

    async def _seed(self, instruments: list[Instrument]) -> dict[str, MarketTick | float]:
        seeds: dict[str, MarketTick | float] = {}
        for instrument in instruments:
            price = self._registry.seed_price(instrument.id)
            seeds[instrument.id] = price if price else float(self._rng.uniform(50.0, 1050.0))

        if self._snapshot is None:
            return seeds
        try:
            ticks = await asyncio.wait_for(
                self._snapshot.snapshot([i.id for i in instruments]),
                timeout=self._config.stream_seed_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Stream seeding timed out; using seed prices")
            return seeds
        for tick in ticks:
            seeds[tick.id] = tick
        return seeds


def create_stream_router(engine: TickStreamEngine) -> APIRouter:
    """Create the SSE streaming router with a reference to the engine.

    This factory pattern lets us inject the engine without globals.
    """
    router = APIRouter(prefix="/api/stream", tags=["streaming"])

    @router.get("/ticks", response_model=None)
    async def stream_ticks(request: Request, ids: str | None = None) -> StreamingResponse | JSONResponse:
        """SSE endpoint for live ticks.

        The client connects with EventSource (or a streaming fetch) and
        receives named events:

            event: tick
            data: {"id": "BTC", "last": 65012.5, ...}

            event: heartbeat
            data: {"ts": 1707580800000}

        Every id must be known; otherwise the request fails with 400.
        """
        instrument_ids = parse_ids(ids)
        if not instrument_ids:
            return JSONResponse({"success": False, "error": "Missing ids parameter"}, status_code=400)
        try:
            engine.validate(instrument_ids)
        except ValidationError as e:
            return JSONResponse(
                {"success": False, "error": str(e), "unknown": e.unknown_ids},
                status_code=400,
            )

        return StreamingResponse(
            _generate_events(engine, instrument_ids, request),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering if proxied
            },
        )

    return router


async def _generate_events(
    engine: TickStreamEngine,
    ids: list[str],
    request: Request,
    poll_interval: float = 0.5,
) -> AsyncGenerator[str, None]:
    """Async generator that yields SSE-formatted events for one connection.

    Stops when the client disconnects, detected either by polling
    request.is_disconnected() or by the server cancelling the generator.
    The subscription is closed on every exit path.
    """
    subscription = await engine.open(ids)
    client_ip = request.client.host if request.client else "unknown"
    logger.info("SSE client connected: %s (stream %d)", client_ip, subscription.id)

    try:
        # Tell the client to retry after 1 second if the connection drops
        yield "retry: 1000\n\n"
        while True:
            if await request.is_disconnected():
                logger.info("SSE client disconnected: %s", client_ip)
                break
            event = await subscription.next_event(timeout=poll_interval)
            if event is None:
                if subscription.closed:
                    break
                continue
            yield event.encode()
    except asyncio.CancelledError:
        logger.info("SSE stream cancelled for: %s", client_ip)
        raise
    finally:
        engine.close(subscription)
