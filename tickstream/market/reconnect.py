"""Client-side stream consumer with exponential-backoff reconnects."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

import httpx

from .errors import TransportError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_RETRIES = 5


class ControllerState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    BACKOFF = "backoff"
    DEGRADED = "degraded"
    CLOSED = "closed"


class StreamTransport(Protocol):
    """What the controller needs from the server side."""

    def events(self, ids: list[str]) -> AsyncIterator[tuple[str, dict]]:
        """Open the stream and yield (event name, payload) pairs.

        Raises TransportError when the connection fails or drops, and
        ValidationError when the server rejects the ids.
        """
        ...

    async def snapshot(self, ids: list[str]) -> list[dict]:
        """Fetch one snapshot. Raises TransportError."""
        ...


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, dict]]:
    """Turn SSE lines into (event, data) pairs.

    Events are terminated by a blank line. `retry:` and comment lines are
    ignored; unnamed events default to "message". Payloads that are not
    valid JSON are skipped.
    """
    event = ""
    data: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            if data:
                try:
                    payload = json.loads("\n".join(data))
                except ValueError:
                    logger.warning("Skipping undecodable SSE payload for event %r", event or "message")
                else:
                    yield event or "message", payload
            event, data = "", []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("data:"):
            data.append(line[5:].strip())


class HttpStreamTransport:
    """StreamTransport over HTTP: the SSE endpoint plus the snapshot endpoint."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        # The read timeout must outlast the server heartbeat interval
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(connect_timeout, read=read_timeout))
        self._owns_client = client is None

    async def events(self, ids: list[str]) -> AsyncIterator[tuple[str, dict]]:
        url = f"{self._base_url}/api/stream/ticks"
        try:
            async with self._client.stream(
                "GET",
                url,
                params={"ids": ",".join(ids)},
                headers={"Accept": "text/event-stream"},
            ) as response:
                if response.status_code == 400:
                    await response.aread()
                    raise ValidationError(_error_message(response))
                if not response.is_success:
                    raise TransportError(f"HTTP {response.status_code}: {response.reason_phrase}")
                async for item in parse_sse(response.aiter_lines()):
                    yield item
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

    async def snapshot(self, ids: list[str]) -> list[dict]:
        url = f"{self._base_url}/api/market/snapshot"
        try:
            response = await self._client.post(url, json={"ids": ids})
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"snapshot request failed: {e}") from e
        if not isinstance(body, dict):
            raise TransportError(f"snapshot failed: HTTP {response.status_code} unexpected body")
        if not response.is_success or not body.get("success"):
            raise TransportError(f"snapshot failed: HTTP {response.status_code} {body.get('error', '')}")
        data = body.get("data", [])
        if not isinstance(data, list):
            raise TransportError("snapshot failed: data is not a list")
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        return str(response.json().get("error", response.text))
    except ValueError:
        return response.text


Callback = Callable[..., Any]


class ReconnectionController:
    """Keeps a stream consumer fed through transport failures.

    On a transport error the stream is retried after
    `base_delay * 2 ** (attempt - 1)` seconds. After `max_retries`
    consecutive failures the controller gives up, enters DEGRADED and calls
    `on_error`; the consumer then lives on the snapshot poll. The first
    event of a new connection resets the attempt counter.

    Independently, a poll task fetches a snapshot on connect and then every
    `refresh_interval` seconds while the stream is not OPEN, so data keeps
    flowing during outages.

    Callbacks may be plain functions or coroutines:
        on_tick(tick: dict)
        on_heartbeat(payload: dict)
        on_error(error: Exception)
        on_reconnect(attempt: int, delay: float)
        on_snapshot(ticks: list[dict])

    `sleep` is used for backoff delays only, so tests can observe them.
    """

    def __init__(
        self,
        transport: StreamTransport,
        *,
        on_tick: Callback | None = None,
        on_heartbeat: Callback | None = None,
        on_error: Callback | None = None,
        on_reconnect: Callback | None = None,
        on_snapshot: Callback | None = None,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        refresh_interval: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._on_tick = on_tick
        self._on_heartbeat = on_heartbeat
        self._on_error = on_error
        self._on_reconnect = on_reconnect
        self._on_snapshot = on_snapshot
        self._base_delay = base_delay
        self._max_retries = max_retries
        self._refresh_interval = refresh_interval
        self._sleep = sleep

        self._ids: list[str] = []
        self._state = ControllerState.IDLE
        self._attempts = 0
        self._stream_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self.latest: dict[str, dict] = {}
        self.delays: list[float] = []  # Every backoff delay scheduled, in order

    # --- Public API ---

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ControllerState.OPEN

    @property
    def attempts(self) -> int:
        return self._attempts

    def connect(self, ids: list[str]) -> ReconnectionController:
        """Start streaming `ids`. Returns self as the handle."""
        if self._state is not ControllerState.IDLE:
            raise RuntimeError(f"cannot connect in state {self._state.value}")
        self._ids = list(ids)
        self._state = ControllerState.CONNECTING
        self._stream_task = asyncio.create_task(self._run_stream(), name="reconnect-stream")
        self._poll_task = asyncio.create_task(self._poll_loop(), name="reconnect-poll")
        return self

    async def reconnect(self) -> None:
        """Restart the stream with a fresh retry budget (e.g. after DEGRADED)."""
        if self._state in (ControllerState.IDLE, ControllerState.CLOSED):
            raise RuntimeError(f"cannot reconnect in state {self._state.value}")
        await _cancel(self._stream_task)
        self._attempts = 0
        self._stream_task = asyncio.create_task(self._run_stream(), name="reconnect-stream")

    async def refresh(self) -> list[dict]:
        """Fetch a snapshot now, regardless of stream state."""
        return await self._poll_once()

    async def close(self) -> None:
        """Stop streaming and polling. Idempotent."""
        self._state = ControllerState.CLOSED
        await _cancel(self._stream_task)
        await _cancel(self._poll_task)
        self._stream_task = None
        self._poll_task = None

    # --- Internals ---

    async def _run_stream(self) -> None:
        while True:
            self._state = ControllerState.CONNECTING
            events = self._transport.events(self._ids)
            try:
                async for name, data in events:
                    if self._state is not ControllerState.OPEN:
                        self._mark_open()
                    await self._dispatch(name, data)
                error: Exception = TransportError("stream ended")
            except ValidationError as e:
                logger.error("Stream rejected: %s", e)
                self._state = ControllerState.DEGRADED
                await self._notify(self._on_error, e)
                return
            except TransportError as e:
                error = e
            except Exception as e:
                logger.exception("Unexpected stream failure")
                error = TransportError(f"{type(e).__name__}: {e}")
            finally:
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    await aclose()

            self._attempts += 1
            if self._attempts > self._max_retries:
                self._state = ControllerState.DEGRADED
                logger.error("Stream failed %d times; falling back to polling", self._max_retries)
                await self._notify(
                    self._on_error,
                    TransportError(
                        f"Could not establish a real-time connection. Maximum retries reached ({self._max_retries})."
                    ),
                )
                return

            delay = self._base_delay * 2 ** (self._attempts - 1)
            self.delays.append(delay)
            self._state = ControllerState.BACKOFF
            logger.warning("Connection attempt %d failed (%s). Retrying in %.1fs", self._attempts, error, delay)
            await self._notify(self._on_reconnect, self._attempts, delay)
            await self._sleep(delay)

    def _mark_open(self) -> None:
        if self._attempts:
            logger.info("Stream reconnected after %d attempt(s)", self._attempts)
        else:
            logger.info("Stream connected: %s", ",".join(self._ids))
        self._state = ControllerState.OPEN
        self._attempts = 0

    async def _dispatch(self, name: str, data: dict) -> None:
        if name == "tick":
            if self._accept(data):
                await self._notify(self._on_tick, data)
        elif name == "heartbeat":
            await self._notify(self._on_heartbeat, data)
        else:
            logger.debug("Ignoring stream event %r", name)

    def _accept(self, tick: Any) -> bool:
        """Keep `latest` monotonic: drop ticks older than what we already hold."""
        if not isinstance(tick, dict) or not tick.get("id") or not _is_number(tick.get("ts")):
            logger.warning("Dropping malformed tick: %r", tick)
            return False
        instrument_id = tick["id"]
        current = self.latest.get(instrument_id)
        if current is not None and tick["ts"] < current["ts"]:
            logger.debug("Dropping out-of-order tick for %s", instrument_id)
            return False
        self.latest[instrument_id] = tick
        return True

    async def _poll_loop(self) -> None:
        await self._poll_once()
        while True:
            await asyncio.sleep(self._refresh_interval)
            if self._state is not ControllerState.OPEN:
                logger.info("Fallback: real-time connection is down. Refetching snapshot.")
                await self._poll_once()

    async def _poll_once(self) -> list[dict]:
        try:
            ticks = await self._transport.snapshot(self._ids)
        except TransportError as e:
            logger.warning("Snapshot poll failed: %s", e)
            return []
        except Exception:
            logger.exception("Unexpected snapshot poll failure")
            return []
        accepted = [t for t in ticks if self._accept(t)]
        await self._notify(self._on_snapshot, accepted)
        return accepted

    async def _notify(self, callback: Callback | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Stream callback %s failed", getattr(callback, "__name__", callback))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


async def _cancel(task: asyncio.Task | None) -> None:
    if task and not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
