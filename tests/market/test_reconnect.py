"""Tests for the client-side ReconnectionController."""

import asyncio

import httpx
import pytest

from tickstream.market.errors import TransportError, ValidationError
from tickstream.market.reconnect import (
    ControllerState,
    HttpStreamTransport,
    ReconnectionController,
    parse_sse,
)


class ScriptedTransport:
    """Transport whose connections follow a script.

    Each connection attempt takes the next entry: an exception (the attempt
    fails immediately), or a list of (event, data) pairs to deliver before
    the connection is held open until the test closes the controller.
    """

    def __init__(self, *connections, snapshots=None):
        self._connections = list(connections)
        self.attempts = 0
        self.snapshots = list(snapshots or [])
        self.snapshot_calls = 0
        self.closed_iterators = 0

    async def events(self, ids):
        self.attempts += 1
        script = self._connections.pop(0) if self._connections else TransportError("refused")
        try:
            if isinstance(script, BaseException):
                raise script
            for item in script:
                yield item
            await asyncio.Event().wait()
        finally:
            self.closed_iterators += 1

    async def snapshot(self, ids):
        self.snapshot_calls += 1
        if self.snapshots:
            return self.snapshots.pop(0)
        return []


class RecordingSleep:
    """Fake sleep that records each backoff delay and returns at once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


def _tick(instrument_id, ts, last=100.0):
    return {"id": instrument_id, "ts": ts, "last": last}


async def _wait_for_state(controller, state, timeout=1.0):
    async def poll():
        while controller.state is not state:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
class TestReconnectionController:
    """Backoff schedule, degradation and recovery."""

    async def test_backoff_doubles(self):
        """Three failed attempts wait 1s, 2s then 4s before connecting."""
        transport = ScriptedTransport(
            TransportError("down"),
            TransportError("down"),
            TransportError("down"),
            [("tick", _tick("BTC", 1))],
        )
        sleep = RecordingSleep()
        controller = ReconnectionController(transport, sleep=sleep, refresh_interval=60.0)

        controller.connect(["BTC"])
        await _wait_for_state(controller, ControllerState.OPEN)

        assert sleep.delays == [1.0, 2.0, 4.0]
        assert controller.delays == [1.0, 2.0, 4.0]
        assert sleep.delays[2] >= sleep.delays[1] >= sleep.delays[0]
        await controller.close()

    async def test_successful_reconnect_resets_attempts(self):
        """After a reconnect the next outage starts again from the base delay."""
        transport = ScriptedTransport(
            TransportError("down"),
            TransportError("down"),
            [("tick", _tick("BTC", 1))],
        )
        sleep = RecordingSleep()
        reconnects = []
        controller = ReconnectionController(
            transport,
            sleep=sleep,
            refresh_interval=60.0,
            on_reconnect=lambda attempt, delay: reconnects.append((attempt, delay)),
        )

        controller.connect(["BTC"])
        await _wait_for_state(controller, ControllerState.OPEN)

        assert controller.attempts == 0
        assert reconnects == [(1, 1.0), (2, 2.0)]
        await controller.close()

    async def test_degrades_after_max_retries(self):
        """Exhausting the retry budget surfaces an explicit error."""
        errors = []
        sleep = RecordingSleep()
        transport = ScriptedTransport()
        controller = ReconnectionController(
            transport,
            sleep=sleep,
            max_retries=5,
            refresh_interval=60.0,
            on_error=errors.append,
        )

        controller.connect(["BTC"])
        await _wait_for_state(controller, ControllerState.DEGRADED)

        assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert transport.attempts == 6
        assert len(errors) == 1
        assert isinstance(errors[0], TransportError)
        assert "Maximum retries reached" in str(errors[0])
        await controller.close()

    async def test_dropped_stream_reconnects(self):
        """A stream that ends after delivering data counts as a failure and is retried."""

        class EndingTransport(ScriptedTransport):
            async def events(self, ids):
                self.attempts += 1
                try:
                    if self.attempts == 1:
                        yield ("tick", _tick("BTC", 1))
                        return
                    yield ("tick", _tick("BTC", 2))
                    await asyncio.Event().wait()
                finally:
                    self.closed_iterators += 1

        transport = EndingTransport()
        sleep = RecordingSleep()
        ticks = []
        controller = ReconnectionController(transport, sleep=sleep, refresh_interval=60.0, on_tick=ticks.append)

        controller.connect(["BTC"])
        for _ in range(200):
            if len(ticks) == 2:
                break
            await asyncio.sleep(0.005)

        assert [t["ts"] for t in ticks] == [1, 2]
        assert sleep.delays == [1.0]
        assert controller.state is ControllerState.OPEN
        # The first connection was torn down before the second was opened
        assert transport.closed_iterators == 1
        await controller.close()

    async def test_validation_error_is_not_retried(self):
        errors = []
        sleep = RecordingSleep()
        transport = ScriptedTransport(ValidationError("Unknown instrument ids: NOPE", ["NOPE"]))
        controller = ReconnectionController(transport, sleep=sleep, refresh_interval=60.0, on_error=errors.append)

        controller.connect(["NOPE"])
        await _wait_for_state(controller, ControllerState.DEGRADED)

        assert sleep.delays == []
        assert transport.attempts == 1
        assert isinstance(errors[0], ValidationError)
        await controller.close()

    async def test_manual_reconnect_after_degraded(self):
        """reconnect() starts over with a fresh retry budget."""
        transport = ScriptedTransport(TransportError("down"), TransportError("down"))
        sleep = RecordingSleep()
        controller = ReconnectionController(transport, sleep=sleep, max_retries=1, refresh_interval=60.0)

        controller.connect(["BTC"])
        await _wait_for_state(controller, ControllerState.DEGRADED)

        transport._connections.append([("tick", _tick("BTC", 1))])
        await controller.reconnect()
        await _wait_for_state(controller, ControllerState.OPEN)

        assert controller.attempts == 0
        await controller.close()

    async def test_dispatches_ticks_and_heartbeats(self):
        ticks, heartbeats = [], []
        transport = ScriptedTransport([("tick", _tick("BTC", 1)), ("heartbeat", {"ts": 5}), ("tick", _tick("ETH", 2))])
        controller = ReconnectionController(
            transport,
            refresh_interval=60.0,
            on_tick=ticks.append,
            on_heartbeat=heartbeats.append,
        )

        controller.connect(["BTC", "ETH"])
        for _ in range(200):
            if len(ticks) == 2:
                break
            await asyncio.sleep(0.005)

        assert [t["id"] for t in ticks] == ["BTC", "ETH"]
        assert heartbeats == [{"ts": 5}]
        assert controller.connected
        await controller.close()

    async def test_latest_is_monotonic(self):
        """An older tick never replaces a newer one."""
        ticks = []
        transport = ScriptedTransport(
            [("tick", _tick("BTC", 10, 101.0)), ("tick", _tick("BTC", 5, 99.0)), ("tick", _tick("BTC", 10, 102.0))]
        )
        controller = ReconnectionController(transport, refresh_interval=60.0, on_tick=ticks.append)

        controller.connect(["BTC"])
        for _ in range(200):
            if len(ticks) == 2:
                break
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.02)

        assert [t["last"] for t in ticks] == [101.0, 102.0]
        assert controller.latest["BTC"]["last"] == 102.0
        await controller.close()

    async def test_malformed_ticks_are_dropped(self):
        """Non-object payloads and ticks without a numeric ts are skipped; the stream stays up."""
        ticks = []
        transport = ScriptedTransport(
            [
                ("tick", _tick("BTC", 1)),
                ("tick", ["not", "an", "object"]),
                ("tick", _tick("BTC", None)),
                ("tick", {"ts": 3}),
                ("tick", _tick("BTC", 2)),
            ]
        )
        controller = ReconnectionController(transport, refresh_interval=60.0, on_tick=ticks.append)

        controller.connect(["BTC"])
        for _ in range(200):
            if len(ticks) == 2:
                break
            await asyncio.sleep(0.005)

        assert [t["ts"] for t in ticks] == [1, 2]
        assert controller.state is ControllerState.OPEN
        assert transport.attempts == 1
        await controller.close()

    async def test_unexpected_stream_error_backs_off(self):
        """A failure outside the transport's error types still goes through backoff."""
        transport = ScriptedTransport(RuntimeError("decoder bug"), [("tick", _tick("BTC", 1))])
        sleep = RecordingSleep()
        retries = []
        controller = ReconnectionController(
            transport, sleep=sleep, refresh_interval=60.0, on_reconnect=lambda n, d: retries.append((n, d))
        )

        controller.connect(["BTC"])
        await _wait_for_state(controller, ControllerState.OPEN)

        assert sleep.delays == [1.0]
        assert retries == [(1, 1.0)]
        assert transport.attempts == 2
        await controller.close()

    async def test_callback_errors_do_not_break_the_stream(self):
        def explode(tick):
            raise RuntimeError("consumer bug")

        transport = ScriptedTransport([("tick", _tick("BTC", 1)), ("tick", _tick("BTC", 2))])
        controller = ReconnectionController(transport, refresh_interval=60.0, on_tick=explode)

        controller.connect(["BTC"])
        for _ in range(200):
            if controller.latest.get("BTC", {}).get("ts") == 2:
                break
            await asyncio.sleep(0.005)

        assert controller.latest["BTC"]["ts"] == 2
        assert controller.connected
        await controller.close()

    async def test_connect_twice_rejected(self):
        controller = ReconnectionController(ScriptedTransport([]), refresh_interval=60.0)
        controller.connect(["BTC"])
        with pytest.raises(RuntimeError):
            controller.connect(["BTC"])
        await controller.close()

    async def test_close_stops_everything(self):
        transport = ScriptedTransport([("tick", _tick("BTC", 1))])
        controller = ReconnectionController(transport, refresh_interval=60.0)
        controller.connect(["BTC"])
        await _wait_for_state(controller, ControllerState.OPEN)

        await controller.close()
        await controller.close()  # Should not raise

        assert controller.state is ControllerState.CLOSED
        assert transport.closed_iterators == 1


@pytest.mark.asyncio
class TestFallbackPolling:
    """Snapshot polling while the stream is down."""

    async def test_initial_snapshot_on_connect(self):
        snapshots = []
        transport = ScriptedTransport([], snapshots=[[_tick("BTC", 1)]])
        controller = ReconnectionController(transport, refresh_interval=60.0, on_snapshot=snapshots.append)

        controller.connect(["BTC"])
        for _ in range(200):
            if snapshots:
                break
            await asyncio.sleep(0.005)

        assert snapshots == [[_tick("BTC", 1)]]
        assert controller.latest["BTC"]["ts"] == 1
        await controller.close()

    async def test_polls_while_stream_is_down(self):
        """With the stream degraded, snapshots keep arriving every refresh interval."""
        transport = ScriptedTransport(snapshots=[[_tick("BTC", i)] for i in range(1, 20)])
        controller = ReconnectionController(
            transport,
            sleep=RecordingSleep(),
            max_retries=0,
            refresh_interval=0.02,
        )

        controller.connect(["BTC"])
        await asyncio.sleep(0.15)

        assert controller.state is ControllerState.DEGRADED
        assert transport.snapshot_calls >= 3
        assert controller.latest["BTC"]["ts"] >= 3
        await controller.close()

    async def test_no_polling_while_open(self):
        """Once the stream is open only the initial snapshot is fetched."""
        transport = ScriptedTransport([("tick", _tick("BTC", 1))])
        controller = ReconnectionController(transport, refresh_interval=0.02)

        controller.connect(["BTC"])
        await _wait_for_state(controller, ControllerState.OPEN)
        await asyncio.sleep(0.1)

        assert transport.snapshot_calls == 1
        await controller.close()

    async def test_unexpected_poll_error_keeps_polling(self):
        class FlakySnapshots(ScriptedTransport):
            async def snapshot(self, ids):
                self.snapshot_calls += 1
                if self.snapshot_calls == 1:
                    raise RuntimeError("bad payload")
                return [_tick("BTC", self.snapshot_calls)]

        transport = FlakySnapshots()
        controller = ReconnectionController(
            transport,
            sleep=RecordingSleep(),
            max_retries=0,
            refresh_interval=0.02,
        )

        controller.connect(["BTC"])
        await asyncio.sleep(0.15)

        assert transport.snapshot_calls >= 3
        assert controller.latest["BTC"]["ts"] >= 3
        await controller.close()

    async def test_failed_poll_is_logged_not_raised(self):
        class FailingSnapshots(ScriptedTransport):
            async def snapshot(self, ids):
                self.snapshot_calls += 1
                raise TransportError("snapshot down")

        transport = FailingSnapshots([("tick", _tick("BTC", 1))])
        controller = ReconnectionController(transport, refresh_interval=60.0)

        controller.connect(["BTC"])
        assert await controller.refresh() == []
        await controller.close()


async def _lines(*lines):
    for line in lines:
        yield line


@pytest.mark.asyncio
class TestParseSse:
    async def test_named_events(self):
        lines = _lines(
            "retry: 1000",
            "",
            "event: tick",
            'data: {"id": "BTC", "ts": 1}',
            "",
            ": comment",
            "event: heartbeat",
            'data: {"ts": 2}',
            "",
        )
        events = [e async for e in parse_sse(lines)]
        assert events == [("tick", {"id": "BTC", "ts": 1}), ("heartbeat", {"ts": 2})]

    async def test_bad_json_skipped(self):
        lines = _lines("event: tick", "data: {not json", "", 'data: {"ts": 3}', "")
        events = [e async for e in parse_sse(lines)]
        assert events == [("message", {"ts": 3})]


@pytest.mark.asyncio
class TestHttpStreamTransport:
    """HTTP transport against a mocked server."""

    async def test_streams_events(self):
        body = 'retry: 1000\n\nevent: tick\ndata: {"id": "BTC", "ts": 1}\n\nevent: heartbeat\ndata: {"ts": 2}\n\n'
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpStreamTransport("http://test", client=client)
            events = [e async for e in transport.events(["BTC", "ETH"])]

        assert events == [("tick", {"id": "BTC", "ts": 1}), ("heartbeat", {"ts": 2})]
        assert seen[0].url.path == "/api/stream/ticks"
        assert seen[0].url.params["ids"] == "BTC,ETH"

    async def test_bad_ids_raise_validation_error(self):
        def handler(request):
            return httpx.Response(400, json={"success": False, "error": "Unknown instrument ids: NOPE"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpStreamTransport("http://test", client=client)
            with pytest.raises(ValidationError, match="NOPE"):
                [e async for e in transport.events(["NOPE"])]

    async def test_server_error_raises_transport_error(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as client:
            transport = HttpStreamTransport("http://test", client=client)
            with pytest.raises(TransportError):
                [e async for e in transport.events(["BTC"])]

    async def test_network_error_raises_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpStreamTransport("http://test", client=client)
            with pytest.raises(TransportError):
                [e async for e in transport.events(["BTC"])]
            with pytest.raises(TransportError):
                await transport.snapshot(["BTC"])

    async def test_snapshot(self):
        def handler(request):
            return httpx.Response(200, json={"success": True, "data": [{"id": "BTC", "ts": 1}]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpStreamTransport("http://test/", client=client)
            assert await transport.snapshot(["BTC"]) == [{"id": "BTC", "ts": 1}]

    @pytest.mark.parametrize("body", [[{"id": "BTC", "ts": 1}], {"success": True, "data": {"id": "BTC"}}])
    async def test_snapshot_unexpected_body(self, body):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body))) as client:
            transport = HttpStreamTransport("http://test", client=client)
            with pytest.raises(TransportError):
                await transport.snapshot(["BTC"])
