"""
tests/test_transport.py
────────────────────────
End-to-end tests for WebSocketTransport + TelemetryClient against a local
websockets server. Each test runs its own loop with asyncio.run(); the
client picks up the running loop on connect().
"""

from __future__ import annotations

import asyncio
import gc
import json
import socket

from websockets.asyncio.server import serve

from constants import USER_AGENT
from device_state import ConnectionState, Endpoint, RetryPolicy
from telemetry_client import ClientListener, TelemetryClient
from transport import WebSocketTransport


class _Waiter(ClientListener):
    """Records events and wakes the test when a condition holds."""

    def __init__(self) -> None:
        self.states = []
        self.samples = []
        self.errors = []
        self.changed = asyncio.Event()

    def on_state_change(self, state) -> None:
        self.states.append(state)
        self.changed.set()

    def on_sample(self, value) -> None:
        self.samples.append(value)
        self.changed.set()

    def on_error(self, message) -> None:
        self.errors.append(message)
        self.changed.set()

    async def until(self, predicate, timeout: float = 5.0) -> None:
        async def _wait():
            while not predicate():
                self.changed.clear()
                await self.changed.wait()
        await asyncio.wait_for(_wait(), timeout)


def _port_of(server) -> int:
    return next(iter(server.sockets)).getsockname()[1]


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestWebSocketTransport:

    def test_threshold_push_and_samples(self) -> None:
        received = []
        user_agents = []

        async def handler(ws):
            user_agents.append(ws.request.headers.get("User-Agent"))
            received.append(await ws.recv())
            await ws.send("812")
            await ws.send("abc")
            await ws.send("40")
            await ws.wait_closed()

        async def scenario():
            async with serve(handler, "127.0.0.1", 0) as server:
                client = TelemetryClient(Endpoint("127.0.0.1", _port_of(server)),
                                         threshold=750)
                waiter = _Waiter()
                client.add_listener(waiter)
                client.connect()
                await waiter.until(lambda: len(waiter.samples) >= 2)
                client.disconnect()
                return client, waiter

        client, waiter = asyncio.run(scenario())

        assert json.loads(received[0]) == {"type": "threshold", "value": 750}
        assert user_agents == [USER_AGENT]
        assert waiter.samples == [812, 40]
        assert client.window.values() == [812, 40]
        assert waiter.states == [ConnectionState.CONNECTING,
                                 ConnectionState.CONNECTED,
                                 ConnectionState.DISCONNECTED]
        assert waiter.errors == []

    def test_commands_reach_device(self) -> None:
        received = []

        async def handler(ws):
            async for message in ws:
                received.append(json.loads(message))

        async def scenario():
            async with serve(handler, "127.0.0.1", 0) as server:
                client = TelemetryClient(Endpoint("127.0.0.1", _port_of(server)))
                waiter = _Waiter()
                client.add_listener(waiter)
                client.connect()
                await waiter.until(lambda: client.is_connected)
                client.test_buzzer(True)
                client.set_threshold(900)
                for _ in range(50):
                    if len(received) >= 3:
                        break
                    await asyncio.sleep(0.05)
                client.disconnect()

        asyncio.run(scenario())

        assert received == [
            {"type": "threshold", "value": 750},
            {"type": "buzzer", "state": True},
            {"type": "threshold", "value": 900},
        ]

    def test_server_close_without_error(self) -> None:
        async def handler(ws):
            await ws.send("7")

        async def scenario():
            async with serve(handler, "127.0.0.1", 0) as server:
                client = TelemetryClient(Endpoint("127.0.0.1", _port_of(server)),
                                         retry=RetryPolicy(max_attempts=0))
                waiter = _Waiter()
                client.add_listener(waiter)
                client.connect()
                await waiter.until(
                    lambda: waiter.states[-1:] == [ConnectionState.DISCONNECTED])
                return client, waiter

        client, waiter = asyncio.run(scenario())

        assert waiter.samples == [7]
        assert waiter.errors == []
        assert client.state == ConnectionState.DISCONNECTED

    def test_refused_connection_reports_error_and_schedules_retry(self) -> None:
        port = _free_port()

        async def scenario():
            client = TelemetryClient(Endpoint("127.0.0.1", port),
                                     retry=RetryPolicy(base_delay=30.0))
            waiter = _Waiter()
            client.add_listener(waiter)
            client.connect()
            await waiter.until(lambda: waiter.errors)
            attempt = client.attempt
            client.disconnect()
            return client, waiter, attempt

        client, waiter, attempt = asyncio.run(scenario())

        assert len(waiter.errors) == 1
        assert waiter.states[:2] == [ConnectionState.CONNECTING,
                                     ConnectionState.DISCONNECTED]
        assert attempt == 1

    def test_oversized_frame_is_dropped_and_link_stays_up(self) -> None:
        async def handler(ws):
            await ws.send("9" * 5000)
            await ws.send("\u0663")
            await ws.send("40")
            await ws.wait_closed()

        async def scenario():
            async with serve(handler, "127.0.0.1", 0) as server:
                client = TelemetryClient(Endpoint("127.0.0.1", _port_of(server)))
                waiter = _Waiter()
                client.add_listener(waiter)
                client.connect()
                await waiter.until(lambda: waiter.samples)
                state = client.state
                client.disconnect()
                return waiter, state

        waiter, state = asyncio.run(scenario())

        assert waiter.samples == [40]
        assert waiter.errors == []
        assert state == ConnectionState.CONNECTED

    def test_callback_exception_is_reported_as_close(self) -> None:
        closes = []

        async def handler(ws):
            await ws.send("1")
            await ws.wait_closed()

        def explode(text):
            raise RuntimeError("handler bug")

        async def scenario():
            async with serve(handler, "127.0.0.1", 0) as server:
                closed = asyncio.Event()

                def on_close(error):
                    closes.append(error)
                    closed.set()

                transport = WebSocketTransport(
                    asyncio.get_running_loop(),
                    f"ws://127.0.0.1:{_port_of(server)}",
                    on_open=lambda: None, on_message=explode, on_close=on_close)
                transport.open()
                await asyncio.wait_for(closed.wait(), 5.0)
                return transport

        transport = asyncio.run(scenario())

        assert closes == ["RuntimeError: handler bug"]
        assert not transport.is_open

    def test_back_to_back_sends_arrive_in_order(self) -> None:
        received = []

        async def handler(ws):
            async for message in ws:
                received.append(json.loads(message))

        async def scenario():
            async with serve(handler, "127.0.0.1", 0) as server:
                client = TelemetryClient(Endpoint("127.0.0.1", _port_of(server)))
                waiter = _Waiter()
                client.add_listener(waiter)
                client.connect()
                await waiter.until(lambda: client.is_connected)
                results = [client.send({"type": "seq", "n": n}) for n in range(20)]
                # Only the transport holds the pending send tasks
                gc.collect()
                for _ in range(100):
                    if len(received) >= 21:
                        break
                    await asyncio.sleep(0.02)
                client.disconnect()
                return results

        results = asyncio.run(scenario())

        assert all(results)
        assert received[0] == {"type": "threshold", "value": 750}
        assert [m["n"] for m in received[1:]] == list(range(20))
