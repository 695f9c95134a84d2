"""
tests/conftest.py
──────────────────
Shared fakes for driving TelemetryClient without sockets or real time.

FakeLoop       manual clock implementing call_later(); advance() fires timers
FakeTransport  records sends/closes; tests trigger open/message/close by hand
Recorder       ClientListener that records every event in order
"""

from __future__ import annotations

import pytest

from telemetry_client import ClientListener, TelemetryClient


class FakeTimer:
    def __init__(self, when: float, delay: float, callback, args: tuple):
        self.when = when
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    @property
    def name(self) -> str:
        return getattr(self.callback, "__name__", repr(self.callback))

    def cancel(self) -> None:
        self.cancelled = True


class FakeLoop:
    """Just enough of an event loop for the client's timers."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: list[FakeTimer] = []

    def call_later(self, delay, callback, *args) -> FakeTimer:
        timer = FakeTimer(self.now + delay, delay, callback, args)
        self.timers.append(timer)
        return timer

    def pending(self, name: str = None) -> list[FakeTimer]:
        return [
            t for t in self.timers
            if not t.cancelled and not t.fired and (name is None or t.name == name)
        ]

    def scheduled_delays(self, name: str) -> list[float]:
        """Delays of every timer ever scheduled for the given callback name."""
        return [t.delay for t in self.timers if t.name == name]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self.pending() if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self.now = timer.when
            timer.fired = True
            timer.callback(*timer.args)
        self.now = target


class FakeTransport:
    def __init__(self, loop, url, on_open, on_message, on_close) -> None:
        self.loop = loop
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_close = on_close
        self.opened = False
        self.closed = False
        self.sent: list[str] = []

    def open(self) -> None:
        self.opened = True

    def send(self, text: str) -> bool:
        if self.closed:
            return False
        self.sent.append(text)
        return True

    def close(self) -> None:
        self.closed = True

    # -- test drivers --

    def accept(self) -> None:
        self.on_open()

    def deliver(self, text: str) -> None:
        self.on_message(text)

    def drop(self, error: str = None) -> None:
        self.on_close(error)


class TransportFactory:
    def __init__(self) -> None:
        self.created: list[FakeTransport] = []

    def __call__(self, loop, url, on_open, on_message, on_close) -> FakeTransport:
        transport = FakeTransport(loop, url, on_open, on_message, on_close)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class Recorder(ClientListener):
    def __init__(self) -> None:
        self.states = []
        self.samples: list[int] = []
        self.errors: list[str] = []
        self.logs: list[str] = []

    def on_state_change(self, state) -> None:
        self.states.append(state)

    def on_sample(self, value: int) -> None:
        self.samples.append(value)

    def on_error(self, message: str) -> None:
        self.errors.append(message)

    def on_log(self, text: str) -> None:
        self.logs.append(text)


class Harness:
    """A TelemetryClient wired to fakes."""

    def __init__(self, **kwargs) -> None:
        self.loop = FakeLoop()
        self.transports = TransportFactory()
        self.recorder = Recorder()
        self.client = TelemetryClient(
            loop=self.loop, transport_factory=self.transports, **kwargs)
        self.client.add_listener(self.recorder)

    def open_connection(self) -> FakeTransport:
        """connect() and complete the handshake."""
        self.client.connect()
        transport = self.transports.last
        transport.accept()
        return transport


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def make_harness():
    return Harness
