"""Resilient WebSocket client for the PlantGuardian moisture sensor.

Owns the single connection to the device and drives it through
Disconnected -> Connecting -> Connected -> (Disconnected | Failed) -> ...
with a connect timeout and bounded exponential backoff. Inbound frames are
parsed into moisture samples and kept in a rolling window; outbound commands
are JSON objects sent fire-and-forget.

Everything here runs on one asyncio loop (the I/O thread). Each transport is
tagged with a generation number; callbacks and timers carry the generation
they were created for and are dropped once the client has moved on.
"""

import asyncio
import json
from functools import partial
from typing import Optional

from constants import CONNECT_TIMEOUT, DEFAULT_THRESHOLD
from device_state import (
    ConnectionState,
    Endpoint,
    RetryPolicy,
    TelemetryWindow,
    parse_sample,
)
from transport import WebSocketTransport

# Check for textual availability (needed for log routing)
_HAS_TEXTUAL = False
try:
    from textual.app import App
    _HAS_TEXTUAL = True
except ImportError:
    pass


class ClientListener:
    """Receives client events. Override the ones you care about."""

    def on_state_change(self, state: ConnectionState):
        pass

    def on_sample(self, value: int):
        pass

    def on_error(self, message: str):
        pass

    def on_log(self, text: str):
        pass


class TelemetryClient:
    def __init__(self, endpoint: Endpoint = None, threshold: int = DEFAULT_THRESHOLD,
                 loop: asyncio.AbstractEventLoop = None,
                 transport_factory=WebSocketTransport,
                 retry: RetryPolicy = None,
                 connect_timeout: float = CONNECT_TIMEOUT):
        self.endpoint = endpoint or Endpoint()
        self.threshold = threshold
        self.retry = retry or RetryPolicy()
        self.connect_timeout = connect_timeout
        self.window = TelemetryWindow()
        self.state = ConnectionState.DISCONNECTED
        self.app = None  # Reference to TUI app (set by PlantGuardianApp)
        self.debug_mode = False  # CLI --debug; the TUI has its own toggle
        self._loop = loop  # Resolved on first connect() when not injected
        self._transport_factory = transport_factory
        self._listeners: list[ClientListener] = []
        self._generation = 0
        self._transport = None
        self._connect_timer: Optional[asyncio.TimerHandle] = None
        self._retry_timer: Optional[asyncio.TimerHandle] = None

    # ---- Getters ----

    @property
    def attempt(self) -> int:
        return self.retry.attempt

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def latest(self) -> Optional[int]:
        return self.window.latest

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def add_listener(self, listener: ClientListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: ClientListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def log(self, text: str, style: str = "", _debug: bool = False):
        """Post a log message to the TUI, or print() if no TUI.

        Args:
            _debug: If True, only show when debug_mode is on (F2 / 'debug').
        """
        if _debug:
            if self.app and _HAS_TEXTUAL:
                if not getattr(self.app, 'debug_mode', False):
                    return
            elif not self.debug_mode:
                return
        if self.app and _HAS_TEXTUAL:
            try:
                # post_message is thread-safe; we are on the I/O thread
                self.app.post_message(self.app.LogMsg(text, style))
            except Exception as e:
                print(f"  {text}  [log error: {e}]")
        else:
            print(f"  {text}")

        # Web console streaming (skip debug messages to reduce noise)
        if not _debug:
            for listener in list(self._listeners):
                try:
                    listener.on_log(text)
                except Exception as e:
                    print(f"  [log listener error: {e}]")

    # ---- Public API ----

    def configure(self, endpoint: Endpoint = None, threshold: int = None):
        """Update the desired endpoint and/or threshold. Applies on the next connect."""
        if endpoint is not None and endpoint != self.endpoint:
            self.endpoint = endpoint
            self.log(f"Endpoint set to {endpoint}")
        if threshold is not None and threshold != self.threshold:
            self.threshold = threshold
            self.log(f"Threshold set to {threshold}")

    def connect(self):
        """Manual (re)connect: resets the retry counter and opens a fresh transport."""
        self.retry.reset()
        self._start_attempt()

    def disconnect(self):
        """Close the link and stay disconnected. Never schedules a retry."""
        was_live = self._transport is not None or self._retry_timer is not None
        self._teardown()
        if self.state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
        if was_live:
            self.log("Disconnected")

    def send(self, command) -> bool:
        """Send a JSON command if connected. Dropped otherwise, never raises."""
        if self.state != ConnectionState.CONNECTED or self._transport is None:
            self.log(f"Dropped (not connected): {command}", _debug=True)
            return False
        try:
            text = json.dumps(command)
        except (TypeError, ValueError) as e:
            self.log(f"[WARN] Command not sent, not JSON: {e}", style="yellow")
            return False
        sent = self._transport.send(text)
        if sent:
            self.log(f"Sent: {text}", style="dim", _debug=True)
        return sent

    def set_threshold(self, value: int) -> bool:
        """Store a new threshold and push it to the device if connected."""
        self.threshold = value
        return self.send({"type": "threshold", "value": value})

    def test_buzzer(self, state: bool) -> bool:
        """Switch the device buzzer on or off (used to test the alarm)."""
        return self.send({"type": "buzzer", "state": bool(state)})

    # ---- Connection lifecycle ----

    def _start_attempt(self):
        self._teardown()
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        gen = self._generation
        self._set_state(ConnectionState.CONNECTING, force=True)
        self.log(f"Connecting to {self.endpoint.url}...")
        self._connect_timer = self._loop.call_later(
            self.connect_timeout, self._handle_connect_timeout, gen)
        self._transport = self._transport_factory(
            self._loop, self.endpoint.url,
            on_open=partial(self._handle_open, gen),
            on_message=partial(self._handle_message, gen),
            on_close=partial(self._handle_close, gen),
        )
        self._transport.open()

    def _teardown(self):
        """Cancel timers, close the transport and invalidate its callbacks."""
        self._generation += 1
        if self._connect_timer:
            self._connect_timer.cancel()
            self._connect_timer = None
        if self._retry_timer:
            self._retry_timer.cancel()
            self._retry_timer = None
        if self._transport:
            transport, self._transport = self._transport, None
            transport.close()

    def _schedule_retry(self):
        if self.retry.exhausted:
            self.log(f"[RECONNECT] Gave up after {self.retry.max_attempts} attempts. "
                     f"Use reconnect to try again.", style="yellow")
            return
        delay = self.retry.next_delay()
        self.log(f"[RECONNECT] Retrying in {delay:g}s "
                 f"({self.retry.attempt}/{self.retry.max_attempts})", style="yellow")
        self._retry_timer = self._loop.call_later(
            delay, self._handle_retry_due, self._generation)

    def _set_state(self, state: ConnectionState, force: bool = False):
        if state == self.state and not force:
            return
        self.state = state
        self._emit('on_state_change', state)

    def _emit(self, event: str, *args):
        for listener in list(self._listeners):
            try:
                getattr(listener, event)(*args)
            except Exception as e:
                self.log(f"[WARN] Listener {event} failed: {e}", style="yellow")

    # ---- Transport / timer callbacks ----

    def _handle_open(self, gen: int):
        if gen != self._generation:
            return
        if self._connect_timer:
            self._connect_timer.cancel()
            self._connect_timer = None
        self.retry.reset()
        self._set_state(ConnectionState.CONNECTED)
        self.log(f"Connected to {self.endpoint}", style="bold green")
        # Push current configuration on every open
        self.send({"type": "threshold", "value": self.threshold})

    def _handle_message(self, gen: int, text: str):
        if gen != self._generation:
            return
        value = parse_sample(text)
        if value is None:
            self.log(f"Ignored frame: {text!r}", style="dim", _debug=True)
            return
        self.window.append(value)
        self._emit('on_sample', value)

    def _handle_close(self, gen: int, error: Optional[str]):
        if gen != self._generation:
            return
        if error:
            self._emit('on_error', error)
            self.log(f"Connection error: {error}", style="bold red")
        self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)
        self.log("[RECONNECT] Connection lost", style="bold red")
        self._schedule_retry()

    def _handle_connect_timeout(self, gen: int):
        if gen != self._generation or self.state != ConnectionState.CONNECTING:
            return
        self._connect_timer = None
        message = f"Couldn't reach {self.endpoint}"
        self._emit('on_error', message)
        self.log(f"Connection failed: {message}", style="bold red")
        self._set_state(ConnectionState.FAILED)
        self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)
        self._schedule_retry()

    def _handle_retry_due(self, gen: int):
        if gen != self._generation:
            return
        self._retry_timer = None
        self._start_attempt()
