"""WebSocket transport to the moisture sensor.

One WebSocketTransport is one connection attempt. It runs as a task on the I/O
loop and reports back through three callbacks:

    on_open()                 handshake completed
    on_message(text)          one inbound text frame
    on_close(error)           connection ended; error is None for a clean close

close() cancels the task; a transport closed by its owner reports nothing.
An exception raised by a callback also ends the connection and is reported
through on_close, so the owner never waits on a dead reader.
"""

import asyncio
from typing import Callable, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import WebSocketException

from constants import USER_AGENT


class WebSocketTransport:
    def __init__(self, loop: asyncio.AbstractEventLoop, url: str,
                 on_open: Callable[[], None],
                 on_message: Callable[[str], None],
                 on_close: Callable[[Optional[str]], None]):
        self.loop = loop
        self.url = url
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close
        self._ws: Optional[ClientConnection] = None
        self._task: Optional[asyncio.Task] = None
        self._send_tasks: set[asyncio.Task] = set()  # Strong refs until each send finishes

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    def open(self):
        """Start the connection task. Returns immediately."""
        if self._task is None:
            self._task = self.loop.create_task(self._run())

    def send(self, text: str) -> bool:
        """Queue a text frame. Returns False if the socket is not open."""
        if self._ws is None:
            return False
        task = self.loop.create_task(self._send(self._ws, text))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)
        return True

    def close(self):
        """Tear down the connection without reporting a close."""
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        self._ws = None

    async def _send(self, ws: ClientConnection, text: str):
        try:
            await ws.send(text)
        except WebSocketException:
            pass  # The reader reports the close

    async def _run(self):
        try:
            # Attempt timeout is enforced by the client, not the handshake
            async with connect(self.url, user_agent_header=USER_AGENT,
                               open_timeout=None) as ws:
                self._ws = ws
                self._on_open()
                async for message in ws:
                    if isinstance(message, bytes):
                        message = message.decode('utf-8', errors='replace')
                    self._on_message(message)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self._ws = None
            self._on_close(str(e) or e.__class__.__name__)
            return
        except Exception as e:
            # Bug in a callback: drop the link rather than leave it unread
            self._ws = None
            self._on_close(f"{e.__class__.__name__}: {e}")
            return
        self._ws = None
        self._on_close(None)
