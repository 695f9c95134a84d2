"""Dedicated I/O thread with a persistent asyncio event loop.

The telemetry client keeps TimerHandles and a websockets task on whatever loop
it first connects from, and the uvicorn server for the dashboard needs a loop
that outlives any single request. Both therefore share this one loop. Textual
runs its own loop on the main thread, so the TUI never touches the client
directly: it submits coroutines or schedules plain calls here, and the client
posts back through App.post_message(), which is thread-safe.
"""

import asyncio
import concurrent.futures
import threading
import traceback
from typing import Optional


class IoThread:
    """Owns the loop the client, its sockets and the web server run on."""

    def __init__(self, name: str = "io"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        return self._loop

    def start(self):
        """Spawn the daemon thread and block until its loop is running."""
        ready = threading.Event()

        def _run():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            loop.set_exception_handler(self._exception_handler)
            self._loop = loop
            loop.call_soon(ready.set)
            loop.run_forever()
            # Let cancelled socket tasks and uvicorn unwind before closing
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(
                    asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

        self._thread = threading.Thread(target=_run, daemon=True, name=self.name)
        self._thread.start()
        ready.wait()

    def submit(self, coro) -> concurrent.futures.Future:
        """Run a coroutine (e.g. web_server.serve()) on the I/O loop."""
        if self._loop is None:
            raise RuntimeError("IoThread not started")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def call(self, fn, *args) -> concurrent.futures.Future:
        """Run a plain callable such as client.connect on the I/O loop.

        TelemetryClient methods are synchronous and must run on the loop that
        owns their timers; the returned future carries the result or exception.
        """
        if self._loop is None:
            raise RuntimeError("IoThread not started")
        future = concurrent.futures.Future()

        def _invoke():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except Exception as e:
                future.set_exception(e)

        self._loop.call_soon_threadsafe(_invoke)
        return future

    def stop(self, timeout: float = 5.0):
        """Stop the loop, cancel what is still running on it and join the thread."""
        if self._loop and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread:
            self._thread.join(timeout=timeout)
        self._loop = None
        self._thread = None

    def _exception_handler(self, loop, context):
        msg = context.get("message", "Unhandled exception on the I/O loop")
        exc = context.get("exception")
        if exc:
            tb = ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            print(f"[{self.name.upper()} THREAD ERROR] {msg}\n{tb}")
        else:
            print(f"[{self.name.upper()} THREAD ERROR] {msg}")
