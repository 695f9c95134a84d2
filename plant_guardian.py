#!/usr/bin/env python3
"""
PlantGuardian gateway: live soil-moisture dashboard for the ESP32 sensor

Usage:
    python plant_guardian.py                          # TUI interactive mode (default)
    python plant_guardian.py --host 192.168.0.50      # Different sensor address
    python plant_guardian.py --threshold 800          # Alert threshold pushed on connect
    python plant_guardian.py --web                    # TUI + web dashboard
    python plant_guardian.py --web-only               # Web dashboard only, no TUI
    python plant_guardian.py --no-tui                 # Plain CLI: print readings

The sensor runs a WebSocket server (default port 81) that pushes one integer
reading per frame and accepts JSON commands such as
{"type": "threshold", "value": 750} and {"type": "buzzer", "state": true}.
"""

import argparse
import asyncio
import sys

from constants import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_THRESHOLD,
    THRESHOLD_MAX,
    THRESHOLD_MIN,
)
from device_state import ConnectionState, Endpoint, moisture_status
from telemetry_client import ClientListener, TelemetryClient

# Check for textual
_HAS_TEXTUAL = False
try:
    from tui_app import PlantGuardianApp
    _HAS_TEXTUAL = True
except ImportError:
    print("Note: textual not available. Install with: pip install textual")
    print("      Falling back to plain CLI mode.\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="PlantGuardian soil-moisture gateway")
    parser.add_argument("--host", type=str, default=DEFAULT_HOST,
                        help=f"Sensor IP address (default {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT,
                        help=f"Sensor WebSocket port (default {DEFAULT_PORT})")
    parser.add_argument("--threshold", type=int, default=DEFAULT_THRESHOLD,
                        help=f"Moisture alert threshold (default {DEFAULT_THRESHOLD})")
    parser.add_argument("--no-tui", action="store_true",
                        help="Use plain CLI mode instead of TUI")
    parser.add_argument("--web", action="store_true",
                        help="Enable web dashboard alongside TUI")
    parser.add_argument("--web-only", action="store_true",
                        help="Web dashboard only, no TUI")
    parser.add_argument("--web-port", type=int, default=8000,
                        help="Web dashboard port (default 8000)")
    parser.add_argument("--debug", action="store_true",
                        help="Show debug log lines (sent commands, ignored frames)")
    return parser


def parse_args(argv=None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not THRESHOLD_MIN <= args.threshold <= THRESHOLD_MAX:
        parser.error(f"Invalid threshold {args.threshold}: use "
                     f"{THRESHOLD_MIN}-{THRESHOLD_MAX}")
    if not 1 <= args.port <= 65535:
        parser.error(f"Invalid port {args.port}")
    return args


def main(argv=None):
    """Entry point: decides between TUI, web-only and CLI mode."""
    args = parse_args(argv)

    client = TelemetryClient(
        endpoint=Endpoint(host=args.host, port=args.port),
        threshold=args.threshold,
    )
    client.debug_mode = args.debug

    if args.web_only:
        _run_web_only(args, client)
        return

    # Textual's app.run() manages its own event loop, so call it directly (not from asyncio.run)
    if _HAS_TEXTUAL and not args.no_tui:
        app = PlantGuardianApp(client, web_port=args.web_port if args.web else None)
        app.debug_mode = args.debug
        app.run()
        return

    asyncio.run(_run_cli(client))


class _PrintListener(ClientListener):
    """Plain CLI output for readings and state changes."""

    def __init__(self, client: TelemetryClient):
        self.client = client

    def on_state_change(self, state: ConnectionState):
        if state == ConnectionState.CONNECTING:
            print(f"[{state.value}] ({self.client.attempt}/"
                  f"{self.client.retry.max_attempts})")
        else:
            print(f"[{state.value}]")

    def on_sample(self, value: int):
        verdict = moisture_status(value, self.client.threshold)
        print(f"Moisture: {value}  ({verdict})")

    def on_error(self, message: str):
        print(f"!! {message}")


async def _run_cli(client: TelemetryClient):
    """Print readings until Ctrl+C."""
    print("\n" + "=" * 50)
    print("  PlantGuardian Gateway")
    print("=" * 50)
    print(f"  Sensor:    {client.endpoint.url}")
    print(f"  Threshold: {client.threshold}")
    print()

    client.add_listener(_PrintListener(client))
    client.connect()
    try:
        while True:
            await asyncio.sleep(1)
    finally:
        client.disconnect()


def _run_web_only(args, client: TelemetryClient):
    """Run the client with the web dashboard only (no TUI)."""
    import web_server
    from io_thread import IoThread

    io = IoThread()
    io.start()
    web_server.set_client(client, io.loop)

    async def startup_and_serve():
        client.connect()
        await web_server.serve(args.web_port)

    print("\n" + "=" * 50)
    print("  PlantGuardian Gateway - Web Only Mode")
    print("=" * 50)
    print(f"  Sensor:    {client.endpoint.url}")
    print(f"  Dashboard: http://0.0.0.0:{args.web_port}")
    print(f"  API:       http://0.0.0.0:{args.web_port}/api/state")
    print(f"  WebSocket: ws://0.0.0.0:{args.web_port}/ws")
    print()

    future = io.submit(startup_and_serve())
    try:
        future.result()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        io.call(client.disconnect)
        io.stop()


if __name__ == "__main__":
    try:
        main(sys.argv[1:])
    except KeyboardInterrupt:
        print("\nGoodbye!")
