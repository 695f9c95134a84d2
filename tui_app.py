"""Textual TUI application for the PlantGuardian gateway."""

import json

from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.message import Message
from textual.widgets import Header, Footer, Input, RichLog, Sparkline, Static
from textual import on

from constants import THRESHOLD_MAX, THRESHOLD_MIN
from device_state import ConnectionState, Endpoint, moisture_status
from io_thread import IoThread
from telemetry_client import ClientListener, TelemetryClient


class _TuiBridge(ClientListener):
    """Runs on the I/O thread; turns client events into Textual messages."""

    def __init__(self, app: "PlantGuardianApp"):
        self.app = app

    def on_state_change(self, state: ConnectionState):
        client = self.app.client
        self.app.post_message(self.app.StateMsg(state, client.attempt))

    def on_sample(self, value: int):
        self.app.post_message(
            self.app.SampleMsg(value, self.app.client.window.values()))

    def on_error(self, message: str):
        self.app.post_message(self.app.ErrorMsg(message))


class PlantGuardianApp(App):
    """Textual TUI for the moisture sensor."""

    TITLE = "PlantGuardian"

    CSS = """
    #sidebar {
        width: 30;
        dock: left;
        border-right: solid $accent;
        padding: 1;
        background: $surface;
    }
    #history {
        height: 6;
        border: solid $primary;
    }
    #history-stats {
        height: 1;
        padding: 0 1;
    }
    #log {
        height: 1fr;
        border: solid $primary;
    }
    #cmd-input {
        dock: bottom;
    }
    """

    BINDINGS = [
        ("f2", "toggle_debug", "Debug"),
        ("f3", "clear_log", "Clear"),
        ("f5", "reconnect", "Reconnect"),
        ("escape", "focus_input", "Input"),
    ]

    # ---- Custom Messages ----

    class SampleMsg(Message):
        """A moisture reading arrived from the device."""
        def __init__(self, value: int, history: list[int]):
            super().__init__()
            self.value = value
            self.history = history

    class StateMsg(Message):
        """Connection state changed."""
        def __init__(self, state: ConnectionState, attempt: int):
            super().__init__()
            self.state = state
            self.attempt = attempt

    class ErrorMsg(Message):
        """Connection error or failed attempt."""
        def __init__(self, message: str):
            super().__init__()
            self.message = message

    class LogMsg(Message):
        """Generic log line for the RichLog panel."""
        def __init__(self, text: str, style: str = ""):
            super().__init__()
            self.text = text
            self.style = style

    # ---- Init ----

    def __init__(self, client: TelemetryClient, web_port: int = None):
        super().__init__()
        self.client = client
        self.client.app = self  # Back-reference for log routing
        self.client.add_listener(_TuiBridge(self))
        self.web_port = web_port
        self.debug_mode = False
        self._state = client.state
        self._attempt = client.attempt
        self._latest = client.latest
        self._history = client.window.values()
        self._io = IoThread()

    # ---- Layout ----

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal():
            yield Static("Starting...", id="sidebar")
            with Vertical():
                yield Sparkline(self._history, summary_function=max, id="history")
                yield Static("", id="history-stats")
                yield RichLog(id="log", wrap=True, highlight=True, markup=True)
        yield Input(placeholder="Enter command (type 'help' for list)", id="cmd-input")
        yield Footer()

    def on_mount(self) -> None:
        """Start the I/O thread and the first connection attempt."""
        self.query_one("#cmd-input", Input).focus()
        self._io.start()
        if self.web_port:
            import web_server
            web_server.set_client(self.client, self._io.loop)
            self._io.submit(web_server.serve(self.web_port))
            self.log_message(f"Web dashboard on port {self.web_port}")
        self._io.call(self.client.connect)
        self.update_status()

    # ---- Command Handling ----

    @on(Input.Submitted, "#cmd-input")
    def on_cmd_submitted(self, event: Input.Submitted) -> None:
        """Handle command input."""
        cmd = event.value.strip()
        event.input.value = ""
        if cmd:
            self.log_message(f"> {cmd}", style="bold cyan")
            self.dispatch_command(cmd)

    def dispatch_command(self, raw_cmd: str) -> None:
        """Parse a user command and run it on the I/O thread."""
        client = self.client
        io = self._io
        parts = raw_cmd.split(None, 1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""
        try:
            if cmd in ['q', 'quit', 'exit']:
                self.exit()

            elif cmd == 'host':
                if not arg:
                    self.log_message("Usage: host <ip address>")
                    return
                endpoint = Endpoint(host=arg, port=client.endpoint.port)
                io.call(client.configure, endpoint)
                self.log_message("Use 'save' to reconnect with the new address")

            elif cmd == 'port':
                port = int(arg)
                if not 1 <= port <= 65535:
                    self.log_message("Port must be 1-65535")
                    return
                io.call(client.configure, Endpoint(host=client.endpoint.host, port=port))

            elif cmd == 'threshold':
                value = int(arg)
                if not THRESHOLD_MIN <= value <= THRESHOLD_MAX:
                    self.log_message(
                        f"Threshold must be {THRESHOLD_MIN}-{THRESHOLD_MAX}")
                    return
                io.call(client.set_threshold, value)
                self.notify(f"Threshold: {value}", severity="information")

            elif cmd in ['save', 'reconnect']:
                self.action_reconnect()

            elif cmd == 'disconnect':
                io.call(client.disconnect)

            elif cmd == 'buzzer':
                if arg not in ('on', 'off'):
                    self.log_message("Usage: buzzer on|off")
                    return
                io.call(client.test_buzzer, arg == 'on')

            elif cmd == 'raw':
                command = json.loads(arg)
                if not isinstance(command, dict):
                    self.log_message("raw expects a JSON object")
                    return
                io.call(client.send, command)

            elif cmd == 'status':
                self._show_status()

            elif cmd in ['d', 'debug']:
                self.action_toggle_debug()

            elif cmd in ['clear', 'cls']:
                self.action_clear_log()

            elif cmd == 'help':
                self._show_help()

            else:
                self.log_message("Unknown command. Type 'help' for list.")

        except (ValueError, IndexError):
            self.log_message("Invalid value or missing argument")
        except Exception as e:
            self.log_message(f"Error: {e}", style="bold red")

        self.update_status()

    # ---- Message Handlers ----
    # Textual auto-discovers handlers named on_<namespace>_<message_name>
    # where namespace = snake_case of outermost widget class.

    def on_plant_guardian_app_sample_msg(self, msg: SampleMsg) -> None:
        """Update the reading, the sparkline and the stats line."""
        self._latest = msg.value
        self._history = msg.history
        self.query_one("#history", Sparkline).data = msg.history
        if msg.history:
            avg = sum(msg.history) / len(msg.history)
            stats = (f"min {min(msg.history)}  avg {avg:.0f}  max {max(msg.history)}  "
                     f"({len(msg.history)} samples)")
        else:
            stats = ""
        self.query_one("#history-stats", Static).update(stats)
        self.update_status()
        if self.debug_mode:
            self.query_one("#log", RichLog).write(f"[dim]<< {msg.value}[/dim]")

    def on_plant_guardian_app_state_msg(self, msg: StateMsg) -> None:
        self._state = msg.state
        self._attempt = msg.attempt
        self.update_status()

    def on_plant_guardian_app_error_msg(self, msg: ErrorMsg) -> None:
        self.notify(msg.message, title="Connection Failed", severity="error")

    def on_plant_guardian_app_log_msg(self, msg: LogMsg) -> None:
        """Handle generic log messages."""
        log = self.query_one("#log", RichLog)
        if msg.style:
            log.write(f"[{msg.style}]{msg.text}[/{msg.style}]")
        else:
            log.write(msg.text)

    # ---- UI Updates ----

    def update_status(self) -> None:
        """Refresh the sidebar with current state."""
        client = self.client
        lines = ["[bold]Status[/bold]", ""]

        if self._state == ConnectionState.CONNECTED:
            lines.append("[green]Connected[/green]")
        elif self._state == ConnectionState.CONNECTING:
            lines.append(f"[yellow]Connecting... "
                         f"({self._attempt}/{client.retry.max_attempts})[/yellow]")
        elif self._state == ConnectionState.FAILED:
            lines.append("[red]Failed[/red]")
        else:
            lines.append("[red]Disconnected[/red]")
        lines.append(f"{client.endpoint}")

        lines.append("")
        lines.append("[bold]Moisture[/bold]")
        lines.append(f"Current:   {self._latest if self._latest is not None else '--'}")
        lines.append(f"Threshold: {client.threshold}")
        verdict = moisture_status(self._latest, client.threshold)
        if verdict == "NEEDS WATER":
            lines.append(f"[bold red]{verdict}[/bold red]")
        elif verdict == "HEALTHY":
            lines.append(f"[bold green]{verdict}[/bold green]")
        else:
            lines.append(f"[dim]{verdict}[/dim]")

        if self.debug_mode:
            lines.append("\n[yellow]DEBUG ON[/yellow]")

        try:
            self.query_one("#sidebar", Static).update("\n".join(lines))
        except Exception:
            pass

    def _show_status(self):
        client = self.client
        self.log_message(
            f"{self._state.value} to {client.endpoint.url}, attempt "
            f"{self._attempt}/{client.retry.max_attempts}, threshold {client.threshold}, "
            f"{len(self._history)} sample(s) in window")

    def _show_help(self):
        """Display help text in the log."""
        help_text = (
            "[bold]--- Device ---[/bold]\n"
            "  host <ip>        Set device address (applies on reconnect)\n"
            "  port <n>         Set device port (applies on reconnect)\n"
            "  threshold <n>    Set alert threshold and push it to the device\n"
            "  save / reconnect Reconnect with current settings (or F5)\n"
            "  disconnect       Close the connection, no auto-retry\n"
            "  buzzer on|off    Test the device buzzer\n"
            "  raw <json>       Send a raw JSON command\n"
            "  status           Show connection summary\n"
            "\n"
            "[bold]--- Keys / Misc ---[/bold]\n"
            "  debug / d        Toggle debug mode (or F2)\n"
            "  clear / cls      Clear log (or F3)\n"
            "  Esc              Focus input\n"
            "  q / quit         Quit"
        )
        log = self.query_one("#log", RichLog)
        log.write(help_text)

    # ---- Actions ----

    def action_toggle_debug(self) -> None:
        """Toggle debug mode."""
        self.debug_mode = not self.debug_mode
        self.notify(f"Debug: {'ON' if self.debug_mode else 'OFF'}")
        self.update_status()

    def action_clear_log(self) -> None:
        """Clear the log panel."""
        self.query_one("#log", RichLog).clear()

    def action_reconnect(self) -> None:
        """Manual reconnect: resets the retry counter."""
        self._io.call(self.client.connect)

    def action_focus_input(self) -> None:
        """Focus the command input."""
        self.query_one("#cmd-input", Input).focus()

    def log_message(self, text: str, style: str = ""):
        """Convenience: post a LogMsg."""
        self.post_message(self.LogMsg(text, style))

    def on_unmount(self) -> None:
        """Close the link and stop the I/O thread when the app exits."""
        if self._io.loop:
            try:
                self._io.call(self.client.disconnect).result(timeout=3.0)
            except Exception:
                pass
            self._io.stop()
