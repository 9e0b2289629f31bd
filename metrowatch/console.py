"""Interactive console host.

Renders supervisor events with rich and reads one-line commands from
stdin. The reload trigger is fired by the ``r`` command, the way a
bundler's own terminal UI does it.
"""
from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Coroutine
from typing import Any

from rich.console import Console
from rich.markup import escape

from metrowatch.adapters.event_bus import EventBus
from metrowatch.adapters.events import (
    ErrorReported,
    ProcessOutput,
    RestartOffered,
    StatusChanged,
    SupervisorEvent,
    TunnelQuestion,
)
from metrowatch.adapters.reporting import BusPrompter
from metrowatch.engine.controller import SessionController
from metrowatch.engine.errors import AlreadyActiveError, StartAbortedError, SupervisorError
from metrowatch.engine.models import TunnelBehavior
from metrowatch.engine.root_source import RootSource
from metrowatch.engine.triggers import GLOBAL_RELOAD_HOTKEY, TriggerRegistry

logger = logging.getLogger(__name__)

HELP_TEXT = """\
  s, start      start the bundler at the current root
  x, stop       stop the bundler
  R, restart    restart the bundler
  r, reload     reload connected apps
  cd PATH       change the working root
  y / n         answer the pending question or restart offer
  status        show the current status
  stats [RANGE] tracking event counts, e.g. stats 7d (default 24h)
  q, quit       stop and exit"""

_STATUS_STYLES = {
    "stopped": "red",
    "starting": "yellow",
    "running": "green",
    "stopping": "yellow",
}

_LEVEL_STYLES = {
    "debug": "dim",
    "info": "",
    "warning": "yellow",
    "error": "bold red",
}


class ConsoleHost:
    """Drives a SessionController from a terminal."""

    def __init__(
        self,
        controller: SessionController,
        root_source: RootSource,
        bus: EventBus,
        prompter: BusPrompter,
        triggers: TriggerRegistry,
        *,
        console: Console | None = None,
        trigger_id: str = GLOBAL_RELOAD_HOTKEY,
    ) -> None:
        self._controller = controller
        self._root_source = root_source
        self._bus = bus
        self._prompter = prompter
        self._triggers = triggers
        self._console = console or Console(highlight=False)
        self._trigger_id = trigger_id
        self._actions: set[asyncio.Task] = set()

    async def run(self, autostart: TunnelBehavior | None = None) -> None:
        """Run until the user quits or stdin closes."""
        renderer = asyncio.create_task(self._render_events())
        self._console.print(
            f"[bold]metrowatch[/bold] at {escape(str(self._root_source.value))} "
            "(type [bold]help[/bold] for commands)"
        )
        if autostart is not None:
            self._spawn(self._controller.start(autostart), "start")
        try:
            await self._command_loop()
        finally:
            await self._controller.dispose()
            for task in list(self._actions):
                task.cancel()
            await asyncio.gather(*self._actions, return_exceptions=True)
            self._bus.close()
            renderer.cancel()
            await asyncio.gather(renderer, return_exceptions=True)

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        try:
            await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), sys.stdin,
            )
        except (ValueError, OSError):
            # Regular files cannot be watched; read them in a worker thread.
            logger.debug("stdin is not a pipe or tty; reading in executor")
            reader = None
        while True:
            if reader is not None:
                raw = await reader.readline()
                line = raw.decode("utf-8", errors="replace")
            else:
                line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            if not await self.handle_command(line.strip()):
                break

    async def handle_command(self, command: str) -> bool:
        """Run one command. Returns False when the host should exit."""
        if not command:
            return True
        word, _, arg = command.partition(" ")
        lowered = word.lower()

        if lowered in {"q", "quit", "exit"}:
            return False
        if word == "R" or lowered == "restart":
            self._spawn(self._controller.restart(), "restart")
        elif word == "r" or lowered == "reload":
            if not self._triggers.fire(self._trigger_id):
                self._console.print("[yellow]Reload unavailable: bundler is not running[/yellow]")
        elif lowered in {"s", "start"}:
            self._spawn(self._controller.start(), "start")
        elif lowered in {"x", "stop"}:
            self._spawn(self._controller.stop(), "stop")
        elif lowered in {"y", "yes"}:
            self._answer(True)
        elif lowered in {"n", "no"}:
            self._answer(False)
        elif lowered in {"cd", "root"}:
            if not arg.strip():
                self._console.print("[yellow]usage: cd PATH[/yellow]")
            else:
                self._root_source.set(arg.strip())
                self._console.print(f"Working root: {escape(arg.strip())}")
        elif lowered == "status":
            self._print_status()
        elif lowered == "stats":
            await self._print_stats(arg.strip() or "24h")
        elif lowered in {"h", "help", "?"}:
            self._console.print(HELP_TEXT)
        else:
            self._console.print(f"[yellow]Unknown command: {escape(command)}[/yellow]")
        return True

    def _answer(self, accepted: bool) -> None:
        if self._prompter.pending_questions():
            self._prompter.answer(None, accepted)
        elif self._prompter.pending_offers():
            if accepted:
                self._spawn(self._prompter.accept_offer(), "start")
            else:
                self._prompter.dismiss_offers()
        else:
            self._console.print("Nothing to answer.")

    def _print_status(self) -> None:
        session = self._controller.session
        status = self._controller.status.value
        style = _STATUS_STYLES.get(status, "")
        parts = [f"[{style}]{status}[/{style}]" if style else status]
        parts.append(f"root={escape(str(self._root_source.value))}")
        if session is not None:
            parts.append(f"tunnel={'yes' if session.tunnel is not None else 'no'}")
            parts.append(
                f"reload={'yes' if session.trigger_registration is not None else 'no'}"
            )
        self._console.print(" ".join(parts))

    async def _print_stats(self, time_range: str) -> None:
        telemetry = self._controller.telemetry
        if telemetry is None:
            self._console.print("[yellow]Tracking is off (set telemetry_db_path)[/yellow]")
            return
        summary = await asyncio.to_thread(telemetry.get_summary, time_range)
        if not summary:
            self._console.print(f"No tracking events in the last {escape(time_range)}.")
            return
        for name, total in summary.items():
            self._console.print(f"{escape(name):<16}{total:>6}")

    def _spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        task = asyncio.create_task(self._run_action(coro, label))
        self._actions.add(task)
        task.add_done_callback(self._actions.discard)

    async def _run_action(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        try:
            await coro
        except AlreadyActiveError as exc:
            self._console.print(f"[yellow]{escape(str(exc))}[/yellow]")
        except StartAbortedError:
            logger.info("%s aborted", label)
        except SupervisorError as exc:
            # Already reported through the bus.
            logger.debug("%s failed: %s", label, exc)

    async def _render_events(self) -> None:
        async for event in self._bus.consume():
            self.render(event)

    def render(self, event: SupervisorEvent) -> None:
        if isinstance(event, ProcessOutput):
            style = _LEVEL_STYLES.get(event.level, "")
            text = escape(event.text)
            self._console.print(f"[{style}]{text}[/{style}]" if style else text)
        elif isinstance(event, StatusChanged):
            style = _STATUS_STYLES.get(event.current, "")
            self._console.print(f"[{style}]● Metro {event.current}[/{style}]")
        elif isinstance(event, ErrorReported):
            style = "yellow" if event.kind == "port_busy" else "bold red"
            self._console.print(f"[{style}]{escape(event.detail)}[/{style}]")
        elif isinstance(event, TunnelQuestion):
            ports = ", ".join(str(p) for p in event.ports)
            self._console.print(
                f"Open a tunnel to {escape(str(event.project_root))} "
                f"for port(s) {ports}? [bold]y[/bold]/[bold]n[/bold]"
            )
        elif isinstance(event, RestartOffered):
            self._console.print(
                f"[yellow]{escape(event.message)}[/yellow] "
                f"Start at {escape(str(event.project_root))}? [bold]y[/bold]/[bold]n[/bold]"
            )
