"""
Terminal output and key input for interactive sessions.

Progress, port tables and failure detail go through rich; structured logs
stay on stderr via structlog. ``KeyReader`` puts the terminal in cbreak
mode so single key presses arrive without Enter, and restores it on exit.
"""

from __future__ import annotations

import asyncio
import os
import sys
import termios
import tty
from collections.abc import AsyncIterator
from typing import IO

from rich.console import Console
from rich.live import Live
from rich.markup import escape
from rich.table import Table

from stackrun.models import RunContext
from stackrun.session import CycleResult

console = Console()
err_console = Console(stderr=True)

FAILED_TO_START = "Failed to start"
KEY_HINT = "Press 'r' to refresh, 'q' to quit."


# ── Progress ─────────────────────────────────────────────────────────────


class LiveProgress:
    """``ProgressCallback`` showing the latest message of every task.

    The live table starts on the first update and is closed by :meth:`stop`
    before a cycle's results are printed.
    """

    def __init__(self, target: Console | None = None) -> None:
        self.console = target or console
        self.messages: dict[str, str] = {}
        self._live: Live | None = None

    def __call__(self, name: str, message: str) -> None:
        self.messages[name] = message
        if self._live is None:
            self._live = Live(self._render(), console=self.console, transient=True, refresh_per_second=8)
            self._live.start()
        else:
            self._live.update(self._render())

    def _render(self) -> Table:
        table = Table(show_header=False, box=None, pad_edge=False)
        table.add_column("task", style="cyan", no_wrap=True)
        table.add_column("status", overflow="ellipsis", no_wrap=True)
        for name, message in self.messages.items():
            table.add_row(escape(name), escape(message))
        return table

    def stop(self) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None
        self.messages.clear()


# ── Cycle results ────────────────────────────────────────────────────────


def port_table(context: RunContext) -> Table:
    """Function to local URL table, failed functions marked."""
    table = Table(title="Running functions", pad_edge=False)
    table.add_column("Function", style="cyan")
    table.add_column("Port")
    for name in sorted({*context.ports, *context.failures}):
        if name in context.ports:
            port = context.ports[name]
            table.add_row(name, f"http://localhost:{port}")
        else:
            table.add_row(name, f"[red]{FAILED_TO_START}[/red]")
    return table


def service_table(context: RunContext) -> Table:
    """Service to local URL table, failed services marked."""
    table = Table(title="Running services", pad_edge=False)
    table.add_column("Service", style="cyan")
    table.add_column("Port")
    for name in sorted({*context.services, *context.service_failures}):
        if name in context.services:
            table.add_row(name, f"http://localhost:{context.services[name].port}")
        else:
            table.add_row(name, f"[red]{FAILED_TO_START}[/red]")
    return table


def print_failures(failures: dict[str, BaseException], target: Console | None = None) -> None:
    """Print per-function failure detail."""
    out = target or err_console
    for name, error in failures.items():
        out.print(f"[bold red]✗ {escape(name)}[/bold red]: {escape(str(error))}")


def print_cycle(result: CycleResult, target: Console | None = None) -> None:
    """Render a finished cycle: failure detail, aggregate message, port tables."""
    out = target or console
    if result.failures:
        print_failures(result.failures, out)
    if result.error is not None:
        out.print(f"[bold red]Error[/bold red]: {escape(result.error.message)}")
    if result.context is not None and (result.context.ports or result.context.failures):
        out.print(port_table(result.context))
    if result.context is not None and (result.context.services or result.context.service_failures):
        out.print(service_table(result.context))
    out.print(f"[dim]{KEY_HINT}[/dim]")


# ── Keys ─────────────────────────────────────────────────────────────────


class KeyReader:
    """Async iterator over single key presses from a terminal.

    Example:
        async with KeyReader() as keys:
            async for key in keys:
                ...
    """

    def __init__(self, stream: IO[str] | None = None) -> None:
        self.stream = stream or sys.stdin
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._saved: list | None = None
        self._fd: int | None = None

    async def __aenter__(self) -> KeyReader:
        self._fd = self.stream.fileno()
        if self.stream.isatty():
            self._saved = termios.tcgetattr(self._fd)
            # ISIG stays on: Ctrl-C raises SIGINT and cancels the session
            tty.setcbreak(self._fd)
        asyncio.get_running_loop().add_reader(self._fd, self._on_readable)
        return self

    async def __aexit__(self, *args) -> None:
        if self._fd is None:
            return
        asyncio.get_running_loop().remove_reader(self._fd)
        if self._saved is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved)
            self._saved = None
        self._fd = None

    def _on_readable(self) -> None:
        data = os.read(self._fd, 32).decode("utf-8", errors="ignore")
        if not data:
            # EOF reads as quit
            asyncio.get_running_loop().remove_reader(self._fd)
            data = "q"
        for key in data:
            self._queue.put_nowait(key)

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        return await self._queue.get()


__all__ = [
    "FAILED_TO_START",
    "KeyReader",
    "LiveProgress",
    "console",
    "err_console",
    "port_table",
    "print_cycle",
    "print_failures",
    "service_table",
]
