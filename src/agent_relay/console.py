"""Terminal chat surface used by the ``relay`` CLI."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

import click

from agent_relay.delivery import ChatSurface, PlatformLimits
from agent_relay.escalation import user_message
from agent_relay.media import MediaFile
from agent_relay.stream import AssistantText, FinalResult, StreamEvent, ToolResultText, ToolUseNotice

_DIM = "\033[2m"
_CYAN = "\033[36m"
_RED = "\033[31m"
_RESET = "\033[0m"

CONSOLE_LIMITS = PlatformLimits(message_length=100_000, file_size=1024 * 1024 * 1024, file_count=50)


def _get_terminal_width() -> int:
    try:
        return os.get_terminal_size().columns
    except OSError:
        return 80


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + "…"


class ConsoleSurface(ChatSurface):
    """Prints replies to stdout and agent activity to stderr.

    Files are listed, not uploaded, so they are never deleted. Each file is
    announced once per session.
    """

    name = "console"
    limits = CONSOLE_LIMITS
    uploads_files = False

    def __init__(self, *, verbose: bool = True, is_tty: bool | None = None) -> None:
        self.verbose = verbose
        self.is_tty = sys.stderr.isatty() if is_tty is None else is_tty
        self._announced: set[Path] = set()

    def _style(self, text: str, color: str) -> str:
        return f"{color}{text}{_RESET}" if self.is_tty else text

    async def send_text(self, context: Any, text: str) -> None:
        click.echo(text)

    async def send_files(self, context: Any, files: list[MediaFile], caption: str) -> None:
        fresh = [f for f in files if f.path not in self._announced]
        if not fresh:
            return
        click.echo(caption)
        for f in fresh:
            self._announced.add(f.path)
            click.echo(f"  {f.path} ({f.size} bytes)")

    async def send_error(self, context: Any, error: BaseException) -> None:
        click.echo(self._style(f"error: {user_message(error)}", _RED), err=True)

    async def stream_event(self, context: Any, event: StreamEvent) -> None:
        if not self.verbose:
            return
        width = _get_terminal_width()
        if isinstance(event, ToolUseNotice):
            click.echo(self._style(f"  {event.text}", _CYAN), err=True)
        elif isinstance(event, ToolResultText):
            first = event.text.strip().split("\n")[0]
            click.echo(self._style(f"    ⎿ {_truncate(first, width - 8)}", _DIM), err=True)
        elif isinstance(event, AssistantText):
            text = event.text.strip()
            if text:
                click.echo(self._style(_truncate(" ".join(text.split()), width - 2), _DIM), err=True)
        elif isinstance(event, FinalResult):
            click.echo(self._style("  done", _DIM), err=True)
