"""Output rendering for the pipewright CLI.

Purpose
- Render human-readable command output: ``rich`` tables and styled status
  words when color is allowed, deterministic plain text otherwise.
- Respect the ``NO_COLOR`` environment variable and the ``--no-color`` flag.

``--json`` output never passes through this module.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final, TextIO

from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from collections.abc import Sequence

_STATUS_STYLES: Final[dict[str, str]] = {
    "succeeded": "bold green",
    "success": "green",
    "healthy": "green",
    "pass": "green",
    "running": "cyan",
    "deploying": "cyan",
    "pending": "dim",
    "idle": "dim",
    "skipped": "yellow",
    "warn": "yellow",
    "degraded": "yellow",
    "cancelled": "magenta",
    "rolled_back": "magenta",
    "failed": "bold red",
    "failure": "red",
    "block": "bold red",
}


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Thin CLI output renderer.

    With color disabled every method writes plain, column-aligned text so output
    stays stable for scripts and snapshot tests.
    """

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._stream)
        self._console = Console(file=self._stream, highlight=False) if self._color else None

    @property
    def color(self) -> bool:
        return self._color

    def _write(self, line: str = "") -> None:
        self._stream.write(line + "\n")

    def heading(self, text: str) -> None:
        if self._console is not None:
            self._console.print(Text(text, style="bold"))
            return
        self._write(text)

    def kv(self, key: str, value: object) -> None:
        if self._console is not None:
            line = Text(f"{key}: ", style="bold")
            line.append(str(value))
            self._console.print(line)
            return
        self._write(f"{key}: {value}")

    def status(self, key: str, value: str) -> None:
        """Key/value line whose value is styled by its status word."""

        if self._console is not None:
            line = Text(f"{key}: ", style="bold")
            line.append(value, style=_STATUS_STYLES.get(value, ""))
            self._console.print(line)
            return
        self._write(f"{key}: {value}")

    def text(self, line: str) -> None:
        if self._console is not None:
            self._console.print(Text(line))
            return
        self._write(line)

    def blank(self) -> None:
        self._write()

    def section(self, title: str) -> None:
        self.blank()
        self.heading(title)

    def warning(self, text: str) -> None:
        if self._console is not None:
            self._console.print(Text(f"  Warning: {text}", style="yellow"))
            return
        self._write(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self.text(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
        status_column: int | None = None,
    ) -> None:
        """Print a table; ``status_column`` cells are styled by status word."""

        if not rows:
            return
        if self._console is not None:
            table = Table(title=title, title_justify="left", header_style="bold")
            for header in headers:
                table.add_column(header)
            for row in rows:
                cells = [Text(str(cell)) for cell in row]
                if status_column is not None and status_column < len(cells):
                    word = str(row[status_column])
                    cells[status_column] = Text(word, style=_STATUS_STYLES.get(word, ""))
                table.add_row(*cells)
            self._console.print(table)
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        self._write(f"  {_pad(list(headers))}")
        self._write(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            self._write(f"  {_pad([str(cell) for cell in row])}")

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self.text(f"  $ {step}")


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
