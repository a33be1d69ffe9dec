"""Console output built on Rich.

Everything the tools report goes through the global ``console``:
detector diagnostics at container start, build progress at image
build time, and tables for the interactive commands.

Two streams are used. stdout carries results (rendered config files,
the reconciled preload list, tables); stderr carries anything an
entrypoint script must not capture: warnings, errors, hints and the
resource detection trail.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from rich import box
from rich.console import Console as RichConsole
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table


class Verbosity(IntEnum):
    """Output verbosity levels."""
    QUIET = 0    # Errors and warnings only
    NORMAL = 1   # Standard output
    VERBOSE = 2  # Additional details
    DEBUG = 3    # Everything, including commands run


@dataclass(frozen=True)
class _Level:
    prefix: str
    min_verbosity: Verbosity
    stderr: bool = False
    suffix: str = ""


_LEVELS = {
    "info": _Level("[green][INFO][/green] ", Verbosity.NORMAL),
    "success": _Level("[green][OK][/green] ", Verbosity.NORMAL),
    "step": _Level("[blue]->[/blue] ", Verbosity.NORMAL),
    "verbose": _Level("[dim]", Verbosity.VERBOSE, suffix="[/dim]"),
    "debug": _Level("[cyan][DEBUG][/cyan] ", Verbosity.DEBUG),
    "detect": _Level("[magenta][DETECT][/magenta] ", Verbosity.NORMAL, stderr=True),
    "warn": _Level("[yellow][WARN][/yellow] ", Verbosity.QUIET, stderr=True),
    "error": _Level("[red][ERROR][/red] ", Verbosity.QUIET, stderr=True),
    "hint": _Level("[cyan]Hint:[/cyan] ", Verbosity.QUIET, stderr=True),
}


class Console:
    """Leveled console output for the azpg commands."""

    def __init__(self) -> None:
        self.verbosity = Verbosity.NORMAL
        self.dry_run = False
        self.no_color = False
        self._build_consoles()

    def _build_consoles(self) -> None:
        self._console = RichConsole(highlight=False, no_color=self.no_color)
        self._err_console = RichConsole(stderr=True, highlight=False, no_color=self.no_color)

    def configure(
        self,
        verbosity: int = 1,
        dry_run: bool = False,
        no_color: bool = False,
    ) -> None:
        """Apply the global CLI flags."""
        self.verbosity = Verbosity(max(Verbosity.QUIET, min(verbosity, Verbosity.DEBUG)))
        self.dry_run = dry_run
        if no_color != self.no_color:
            self.no_color = no_color
            self._build_consoles()

    def _emit(self, level: str, message: str) -> None:
        spec = _LEVELS[level]
        if self.verbosity < spec.min_verbosity:
            return
        # Messages carry user data (paths, env values); never treat it as markup
        target = self._err_console if spec.stderr else self._console
        target.print(f"{spec.prefix}{escape(message)}{spec.suffix}")

    def info(self, message: str) -> None:
        self._emit("info", message)

    def success(self, message: str) -> None:
        self._emit("success", message)

    def step(self, message: str) -> None:
        self._emit("step", message)

    def verbose(self, message: str) -> None:
        """Detail shown with -v."""
        self._emit("verbose", message)

    def debug(self, message: str) -> None:
        """Detail shown with -vv, such as the commands being run."""
        self._emit("debug", message)

    def detect(self, source: str, message: str) -> None:
        """One resource detection line: which source was tried and what it gave."""
        self._emit("detect", f"{source}: {message}")

    def warn(self, message: str) -> None:
        self._emit("warn", message)

    def error(self, message: str) -> None:
        self._emit("error", message)

    def hint(self, message: str) -> None:
        self._emit("hint", message)

    def dry_run_msg(self, message: str) -> None:
        """Describe an action a dry run skipped."""
        if self.dry_run:
            self._console.print(f"[blue][DRY-RUN][/blue] Would: {escape(message)}")

    def print(self, message: Any = "", **kwargs: Any) -> None:
        """Print a markup string or Rich renderable to stdout."""
        self._console.print(message, **kwargs)

    def raw(self, text: str) -> None:
        """Write text to stdout verbatim, for output meant to be captured."""
        self._console.out(text, highlight=False)

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[str]],
        box_style: box.Box = box.ROUNDED,
    ) -> None:
        """Print a table; cell text is escaped."""
        table = Table(title=title, box=box_style)
        for col in columns:
            table.add_column(col)
        for row in rows:
            table.add_row(*(escape(str(cell)) for cell in row))
        self._console.print(table)

    def code(self, text: str, lexer: str, title: str) -> None:
        """Print syntax-highlighted file content (ini, sql, yaml)."""
        syntax = Syntax(text, lexer, theme="monokai", line_numbers=False)
        self._console.print(Panel(syntax, title=title, border_style="green"))

    def _key_values(self, title: str, items: dict[str, Any], border_style: str) -> None:
        lines = []
        for key, value in items.items():
            if isinstance(value, bool):
                shown = "[green]Yes[/green]" if value else "[red]No[/red]"
            else:
                shown = escape(str(value))
            lines.append(f"[bold]{key}:[/bold] {shown}")
        self._console.print(Panel("\n".join(lines), title=title, border_style=border_style))

    def summary(self, title: str, items: dict[str, Any]) -> None:
        """Print key-value pairs in a panel."""
        self._key_values(title, items, "blue")

    def operation_summary(self, operation: str, success: bool, details: dict[str, Any]) -> None:
        """Print the closing panel of a long-running command."""
        status = "[green]SUCCESS[/green]" if success else "[red]FAILED[/red]"
        self._key_values(f"{operation} - {status}", details, "green" if success else "red")


# Global console instance
console = Console()
