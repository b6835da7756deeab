"""Console output using Rich.

Every service writes through the process-wide ``console``. Messages
about one managed host can be tagged with its id, so output from
fleet-wide operations stays readable. Dry-run mode marks the commands
that would have changed a host.
"""

from enum import IntEnum
from typing import Any, Optional

from rich import box
from rich.console import Console as RichConsole
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.syntax import Syntax
from rich.table import Table


class Verbosity(IntEnum):
    """Output verbosity levels."""
    QUIET = 0    # Errors only
    NORMAL = 1   # Standard output
    VERBOSE = 2  # Additional details
    DEBUG = 3    # Everything


class Console:
    """Rich console with verbosity levels and host tags.

    Warnings and errors go to stderr; everything else to stdout.
    """

    def __init__(self) -> None:
        self._console = RichConsole(highlight=False)
        self._err_console = RichConsole(stderr=True, highlight=False)
        self.verbosity = Verbosity.NORMAL
        self.dry_run = False
        self.no_color = False

    def configure(
        self,
        verbosity: int = 1,
        dry_run: bool = False,
        no_color: bool = False,
    ) -> None:
        self.verbosity = Verbosity(max(Verbosity.QUIET, min(verbosity, Verbosity.DEBUG)))
        self.dry_run = dry_run
        self.no_color = no_color
        if no_color:
            self._console = RichConsole(highlight=False, no_color=True)
            self._err_console = RichConsole(stderr=True, highlight=False, no_color=True)

    @staticmethod
    def _tagged(message: str, host: Optional[str]) -> str:
        if host is None:
            return message
        return f"[magenta]{escape(f'[{host}]')}[/magenta] {message}"

    def info(self, message: str, *, host: Optional[str] = None) -> None:
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[green][INFO][/green] {self._tagged(message, host)}")

    def success(self, message: str, *, host: Optional[str] = None) -> None:
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[green][OK][/green] {self._tagged(message, host)}")

    def warn(self, message: str, *, host: Optional[str] = None) -> None:
        self._err_console.print(f"[yellow][WARN][/yellow] {self._tagged(message, host)}")

    def error(self, message: str, *, host: Optional[str] = None) -> None:
        self._err_console.print(f"[red][ERROR][/red] {self._tagged(message, host)}")

    def debug(self, message: str, *, host: Optional[str] = None) -> None:
        """Only shown with -vv."""
        if self.verbosity >= Verbosity.DEBUG:
            self._console.print(f"[cyan][DEBUG][/cyan] {self._tagged(message, host)}")

    def verbose(self, message: str, *, host: Optional[str] = None) -> None:
        """Only shown with -v."""
        if self.verbosity >= Verbosity.VERBOSE:
            self._console.print(f"[dim]{self._tagged(message, host)}[/dim]")

    def step(self, message: str, *, host: Optional[str] = None) -> None:
        if self.verbosity >= Verbosity.NORMAL:
            self._console.print(f"[blue]->[/blue] {self._tagged(message, host)}")

    def dry_run_msg(self, message: str, *, host: Optional[str] = None) -> None:
        if self.dry_run:
            self._console.print(f"[blue][DRY-RUN][/blue] Would: {self._tagged(message, host)}")

    def hint(self, message: str) -> None:
        self._console.print(f"[cyan]Hint:[/cyan] {message}")

    def print(self, message: Any = "", **kwargs: Any) -> None:
        """Print raw text or a Rich renderable."""
        self._console.print(message, **kwargs)

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[str]],
        box_style: box.Box = box.ROUNDED,
    ) -> None:
        table = Table(title=title, box=box_style)
        for col in columns:
            table.add_column(col)
        for row in rows:
            table.add_row(*row)
        self._console.print(table)

    def nft(self, script: str, title: str = "Ruleset") -> None:
        """Print a highlighted nft script."""
        # nft syntax is close enough to bash for Pygments' purposes
        syntax = Syntax(script, "bash", theme="monokai", line_numbers=False)
        self._console.print(Panel(syntax, title=title, border_style="green"))

    def yaml(self, yaml_text: str, title: str = "Configuration") -> None:
        syntax = Syntax(yaml_text, "yaml", theme="monokai", line_numbers=False)
        self._console.print(Panel(syntax, title=title, border_style="cyan"))

    def summary(self, title: str, items: dict[str, Any]) -> None:
        """Two-column key/value panel. Booleans render as Yes/No."""
        grid = Table.grid(padding=(0, 2))
        grid.add_column(style="bold")
        grid.add_column()
        for key, value in items.items():
            if isinstance(value, bool):
                value = "[green]Yes[/green]" if value else "[red]No[/red]"
            grid.add_row(key, str(value))
        self._console.print(Panel(grid, title=title, border_style="blue", expand=False))

    def confirm(self, message: str) -> bool:
        """Ask a yes/no question, defaulting to no. EOF and Ctrl+C count as no."""
        try:
            return Confirm.ask(message, console=self._console, default=False)
        except (EOFError, KeyboardInterrupt):
            return False


# Global console instance
console = Console()
