"""Console output for the vaultsync CLI.

Every command writes through an :class:`OutputFormatter` so ``--json`` and
``--quiet`` behave the same everywhere. Human-readable output goes through
a rich console; errors and warnings go to stderr.
"""

import json
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from .utils import format_size


class OutputFormatter:
    """Formats command output as rich text or JSON."""

    def __init__(
        self,
        json_output: bool = False,
        quiet: bool = False,
        console: Optional[Console] = None,
        err_console: Optional[Console] = None,
    ):
        """Initialize the formatter.

        Args:
            json_output: Print machine-readable JSON instead of text
            quiet: Suppress informational messages
            console: Console for regular output
            err_console: Console for warnings and errors
        """
        self.json_output = json_output
        self.quiet = quiet
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)

    def print(self, message: str) -> None:
        if not self.json_output:
            self.console.print(message)

    def info(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.console.print(message)

    def success(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.console.print(f"[green]✓[/green] {message}")

    def warning(self, message: str) -> None:
        if not self.quiet:
            self.err_console.print(f"[yellow]Warning:[/yellow] {message}")

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]Error:[/red] {message}")

    def output_json(self, data: Any) -> None:
        """Print data as JSON (always, regardless of ``quiet``)."""
        click.echo(json.dumps(data, indent=2, default=str))

    def output_table(
        self,
        data: list[dict[str, Any]],
        columns: list[str],
        headers: Optional[dict[str, str]] = None,
        title: Optional[str] = None,
    ) -> None:
        """Print rows as a table, or as a JSON list in JSON mode.

        Args:
            data: Rows keyed by column name
            columns: Column keys in display order
            headers: Display names per column key
            title: Optional table title
        """
        if self.json_output:
            self.output_json(data)
            return
        if not data:
            self.info("No entries")
            return
        headers = headers or {}
        table = Table(title=title)
        for column in columns:
            table.add_column(headers.get(column, column))
        for row in data:
            table.add_row(*(str(row.get(column, "")) for column in columns))
        self.console.print(table)

    def print_summary(self, title: str, items: list[tuple[str, str]]) -> None:
        """Print a titled list of label/value pairs."""
        if self.json_output:
            self.output_json({label: value for label, value in items})
            return
        if self.quiet:
            return
        table = Table(title=title, show_header=False, box=None)
        table.add_column(style="bold")
        table.add_column()
        for label, value in items:
            table.add_row(label, value)
        self.console.print(table)

    @staticmethod
    def format_size(size_bytes: int) -> str:
        return format_size(size_bytes)
