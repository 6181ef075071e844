"""Output formatting for CLI."""

from typing import Any
import json

from rich.console import Console
from rich.table import Table
from rich import box

from .models import SyncResult


console = Console()
error_console = Console(stderr=True)


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str))


def _format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str)
    return str(value)


def print_table(
    data: list[dict[str, Any]],
    columns: list[str] | None = None,
    title: str | None = None,
) -> None:
    """Print a list of dicts as a formatted table."""
    if not data:
        console.print("[dim]No data[/dim]")
        return

    # Determine columns from data if not specified
    if columns is None:
        columns = list(data[0].keys())

    table = Table(title=title, box=box.ROUNDED)
    for col in columns:
        table.add_column(col, style="cyan" if col in ("ID", "Name") else None)

    for row in data:
        table.add_row(*[_format_cell(row.get(col)) for col in columns])

    console.print(table)


def print_dict(
    data: dict[str, Any],
    title: str | None = None,
) -> None:
    """Print a single dict as a key-value table."""
    table = Table(title=title, box=box.ROUNDED, show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, _format_cell(value))

    console.print(table)


def print_sync_result(result: SyncResult, title: str) -> None:
    """Print a pass result with its counters."""
    style = "green" if result.success else "red"
    console.print(f"[{style}]{title}: {result.message}[/{style}] [dim]({result.duration_ms} ms)[/dim]")
    stats = result.stats
    print_table(
        [{
            "Total": stats.total,
            "Created": stats.created,
            "Updated": stats.updated,
            "Skipped": stats.skipped,
            "Failed": stats.failed,
        }],
        columns=["Total", "Created", "Updated", "Skipped", "Failed"],
    )


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]{message}[/green]")


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    error_console.print(f"[red]Error: {message}[/red]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow]Warning: {message}[/yellow]")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[dim]{message}[/dim]")
