"""
Output utilities for the job monitor CLI.

Rich tables and status lines for interactive use, tabulate grids for plain
terminals and logs, and JSON for scripting.
"""

import json
import sys
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.json import JSON
from rich.table import Table
from tabulate import tabulate

# Global console instance
console = Console()

_SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "warning": "magenta",
    "low": "cyan",
}


def print_error(message: str, exit_code: Optional[int] = None):
    """Print error message in red and optionally exit."""
    console.print(f"[bold red]Error:[/bold red] {message}")
    if exit_code is not None:
        sys.exit(exit_code)


def print_success(message: str):
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_info(message: str):
    console.print(f"[bold blue]Info:[/bold blue] {message}")


def print_warning(message: str):
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def print_json(data: Any):
    console.print(JSON(json.dumps(data, indent=2, default=str)))


def print_table(data: List[Dict[str, Any]], title: Optional[str] = None, format_style: str = "rich"):
    """
    Print data as a formatted table.

    Args:
        data: List of dictionaries to display
        title: Optional table title
        format_style: "rich" for Rich tables, "simple" for tabulate
    """
    if not data:
        print_info("No data to display")
        return

    if format_style == "simple":
        if title:
            console.print(f"\n{title}", markup=False)
            console.print("=" * len(title), markup=False)
        console.print(tabulate(data, headers="keys", tablefmt="grid"), markup=False)
        return

    table = Table(show_header=True, header_style="bold magenta", title=title)
    columns = list(data[0].keys())
    for column in columns:
        table.add_column(column.replace('_', ' ').title())
    for row in data:
        cells = []
        for col in columns:
            value = "" if row.get(col) is None else str(row.get(col))
            style = _SEVERITY_STYLES.get(value) if col == "severity" else None
            cells.append(f"[{style}]{value}[/{style}]" if style else value)
        table.add_row(*cells)
    console.print(table)


def print_summary(summary: Dict[str, Any], title: str):
    """Print a flat or one-level nested mapping as Metric/Value rows."""
    table = Table(show_header=True, header_style="bold cyan", title=title)
    table.add_column("Metric")
    table.add_column("Value")
    for key, value in summary.items():
        if isinstance(value, dict):
            for subkey, subvalue in value.items():
                table.add_row(f"{key}.{subkey}", str(subvalue))
        else:
            table.add_row(key, str(value))
    console.print(table)
