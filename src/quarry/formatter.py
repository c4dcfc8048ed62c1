"""Result formatting for the CLI - table, JSON and CSV output."""

from __future__ import annotations

import csv
import json
from enum import Enum
from io import StringIO
from typing import Any

from rich.console import Console
from rich.table import Table


class OutputFormat(Enum):
    """Available output formats."""

    TABLE = "table"
    JSON = "json"
    CSV = "csv"


def _cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _render(renderable: Any, no_color: bool) -> str:
    string_io = StringIO()
    console = Console(file=string_io, force_terminal=not no_color, no_color=no_color, width=200)
    console.print(renderable)
    return string_io.getvalue()


def format_table(result: dict[str, Any], no_color: bool = False, title: str | None = None) -> str:
    """Format a result envelope as a rich table."""
    if result.get("status") != "completed":
        prefix = "Error" if no_color else "[red]Error:[/red]"
        return _render(f"{prefix} {result.get('error')}", no_color)

    data = result.get("data", {})
    cols = data.get("cols", [])
    rows = data.get("rows", [])
    if not rows:
        return _render("No results found." if no_color else "[dim]No results found.[/dim]", no_color)

    table = Table(title=title, show_header=True)
    for col in cols:
        table.add_column(col.get("display_name") or col["name"], style=None if no_color else "cyan")
    for row in rows:
        table.add_row(*(_cell(v) for v in row))
    table.caption = f"{result.get('row_count', len(rows))} rows in {result.get('running_time', 0)}ms"
    return _render(table, no_color)


def format_csv(result: dict[str, Any]) -> str:
    """Format result rows as CSV with a header row of column names."""
    data = result.get("data", {})
    out = StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow([col["name"] for col in data.get("cols", [])])
    for row in data.get("rows", []):
        writer.writerow([_cell(v) for v in row])
    return out.getvalue()


def format_json(result: dict[str, Any]) -> str:
    return json.dumps(result, indent=2, default=str)


def format_result(
    result: dict[str, Any],
    output_format: OutputFormat | str = OutputFormat.TABLE,
    no_color: bool = False,
) -> str:
    """Format a query result envelope."""
    output_format = OutputFormat(output_format)
    if output_format is OutputFormat.JSON:
        return format_json(result)
    if output_format is OutputFormat.CSV:
        return format_csv(result)
    return format_table(result, no_color=no_color)


__all__ = ["OutputFormat", "format_csv", "format_json", "format_result", "format_table"]
