"""
CLI output helpers.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from supamanager.core.errors import SupaManagerError

console = Console()
err_console = Console(stderr=True)

_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_bytes(value: float) -> str:
    """``0`` is rendered as unlimited; everything else in binary units."""
    if not value:
        return "unlimited"
    size = float(value)
    for unit in _UNITS:
        if size < 1024 or unit == _UNITS[-1]:
            return f"{size:.0f} {unit}" if size.is_integer() else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def format_limit(value: float) -> str:
    if not value:
        return "unlimited"
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def print_mapping(data: dict[str, Any], *, title: str = "") -> None:
    """Render a flat mapping as a two-column table."""
    table = Table(title=title or None, show_header=True, pad_edge=False)
    table.add_column("Key", style="bold")
    table.add_column("Value", overflow="fold")
    for key, value in data.items():
        table.add_row(str(key), "" if value is None else str(value))
    console.print(table)


def fail(error: SupaManagerError | Exception) -> typer.Exit:
    """Print an error and return the Exit to raise."""
    if isinstance(error, SupaManagerError):
        err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {error.message}")
    else:
        err_console.print(f"[bold red]Error[/bold red]: {error}")
    return typer.Exit(code=1)
