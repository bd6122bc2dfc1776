"""
CLI: ``supamanager config`` — settings inspection.
"""

from __future__ import annotations

import typer

from supamanager.cli.utils import print_json, print_mapping

app = typer.Typer(no_args_is_help=True)

_SECRET_FIELDS = ("backup_encryption_key",)


@app.command("show")
def show_config(
    json_out: bool = typer.Option(False, "--json", help="Print as JSON."),
) -> None:
    """Show the effective settings (environment and .env applied)."""
    from supamanager.core.settings import get_settings

    data = get_settings().model_dump(mode="json")
    for name in _SECRET_FIELDS:
        if data.get(name):
            data[name] = "********"

    if json_out:
        print_json(data)
        return
    print_mapping(dict(sorted(data.items())), title="supamanager settings")
