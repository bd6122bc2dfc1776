"""
CLI: ``supamanager plans`` — plan default quotas.
"""

from __future__ import annotations

import typer
from rich.table import Table

from supamanager.cli.utils import console, format_bytes, format_limit, print_json
from supamanager.quotas.models import QuotaPlan
from supamanager.quotas.plans import default_quotas


def plans(
    json_out: bool = typer.Option(False, "--json", help="Print as JSON."),
) -> None:
    """Show the default quotas of every plan."""
    listed = [p for p in QuotaPlan if p != QuotaPlan.CUSTOM]
    if json_out:
        print_json({p.value: default_quotas(p).to_dict() for p in listed})
        return

    table = Table(title="Plan quotas")
    for column in ("Plan", "Database", "Storage", "Backups", "Total disk", "CPU", "Memory",
                   "Users", "Tables", "Backups kept"):
        table.add_column(column)
    for plan in listed:
        q = default_quotas(plan)
        table.add_row(
            plan.value,
            format_bytes(q.database_size),
            format_bytes(q.storage_size),
            format_bytes(q.backup_size),
            format_bytes(q.total_disk_size),
            format_limit(q.cpu_limit),
            format_bytes(q.memory_limit),
            format_limit(q.max_users),
            format_limit(q.max_tables),
            format_limit(q.max_backups),
        )
    console.print(table)
    console.print("[dim]CUSTOM projects start from FREE until quotas are set.[/dim]")
