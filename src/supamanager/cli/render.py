"""
CLI: ``supamanager render`` — compose manifest for a project config.
"""

from __future__ import annotations

from pathlib import Path

import pydantic
import typer

from supamanager.cli.utils import console, err_console, fail


def render(
    config_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="ProjectConfig as JSON."),
    out: Path | None = typer.Option(None, "--out", "-o", help="Write the manifest here instead of stdout."),
) -> None:
    """Render the docker-compose manifest of a project without touching the runtime."""
    from supamanager.core.errors import SupaManagerError
    from supamanager.core.settings import get_settings
    from supamanager.provisioning.models import ProjectConfig
    from supamanager.templates.renderer import dump_compose, render_project

    try:
        config = ProjectConfig.model_validate_json(config_file.read_text(encoding="utf-8"))
    except pydantic.ValidationError as exc:
        err_console.print(f"[bold red]Invalid project config[/bold red] {config_file}:")
        for error in exc.errors():
            location = ".".join(str(part) for part in error["loc"]) or "<root>"
            err_console.print(f"  {location}: {error['msg']}")
        raise typer.Exit(code=1) from exc

    try:
        text = dump_compose(render_project(config, get_settings()))
    except SupaManagerError as exc:
        raise fail(exc) from exc

    if out is None:
        typer.echo(text, nl=False)
        return
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(text, encoding="utf-8")
    console.print(f"[green]✓[/green] Wrote {out}")
