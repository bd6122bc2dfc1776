"""
CLI: ``supamanager runtime`` — container runtime diagnostics.
"""

from __future__ import annotations

import asyncio

import typer

from supamanager.cli.utils import console, print_json

app = typer.Typer(no_args_is_help=True)


@app.command("health")
def runtime_health(
    json_out: bool = typer.Option(False, "--json", help="Print as JSON."),
) -> None:
    """Probe the Docker daemon configured in settings."""
    from supamanager.core.settings import get_settings
    from supamanager.runtime.docker import DockerRuntimeAdapter

    settings = get_settings()
    adapter = DockerRuntimeAdapter(
        docker_binary=settings.docker_binary,
        docker_host=settings.docker_host,
        command_timeout=settings.runtime_command_timeout_seconds,
    )
    health = asyncio.run(adapter.health())

    if json_out:
        print_json(health.to_dict())
    elif health.healthy:
        console.print(f"[green]✓[/green] {health.runtime} {health.version or ''} reachable")
    else:
        console.print(f"[red]✗[/red] {health.runtime} unavailable: {health.message}")
    if not health.healthy:
        raise typer.Exit(code=1)
