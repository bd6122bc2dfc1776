"""
CLI: ``supamanager serve`` — run the orchestrator and its periodic loops.
"""

from __future__ import annotations

import asyncio
import signal

import typer

from supamanager.cli.utils import console


async def _serve() -> None:
    from supamanager.core.settings import get_settings
    from supamanager.service import build_service

    host = build_service(get_settings())
    health = await host.runtime.health()
    if not health.healthy:
        console.print(f"[yellow]Warning:[/yellow] runtime unavailable: {health.message}")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with host:
        console.print(f"[bold green]supamanager running[/bold green] on {host.runtime.runtime_name}")
        await stop.wait()
    console.print("[dim]stopped[/dim]")


def serve(
    log_level: str | None = typer.Option(None, "--log-level", help="Override SUPAMANAGER_LOG_LEVEL."),
) -> None:
    """Start the health sweep, quota recompute and backup scheduler until interrupted."""
    from supamanager.core.logging import configure_logging
    from supamanager.core.settings import get_settings

    settings = get_settings()
    configure_logging(level=log_level or settings.log_level, json_format=settings.log_json)
    asyncio.run(_serve())
