"""
Root Typer application for the supamanager CLI.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version

import typer
from typer import Typer

app = Typer(
    name="supamanager",
    help="supamanager — provisioning and lifecycle orchestration for tenant projects.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        try:
            v = pkg_version("supamanager")
        except PackageNotFoundError:
            from supamanager import __version__ as v
        typer.echo(f"supamanager {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """supamanager CLI — plans, settings, manifests and the service loop."""


# ── Sub-command registration ─────────────────────────────────────────────

from supamanager.cli.config import app as config_app  # noqa: E402
from supamanager.cli.plans import plans  # noqa: E402
from supamanager.cli.render import render  # noqa: E402
from supamanager.cli.runtime import app as runtime_app  # noqa: E402
from supamanager.cli.serve import serve  # noqa: E402

app.command("plans")(plans)
app.command("render")(render)
app.command("serve")(serve)
app.add_typer(config_app, name="config", help="Configuration inspection.")
app.add_typer(runtime_app, name="runtime", help="Container runtime diagnostics.")
