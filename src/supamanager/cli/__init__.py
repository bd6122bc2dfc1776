"""
CLI layer for supamanager.

A Typer application for operators: inspect plans and settings, render a
project's compose manifest, probe the container runtime and run the
service. All behaviour lives in the library; this package only parses
arguments and formats output.

Entry point::

    supamanager --help
"""

from supamanager.cli.app import app

__all__ = ["app"]
