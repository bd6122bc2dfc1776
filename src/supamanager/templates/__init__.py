"""Pure rendering of project configs into runtime manifests."""

from supamanager.templates.renderer import (
    DB_DATA_DIR,
    STORAGE_DATA_DIR,
    ProjectManifest,
    changed_services,
    dump_compose,
    manifest_fingerprints,
    render_project,
    to_compose,
    write_manifest,
)

__all__ = [
    "DB_DATA_DIR",
    "STORAGE_DATA_DIR",
    "ProjectManifest",
    "changed_services",
    "dump_compose",
    "manifest_fingerprints",
    "render_project",
    "to_compose",
    "write_manifest",
]
