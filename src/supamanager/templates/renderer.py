"""Render a ``ProjectConfig`` into runtime manifests.

Everything here is pure: the same config and settings always produce the
same ``ProjectManifest``, and nothing touches the runtime or the disk except
:func:`write_manifest`.

Service topology (dependency order)::

    db ──┬──► rest ──┬──► storage ──┐
         ├──► auth   │              ├──► kong (api_port → 8000)
         └──► realtime ─────────────┘
    studio (only when studio_port is set) ──► kong

Per-service fingerprints let ``update_project`` recreate only the services
whose rendered spec actually changed.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from supamanager.core.settings import SupaManagerSettings, get_settings
from supamanager.provisioning.models import ProjectConfig
from supamanager.runtime._types import (
    HealthProbe,
    PortBinding,
    ProbeKind,
    ServiceSpec,
    VolumeMount,
    resource_name,
)

logger = logging.getLogger(__name__)

DB_DATA_DIR = "/var/lib/postgresql/data"
STORAGE_DATA_DIR = "/var/lib/storage"
DB_VOLUME = "db-data"
STORAGE_VOLUME = "storage-data"
COMPOSE_FILENAME = "docker-compose.yml"

SERVICE_ORDER = ("db", "rest", "auth", "realtime", "storage", "studio", "kong")


@dataclass(frozen=True)
class ProjectManifest:
    """Rendered description of one project's runtime resources."""

    project_id: str
    network: str
    volumes: tuple[str, ...]
    services: tuple[ServiceSpec, ...]
    endpoint: str
    db_endpoint: str

    def service(self, name: str) -> ServiceSpec:
        for spec in self.services:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def service_names(self) -> list[str]:
        return [spec.name for spec in self.services]

    def volume(self, short_name: str) -> str:
        return resource_name(self.project_id, short_name)


def _db_url(user: str, config: ProjectConfig) -> str:
    return f"postgres://{user}:{config.db_password}@db:5432/postgres"


def render_project(config: ProjectConfig, settings: SupaManagerSettings | None = None) -> ProjectManifest:
    """Render every service, the network and the volumes for ``config``.

    Example:
        >>> manifest = render_project(config)
        >>> manifest.service_names()
        ['db', 'rest', 'auth', 'realtime', 'storage', 'kong']
    """
    settings = settings or get_settings()
    pid = config.project_id
    network = resource_name(pid, "network")
    db_volume = resource_name(pid, DB_VOLUME)
    storage_volume = resource_name(pid, STORAGE_VOLUME)
    endpoint = f"http://{settings.public_host}:{config.api_port}"
    db_endpoint = f"postgresql://postgres@{settings.public_host}:{config.db_port}/postgres"
    labels = {"supamanager.organization": config.organization_id, "supamanager.region": config.region}

    def spec(name: str, image: str, **kwargs: Any) -> ServiceSpec:
        return ServiceSpec(
            name=name,
            image=image,
            project_id=pid,
            container_name=resource_name(pid, name),
            network=network,
            labels=labels,
            **kwargs,
        )

    services = [
        spec(
            "db",
            settings.postgres_image_ref,
            env={
                "POSTGRES_PASSWORD": config.db_password,
                "POSTGRES_DB": "postgres",
                "PGPORT": "5432",
                "JWT_SECRET": config.jwt_secret,
                "JWT_EXP": "3600",
            },
            ports=(PortBinding(config.db_port, 5432),),
            volumes=(VolumeMount(db_volume, DB_DATA_DIR),),
            healthcheck=HealthProbe(
                kind=ProbeKind.COMMAND,
                command=("pg_isready", "-U", "postgres", "-h", "localhost"),
            ),
            cpu_limit=config.cpu_cores,
            memory_limit=config.memory_bytes,
        ),
        spec(
            "rest",
            settings.rest_image,
            env={
                "PGRST_DB_URI": _db_url("authenticator", config),
                "PGRST_DB_SCHEMAS": "public,storage,graphql_public",
                "PGRST_DB_ANON_ROLE": "anon",
                "PGRST_JWT_SECRET": config.jwt_secret,
                "PGRST_DB_USE_LEGACY_GUCS": "false",
            },
            command=("postgrest",),
            depends_on=("db",),
            healthcheck=HealthProbe(kind=ProbeKind.TCP, port=3000),
        ),
        spec(
            "auth",
            settings.auth_image,
            env={
                "GOTRUE_API_HOST": "0.0.0.0",
                "GOTRUE_API_PORT": "9999",
                "API_EXTERNAL_URL": endpoint,
                "GOTRUE_DB_DRIVER": "postgres",
                "GOTRUE_DB_DATABASE_URL": _db_url("supabase_auth_admin", config),
                "GOTRUE_SITE_URL": endpoint,
                "GOTRUE_JWT_SECRET": config.jwt_secret,
                "GOTRUE_JWT_EXP": "3600",
                "GOTRUE_JWT_DEFAULT_GROUP_NAME": "authenticated",
                "GOTRUE_JWT_ADMIN_ROLES": "service_role",
                "GOTRUE_JWT_AUD": "authenticated",
            },
            depends_on=("db",),
            healthcheck=HealthProbe(kind=ProbeKind.HTTP, port=9999, path="/health"),
        ),
        spec(
            "realtime",
            settings.realtime_image,
            env={
                "PORT": "4000",
                "DB_HOST": "db",
                "DB_PORT": "5432",
                "DB_USER": "supabase_admin",
                "DB_PASSWORD": config.db_password,
                "DB_NAME": "postgres",
                "API_JWT_SECRET": config.jwt_secret,
                "SECRET_KEY_BASE": config.jwt_secret,
                "REPLICATION_MODE": "RLS",
            },
            depends_on=("db",),
            healthcheck=HealthProbe(kind=ProbeKind.TCP, port=4000),
        ),
        spec(
            "storage",
            settings.storage_image,
            env={
                "ANON_KEY": config.anon_key,
                "SERVICE_KEY": config.service_key,
                "POSTGREST_URL": "http://rest:3000",
                "PGRST_JWT_SECRET": config.jwt_secret,
                "DATABASE_URL": _db_url("supabase_storage_admin", config),
                "STORAGE_BACKEND": "file",
                "FILE_STORAGE_BACKEND_PATH": STORAGE_DATA_DIR,
                "FILE_SIZE_LIMIT": "52428800",
                "TENANT_ID": pid,
                "REGION": config.region,
                "GLOBAL_S3_BUCKET": pid,
            },
            volumes=(VolumeMount(storage_volume, STORAGE_DATA_DIR),),
            depends_on=("db", "rest"),
            healthcheck=HealthProbe(kind=ProbeKind.HTTP, port=5000, path="/status"),
        ),
    ]

    kong_deps = ["rest", "auth", "realtime", "storage"]
    if config.studio_port is not None:
        services.append(
            spec(
                "studio",
                settings.studio_image,
                env={
                    "STUDIO_PG_META_URL": "http://meta:8080",
                    "POSTGRES_PASSWORD": config.db_password,
                    "SUPABASE_URL": "http://kong:8000",
                    "SUPABASE_PUBLIC_URL": endpoint,
                    "SUPABASE_ANON_KEY": config.anon_key,
                    "SUPABASE_SERVICE_KEY": config.service_key,
                },
                ports=(PortBinding(config.studio_port, 3000),),
                depends_on=("rest",),
                healthcheck=HealthProbe(kind=ProbeKind.TCP, port=3000),
            )
        )

    services.append(
        spec(
            "kong",
            settings.kong_image,
            env={
                "KONG_DATABASE": "off",
                "KONG_DNS_ORDER": "LAST,A,CNAME",
                "KONG_PLUGINS": "request-transformer,cors,key-auth,acl,basic-auth",
                "KONG_NGINX_PROXY_PROXY_BUFFER_SIZE": "160k",
                "KONG_NGINX_PROXY_PROXY_BUFFERS": "64 160k",
                "SUPABASE_ANON_KEY": config.anon_key,
                "SUPABASE_SERVICE_KEY": config.service_key,
                "DASHBOARD_USERNAME": config.dashboard_user,
                "DASHBOARD_PASSWORD": config.dashboard_pass,
            },
            ports=(PortBinding(config.api_port, 8000),),
            depends_on=tuple(kong_deps),
            healthcheck=HealthProbe(kind=ProbeKind.COMMAND, command=("kong", "health")),
        )
    )

    ordered = tuple(sorted(services, key=lambda s: SERVICE_ORDER.index(s.name)))
    return ProjectManifest(
        project_id=pid,
        network=network,
        volumes=(db_volume, storage_volume),
        services=ordered,
        endpoint=endpoint,
        db_endpoint=db_endpoint,
    )


def manifest_fingerprints(manifest: ProjectManifest) -> dict[str, str]:
    """sha256 of each service's rendered spec, keyed by service name."""
    return {
        spec.name: hashlib.sha256(json.dumps(spec.to_dict(), sort_keys=True).encode()).hexdigest()
        for spec in manifest.services
    }


def changed_services(old: ProjectManifest, new: ProjectManifest) -> list[str]:
    """Services of ``new`` that are missing from ``old`` or render differently."""
    before = manifest_fingerprints(old)
    after = manifest_fingerprints(new)
    return [name for name in new.service_names() if before.get(name) != after[name]]


def _compose_healthcheck(probe: HealthProbe) -> dict[str, Any]:
    if probe.kind == ProbeKind.COMMAND:
        test = ["CMD-SHELL", " ".join(probe.command)]
    elif probe.kind == ProbeKind.HTTP:
        test = ["CMD-SHELL", f"wget -q --spider http://localhost:{probe.port}{probe.path} || exit 1"]
    else:
        test = ["CMD-SHELL", f"nc -z localhost {probe.port} || exit 1"]
    return {
        "test": test,
        "interval": f"{int(probe.interval_seconds)}s",
        "timeout": f"{int(probe.timeout_seconds)}s",
        "retries": probe.retries,
    }


def to_compose(manifest: ProjectManifest) -> dict[str, Any]:
    """docker-compose document equivalent to ``manifest``."""
    compose: dict[str, Any] = {
        "name": resource_name(manifest.project_id),
        "services": {},
        "networks": {manifest.network: {"driver": "bridge"}},
        "volumes": {name: {} for name in manifest.volumes},
    }
    with_health = {s.name for s in manifest.services if s.healthcheck is not None}

    for spec in manifest.services:
        service: dict[str, Any] = {
            "image": spec.image,
            "container_name": spec.container_name,
            "networks": [spec.network] if spec.network else [],
            "labels": [f"{k}={v}" for k, v in sorted(spec.all_labels().items())],
            "restart": "unless-stopped",
        }
        if spec.command:
            service["command"] = list(spec.command)
        if spec.env:
            service["environment"] = dict(sorted(spec.env.items()))
        if spec.ports:
            service["ports"] = [f"{p.host_port}:{p.container_port}" for p in spec.ports]
        if spec.volumes:
            service["volumes"] = [m.to_flag() for m in spec.volumes]
        if spec.depends_on:
            service["depends_on"] = {
                dep: {"condition": "service_healthy" if dep in with_health else "service_started"}
                for dep in spec.depends_on
            }
        if spec.healthcheck is not None:
            service["healthcheck"] = _compose_healthcheck(spec.healthcheck)
        limits: dict[str, str] = {}
        if spec.cpu_limit:
            limits["cpus"] = str(spec.cpu_limit)
        if spec.memory_limit:
            limits["memory"] = f"{spec.memory_limit // (1024 * 1024)}M"
        if limits:
            service["deploy"] = {"resources": {"limits": limits}}
        compose["services"][spec.name] = service
    return compose


def dump_compose(manifest: ProjectManifest) -> str:
    """YAML text with a short header comment."""
    header = (
        f"# Generated by supamanager for project {manifest.project_id}\n"
        f"# Services: {', '.join(manifest.service_names())}\n\n"
    )
    return header + yaml.safe_dump(to_compose(manifest), default_flow_style=False, sort_keys=False)


def write_manifest(manifest: ProjectManifest, directory: Path) -> Path:
    """Write ``docker-compose.yml`` for the project under ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / COMPOSE_FILENAME
    path.write_text(dump_compose(manifest), encoding="utf-8")
    logger.info("Wrote compose manifest for %s to %s", manifest.project_id, path)
    return path
