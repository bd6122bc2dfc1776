"""
supamanager - provisioning and lifecycle orchestration for tenant projects.

A project is an isolated database + REST API + auth + storage stack that runs
inside a container runtime. This package owns the state machine that drives
a project through its lifetime, the runtime adapter contract, the
backup/restore engine and the quota manager.

Subpackages:
- supamanager.core: errors, logging, settings, retry, locks, supervised tasks
- supamanager.runtime: RuntimeAdapter protocol, Docker and stub adapters
- supamanager.templates: pure ProjectConfig -> manifest renderer
- supamanager.provisioning: transitions, registry, store, orchestrator
- supamanager.backup: storage backends, codec, schedules, engine
- supamanager.quotas: plans, usage collection, enforcement
"""

__version__ = "0.3.0"
