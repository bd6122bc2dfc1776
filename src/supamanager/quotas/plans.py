"""Default quotas per plan.

CUSTOM has no defaults of its own: a project becomes CUSTOM when explicit
quotas are set for it, and any unknown plan name falls back to FREE.
"""

from __future__ import annotations

from supamanager.quotas.models import GB, MB, QuotaPlan, ResourceQuotas

PLAN_QUOTAS: dict[QuotaPlan, ResourceQuotas] = {
    QuotaPlan.FREE: ResourceQuotas(
        database_size=500 * MB,
        storage_size=1 * GB,
        backup_size=2 * GB,
        total_disk_size=3 * GB,
        cpu_limit=0.5,
        memory_limit=512 * MB,
        bandwidth_limit=10 * GB,
        requests_per_hour=1000,
        connections_limit=10,
        max_backups=3,
        max_users=100,
        max_tables=50,
        max_file_size=10 * MB,
    ),
    QuotaPlan.STARTER: ResourceQuotas(
        database_size=2 * GB,
        storage_size=5 * GB,
        backup_size=10 * GB,
        total_disk_size=15 * GB,
        cpu_limit=1.0,
        memory_limit=1 * GB,
        bandwidth_limit=50 * GB,
        requests_per_hour=10_000,
        connections_limit=50,
        max_backups=7,
        max_users=1000,
        max_tables=200,
        max_file_size=50 * MB,
    ),
    QuotaPlan.PRO: ResourceQuotas(
        database_size=10 * GB,
        storage_size=50 * GB,
        backup_size=100 * GB,
        total_disk_size=150 * GB,
        cpu_limit=2.0,
        memory_limit=4 * GB,
        bandwidth_limit=500 * GB,
        requests_per_hour=100_000,
        connections_limit=200,
        max_backups=30,
        max_users=0,
        max_tables=0,
        max_file_size=500 * MB,
    ),
    # everything unlimited
    QuotaPlan.ENTERPRISE: ResourceQuotas(),
}


def default_quotas(plan: QuotaPlan | str) -> ResourceQuotas:
    """Default ``ResourceQuotas`` for ``plan``; unknown names and CUSTOM get FREE."""
    try:
        resolved = QuotaPlan.parse(plan)
    except ValueError:
        return PLAN_QUOTAS[QuotaPlan.FREE]
    return PLAN_QUOTAS.get(resolved, PLAN_QUOTAS[QuotaPlan.FREE])
