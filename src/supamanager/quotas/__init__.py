"""Per-project resource quotas: plans, enforcement gate, usage recomputation."""

from supamanager.quotas.manager import OPERATIONS, QuotaManager, RecomputeReport
from supamanager.quotas.models import (
    AdminQuotaSettings,
    QuotaCheck,
    QuotaDecision,
    QuotaEnforcement,
    QuotaPlan,
    QuotaStatus,
    QuotaUsage,
    ResourceQuotas,
)
from supamanager.quotas.plans import PLAN_QUOTAS, default_quotas
from supamanager.quotas.usage import RuntimeUsageCollector, StaticUsageCollector, UsageCollector

__all__ = [
    "OPERATIONS",
    "PLAN_QUOTAS",
    "AdminQuotaSettings",
    "QuotaCheck",
    "QuotaDecision",
    "QuotaEnforcement",
    "QuotaManager",
    "QuotaPlan",
    "QuotaStatus",
    "QuotaUsage",
    "RecomputeReport",
    "ResourceQuotas",
    "RuntimeUsageCollector",
    "StaticUsageCollector",
    "UsageCollector",
    "default_quotas",
]
