"""Plan catalog, allocation policy and retry schedule."""

from credit_engine.billing.allocation import allocate_plan_credits
from credit_engine.billing.plans import (
    CREDIT_PACKAGES,
    PAID_TIERS,
    PLANS,
    AllocationPolicy,
    CreditPackage,
    CreditPackageId,
    PlanDefinition,
    PlanTier,
    get_plan,
)
from credit_engine.billing.retry_schedule import (
    MAX_ATTEMPTS,
    RETRY_OFFSETS_DAYS,
    days_until,
    due_cutoff,
    next_attempt_number,
    retry_date_for,
)

__all__ = [
    "CREDIT_PACKAGES",
    "MAX_ATTEMPTS",
    "PAID_TIERS",
    "PLANS",
    "RETRY_OFFSETS_DAYS",
    "AllocationPolicy",
    "CreditPackage",
    "CreditPackageId",
    "PlanDefinition",
    "PlanTier",
    "allocate_plan_credits",
    "days_until",
    "due_cutoff",
    "get_plan",
    "next_attempt_number",
    "retry_date_for",
]
