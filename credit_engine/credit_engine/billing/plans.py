"""Subscription plan and top-up package catalog.

Plan tiers and packages are closed enumerations with frozen definitions;
allocation logic dispatches on them exhaustively instead of reading an open
feature map.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from credit_engine.models.credits import CreditCategory

TRIAL_PERIOD_DAYS = 14
BILLING_PERIOD_DAYS = 30


class PlanTier(str, Enum):
    TRIAL = "trial"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class AllocationPolicy(str, Enum):
    """How a monthly allocation treats the previous balance."""

    RESET = "reset"
    ACCUMULATE = "accumulate"


# Interaction credits are use-it-or-lose-it each cycle; scraper credits roll over.
ALLOCATION_POLICIES: dict[CreditCategory, AllocationPolicy] = {
    CreditCategory.INTERACTION: AllocationPolicy.RESET,
    CreditCategory.SCRAPER: AllocationPolicy.ACCUMULATE,
}


class PlanDefinition(BaseModel):
    """Price and monthly credit allocation of a plan tier."""

    model_config = ConfigDict(frozen=True)

    tier: PlanTier
    name: str
    price: int = Field(..., ge=0, description="Price per period in IDR.")
    scraper_credits: int = Field(..., ge=0)
    interaction_credits: int = Field(..., ge=0)
    period_days: int = Field(default=BILLING_PERIOD_DAYS, gt=0)

    def allocation(self, category: CreditCategory) -> int:
        if category is CreditCategory.SCRAPER:
            return self.scraper_credits
        return self.interaction_credits


PLANS: dict[PlanTier, PlanDefinition] = {
    PlanTier.TRIAL: PlanDefinition(
        tier=PlanTier.TRIAL,
        name="Trial",
        price=0,
        scraper_credits=100,
        interaction_credits=150,
        period_days=TRIAL_PERIOD_DAYS,
    ),
    PlanTier.BASIC: PlanDefinition(
        tier=PlanTier.BASIC,
        name="Basic",
        price=2_499_000,
        scraper_credits=10_000,
        interaction_credits=15_000,
    ),
    PlanTier.PRO: PlanDefinition(
        tier=PlanTier.PRO,
        name="Pro",
        price=4_999_000,
        scraper_credits=25_000,
        interaction_credits=50_000,
    ),
    PlanTier.ENTERPRISE: PlanDefinition(
        tier=PlanTier.ENTERPRISE,
        name="Enterprise",
        price=9_999_000,
        scraper_credits=100_000,
        interaction_credits=200_000,
    ),
}

PAID_TIERS: tuple[PlanTier, ...] = (PlanTier.BASIC, PlanTier.PRO, PlanTier.ENTERPRISE)


def get_plan(plan_id: str) -> PlanDefinition:
    """Look up a plan by its id, raising ``ValueError`` for unknown ids."""
    return PLANS[PlanTier(plan_id)]


class CreditPackageId(str, Enum):
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class CreditPackage(BaseModel):
    """One-off top-up of scraper credits."""

    model_config = ConfigDict(frozen=True)

    id: CreditPackageId
    name: str
    scraper_credits: int = Field(..., gt=0)
    price: int = Field(..., gt=0)


CREDIT_PACKAGES: dict[CreditPackageId, CreditPackage] = {
    CreditPackageId.STARTER: CreditPackage(
        id=CreditPackageId.STARTER, name="Starter Pack", scraper_credits=5_000, price=999_000
    ),
    CreditPackageId.GROWTH: CreditPackage(
        id=CreditPackageId.GROWTH, name="Growth Pack", scraper_credits=15_000, price=2_499_000
    ),
    CreditPackageId.PRO: CreditPackage(id=CreditPackageId.PRO, name="Pro Pack", scraper_credits=50_000, price=7_499_000),
    CreditPackageId.ENTERPRISE: CreditPackage(
        id=CreditPackageId.ENTERPRISE, name="Enterprise Pack", scraper_credits=150_000, price=19_999_000
    ),
}
