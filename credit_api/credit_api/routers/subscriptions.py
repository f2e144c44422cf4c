"""Subscription endpoints: plan catalog, current subscription, trial and upgrade."""

from __future__ import annotations

import logging
from typing import Any

from credit_engine.billing.plans import PAID_TIERS, PLANS, PlanTier
from fastapi import APIRouter
from pydantic import BaseModel, Field

from credit_api.dependencies import BillingServiceDep, UserDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class TrialRequest(BaseModel):
    """Request body for ``POST /subscriptions/trial``."""

    plan: PlanTier = Field(default=PlanTier.BASIC, description="Paid plan the trial converts to.")


class UpgradeRequest(BaseModel):
    """Request body for ``POST /subscriptions/upgrade``."""

    plan: PlanTier


@router.get("/plans")
async def list_plans() -> dict[str, Any]:
    """Return every plan with its price and monthly allocation."""
    return {
        "plans": [
            {**plan.model_dump(mode="json"), "paid": plan.tier in PAID_TIERS}
            for plan in PLANS.values()
        ]
    }


@router.get("/current")
async def current_subscription(user_id: UserDep, billing: BillingServiceDep) -> dict[str, Any]:
    subscription = await billing.current_subscription(user_id)
    if subscription is None:
        return {"subscription": None}
    return {
        "subscription": subscription.model_dump(mode="json"),
        "plan": PLANS[PlanTier(subscription.plan_id)].model_dump(mode="json"),
    }


@router.post("/trial", status_code=201)
async def start_trial(body: TrialRequest, user_id: UserDep, billing: BillingServiceDep) -> dict[str, Any]:
    """Start a trial; fails with 409 when the user already has a subscription."""
    subscription = await billing.start_trial(user_id, body.plan)
    return {"subscription": subscription.model_dump(mode="json")}


@router.post("/upgrade")
async def upgrade(body: UpgradeRequest, user_id: UserDep, billing: BillingServiceDep) -> dict[str, Any]:
    """Charge for and switch to another paid plan.

    Responds with ``status: pending`` when the gateway has not settled the
    payment yet; the webhook completes the change.
    """
    result = await billing.change_plan(user_id, body.plan)
    subscription = await billing.current_subscription(user_id)
    return {
        "status": result["status"],
        "invoice": result["invoice"].model_dump(mode="json"),
        "subscription": subscription.model_dump(mode="json") if subscription is not None else None,
    }
