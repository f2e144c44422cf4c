"""Billing endpoints for the authenticated user: top-ups and invoices."""

from __future__ import annotations

import logging
from typing import Any

from credit_engine.billing.plans import CreditPackageId
from fastapi import APIRouter, Query
from pydantic import BaseModel

from credit_api.dependencies import BillingServiceDep, UserDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class TopupRequest(BaseModel):
    """Request body for ``POST /billing/topup``."""

    package_id: CreditPackageId


@router.post("/topup")
async def purchase_topup(body: TopupRequest, user_id: UserDep, billing: BillingServiceDep) -> dict[str, Any]:
    """Buy a scraper credit package.

    Payment failures surface as 402 (declined) or 503 (gateway unavailable).
    """
    result = await billing.purchase_topup(user_id, body.package_id)
    return {
        "status": result["status"],
        "credits_added": result["credits_added"],
        "invoice": result["invoice"].model_dump(mode="json"),
    }


@router.get("/invoices")
async def list_invoices(
    user_id: UserDep,
    billing: BillingServiceDep,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    invoices, total = await billing.list_invoices(user_id, limit=limit, offset=offset)
    return {
        "invoices": [i.model_dump(mode="json") for i in invoices],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
