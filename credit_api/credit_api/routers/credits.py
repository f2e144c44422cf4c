"""Credit endpoints: holds, conversion, release, balances and ledger history."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from credit_engine.billing.plans import CREDIT_PACKAGES
from credit_engine.models.credits import (
    DEFAULT_HOLD_TTL_MINUTES,
    MAX_HOLD_TTL_MINUTES,
    MIN_HOLD_TTL_MINUTES,
    CreditCategory,
)
from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from credit_api.dependencies import NotifierDep, SessionDep, SettingsDep, UserDep
from credit_api.services.credit_service import CreditService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class HoldRequest(BaseModel):
    """Request body for ``POST /credits/holds``."""

    category: CreditCategory
    amount: int = Field(..., gt=0, description="Credits to reserve.")
    reference_id: str = Field(..., min_length=1, max_length=256, description="Caller's operation id.")
    ttl_minutes: int = Field(
        default=DEFAULT_HOLD_TTL_MINUTES,
        ge=MIN_HOLD_TTL_MINUTES,
        le=MAX_HOLD_TTL_MINUTES,
    )


class HoldResponse(BaseModel):
    hold_id: str
    status: str
    expires_at: datetime


class ConvertRequest(BaseModel):
    """Request body for ``POST /credits/holds/convert``."""

    hold_id: str = Field(..., min_length=1)
    actual_amount: int = Field(..., gt=0, description="Credits actually consumed; the rest is refunded.")
    description: str | None = Field(default=None, max_length=500)


class ConvertResponse(BaseModel):
    transaction_id: str
    debited_amount: int
    refunded_amount: int
    remaining_balance: int


class ReleaseRequest(BaseModel):
    """Request body for ``POST /credits/holds/release``."""

    hold_id: str = Field(..., min_length=1)
    reason: str | None = Field(default=None, max_length=500)


def _service(session: SessionDep, user_id: str, settings: SettingsDep) -> CreditService:
    return CreditService(session, user_id, low_threshold=settings.credits_low_threshold)


# ---------------------------------------------------------------------------
# Holds
# ---------------------------------------------------------------------------


@router.post("/holds", status_code=201, response_model=HoldResponse)
async def create_hold(
    body: HoldRequest,
    session: SessionDep,
    user_id: UserDep,
    settings: SettingsDep,
) -> HoldResponse:
    """Reserve credits for a metered operation."""
    hold = await _service(session, user_id, settings).create_hold(
        body.category,
        body.amount,
        body.reference_id,
        body.ttl_minutes,
    )
    return HoldResponse(hold_id=hold.id, status=hold.status.value, expires_at=hold.expires_at)


@router.post("/holds/convert", response_model=ConvertResponse)
async def convert_hold(
    body: ConvertRequest,
    session: SessionDep,
    user_id: UserDep,
    settings: SettingsDep,
    notifier: NotifierDep,
) -> ConvertResponse:
    """Charge the consumed part of a hold and refund the rest."""
    result, low_credits = await _service(session, user_id, settings).convert(
        body.hold_id,
        body.actual_amount,
        body.description,
    )
    await session.commit()
    if low_credits is not None:
        await notifier.notify(low_credits.user_id, low_credits.type, low_credits.title, low_credits.message)
    return ConvertResponse(**result.model_dump())


@router.post("/holds/release")
async def release_hold(
    body: ReleaseRequest,
    session: SessionDep,
    user_id: UserDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    """Release a hold without charging it."""
    released, balance = await _service(session, user_id, settings).release(body.hold_id, body.reason)
    return {"status": "released", "amount_released": released, "balance": balance.model_dump()}


@router.get("/holds")
async def list_holds(
    session: SessionDep,
    user_id: UserDep,
    settings: SettingsDep,
    category: CreditCategory | None = Query(default=None),
) -> dict[str, Any]:
    """List the caller's active, unexpired holds."""
    holds = await _service(session, user_id, settings).list_holds(category)
    return {"holds": [h.model_dump(mode="json") for h in holds], "total": len(holds)}


# ---------------------------------------------------------------------------
# Balances and history
# ---------------------------------------------------------------------------


@router.get("/balance")
async def get_balance(session: SessionDep, user_id: UserDep, settings: SettingsDep) -> dict[str, Any]:
    """Return ``{total, held, available}`` per credit category."""
    balances = await _service(session, user_id, settings).balances()
    return {
        "user_id": user_id,
        "balances": {category.value: b.model_dump() for category, b in balances.items()},
    }


@router.get("/ledger")
async def get_ledger(
    session: SessionDep,
    user_id: UserDep,
    settings: SettingsDep,
    category: CreditCategory | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    """Ledger entries for the caller, newest first."""
    entries = await _service(session, user_id, settings).history(category, limit=limit, offset=offset)
    return {
        "entries": [e.model_dump(mode="json") for e in entries],
        "limit": limit,
        "offset": offset,
    }


@router.get("/packages")
async def list_packages() -> dict[str, Any]:
    """Top-up packages available for purchase."""
    return {"packages": [p.model_dump(mode="json") for p in CREDIT_PACKAGES.values()]}
