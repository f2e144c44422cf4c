"""Internal endpoints driven by the external scheduler.

Every route here bypasses bearer-token auth and is authenticated with the
``billing_cron_secret`` instead.
"""

from __future__ import annotations

import logging
from typing import Any

from credit_engine.models.audit import AuditEvent
from credit_engine.models.billing import BatchResult
from fastapi import APIRouter, Depends, Query

from credit_api.dependencies import (
    BillingServiceDep,
    RetrySchedulerDep,
    SessionDep,
    SessionFactoryDep,
    require_cron_secret,
)
from credit_api.services.audit_service import AuditService
from credit_api.services.credit_service import reconcile_ledger
from credit_api.services.hold_sweeper import sweep_expired_holds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_cron_secret)])


@router.post("/billing/renew", response_model=BatchResult)
async def run_renewals(billing: BillingServiceDep) -> BatchResult:
    """Run the renewal pass over every due subscription."""
    return await billing.run_renewals()


@router.post("/billing/retry", response_model=BatchResult)
async def run_retries(scheduler: RetrySchedulerDep) -> BatchResult:
    """Run every payment retry attempt that is due."""
    return await scheduler.run_retries()


@router.get("/billing/renewals")
async def recent_renewals(
    billing: BillingServiceDep,
    limit: int = Query(default=10, ge=1, le=100),
) -> dict[str, Any]:
    invoices = await billing.recent_renewals(limit)
    return {"renewals": [i.model_dump(mode="json") for i in invoices]}


@router.post("/holds/cleanup")
async def cleanup_holds(session_factory: SessionFactoryDep) -> dict[str, Any]:
    expired = await sweep_expired_holds(session_factory)
    return {"expired_count": expired}


@router.post("/ledger/reconcile/{user_id}")
async def reconcile(user_id: str, session: SessionDep) -> dict[str, Any]:
    """Re-sum a user's ledger and report any drift of the cached balances."""
    reports = await reconcile_ledger(session, user_id)
    return {
        "user_id": user_id,
        "consistent": all(r.consistent for r in reports),
        "categories": [{**r.model_dump(mode="json"), "consistent": r.consistent} for r in reports],
    }


@router.get("/audit")
async def list_audit(
    session: SessionDep,
    user_id: str = Query(..., min_length=1),
    event: AuditEvent | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    """Audit entries for one user, newest first, with a chain integrity check."""
    service = AuditService(session)
    entries = await service.list_entries(user_id=user_id, event=event, limit=limit, offset=offset)
    chain_valid, checked = await service.verify_chain(user_id)
    return {
        "entries": [e.model_dump(mode="json") for e in entries],
        "chain_valid": chain_valid,
        "entries_verified": checked,
    }
