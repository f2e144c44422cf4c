"""Audit logging service.

Wraps :class:`AuditRepository` with the typed event/detail vocabulary and
adds the two things routers and batch passes need on top of it: recording an
error in a fresh session after the failing transaction rolled back, and the
read-side view used by the diagnostic endpoint.
"""

from __future__ import annotations

import logging
from datetime import datetime

from credit_engine.models.audit import (
    AuditDetails,
    AuditEntry,
    AuditEvent,
    AuditStatus,
    ErrorDetails,
    audit_details_adapter,
)
from credit_engine.state.repository import AuditRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class AuditService:
    """Typed front door to the append-only audit log.

    Parameters
    ----------
    session:
        Session whose transaction the audit entry joins, so an entry is
        committed together with the state change it describes.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._repo = AuditRepository(session)

    async def record(
        self,
        event: AuditEvent,
        *,
        user_id: str,
        details: AuditDetails,
        status: AuditStatus = AuditStatus.SUCCESS,
        subscription_id: str | None = None,
        now: datetime | None = None,
    ) -> str:
        return await self._repo.record(
            event,
            user_id=user_id,
            status=status,
            details=details,
            subscription_id=subscription_id,
            now=now,
        )

    async def list_entries(
        self,
        *,
        user_id: str | None = None,
        event: AuditEvent | None = None,
        subscription_id: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEntry]:
        rows = await self._repo.query(
            user_id=user_id,
            event_type=event.value if event is not None else None,
            subscription_id=subscription_id,
            since=since,
            limit=limit,
            offset=offset,
        )
        return [
            AuditEntry(
                id=r.id,
                event_type=AuditEvent(r.event_type),
                user_id=r.user_id,
                subscription_id=r.subscription_id,
                status=AuditStatus(r.status),
                details=audit_details_adapter.validate_python(r.details_json),
                created_at=r.created_at,
            )
            for r in rows
        ]

    async def verify_chain(self, user_id: str) -> tuple[bool, int]:
        return await self._repo.verify_chain(user_id)


async def record_error(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: str,
    stage: str,
    error: str,
    subscription_id: str | None = None,
    invoice_id: str | None = None,
    now: datetime | None = None,
) -> None:
    """Write a ``billing_error`` entry in its own transaction.

    Used after the failing transaction has rolled back.  If even this write
    fails the error is logged and the batch carries on.
    """
    try:
        async with session_factory.begin() as session:
            await AuditService(session).record(
                AuditEvent.BILLING_ERROR,
                user_id=user_id,
                status=AuditStatus.ERROR,
                details=ErrorDetails(stage=stage, error=error[:1000], invoice_id=invoice_id),
                subscription_id=subscription_id,
                now=now,
            )
    except Exception:
        logger.exception("Could not audit %s error for user=%s", stage, user_id)
