"""Notification endpoints: list, mark read, delete."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from credit_api.dependencies import SessionDep, UserDep
from credit_api.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationIds(BaseModel):
    notification_ids: list[str] = Field(..., min_length=1, max_length=100)


@router.get("")
async def list_notifications(
    session: SessionDep,
    user_id: UserDep,
    unread_only: bool = Query(default=False),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    items = await NotificationService(session, user_id).list_notifications(
        unread_only=unread_only,
        limit=limit,
        offset=offset,
    )
    return {"notifications": items, "limit": limit, "offset": offset}


@router.post("/mark-read")
async def mark_read(body: NotificationIds, session: SessionDep, user_id: UserDep) -> dict[str, Any]:
    updated = await NotificationService(session, user_id).mark_read(body.notification_ids)
    return {"updated": updated}


@router.post("/delete")
async def delete_notifications(body: NotificationIds, session: SessionDep, user_id: UserDep) -> dict[str, Any]:
    deleted = await NotificationService(session, user_id).delete(body.notification_ids)
    return {"deleted": deleted}
