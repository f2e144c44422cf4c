"""Unit tests for the per-user hash-chained audit log."""

from __future__ import annotations

import pytest
from credit_engine.models.audit import AuditEvent, AuditStatus, ErrorDetails, HoldDetails
from credit_engine.state.repository import AuditRepository
from credit_engine.state.tables import AuditLogTable
from sqlalchemy import update


def _hold_details(i: int) -> HoldDetails:
    return HoldDetails(hold_id=f"h{i}", category="scraper", amount=i + 1, reference_id=f"job-{i}")


async def _record(repo: AuditRepository, event: AuditEvent, user_id: str, i: int, clock) -> str:
    return await repo.record(event, user_id=user_id, status=AuditStatus.SUCCESS, details=_hold_details(i), now=clock())


class TestAuditWrite:
    @pytest.mark.asyncio
    async def test_entries_chain_per_user(self, session, clock):
        repo = AuditRepository(session)
        await _record(repo, AuditEvent.HOLD_CREATED, "u1", 1, clock)
        await _record(repo, AuditEvent.HOLD_CREATED, "u2", 2, clock)
        clock.advance(seconds=1)
        await _record(repo, AuditEvent.HOLD_RELEASED, "u1", 3, clock)

        entries = await repo.query(user_id="u1")
        newest, oldest = entries
        assert oldest.chain_seq == 1
        assert oldest.previous_hash is None
        assert newest.chain_seq == 2
        assert newest.previous_hash == oldest.entry_hash

        other = await repo.query(user_id="u2")
        assert len(other) == 1
        assert other[0].previous_hash is None

    @pytest.mark.asyncio
    async def test_details_are_tagged_with_their_kind(self, session, clock):
        repo = AuditRepository(session)
        await repo.record(
            AuditEvent.BILLING_ERROR,
            user_id="u1",
            status=AuditStatus.ERROR,
            details=ErrorDetails(stage="renewal", error="gateway timeout"),
            now=clock(),
        )
        (entry,) = await repo.query(user_id="u1", event_type="billing_error")
        assert entry.details_json["kind"] == "error"
        assert entry.details_json["stage"] == "renewal"
        assert entry.status == "error"


class TestAuditChainVerification:
    @pytest.mark.asyncio
    async def test_valid_chain_passes(self, session, clock):
        repo = AuditRepository(session)
        for i in range(4):
            clock.advance(seconds=1)
            await _record(repo, AuditEvent.HOLD_CREATED, "u1", i, clock)

        assert await repo.verify_chain("u1") == (True, 4)

    @pytest.mark.asyncio
    async def test_empty_chain_passes(self, session):
        assert await AuditRepository(session).verify_chain("nobody") == (True, 0)

    @pytest.mark.asyncio
    async def test_tampered_details_detected(self, session_factory, clock):
        async with session_factory.begin() as s:
            repo = AuditRepository(s)
            ids = []
            for i in range(3):
                clock.advance(seconds=1)
                ids.append(
                    await repo.record(
                        AuditEvent.HOLD_CREATED,
                        user_id="u1",
                        status=AuditStatus.SUCCESS,
                        details=_hold_details(i),
                        now=clock(),
                    )
                )

        async with session_factory.begin() as s:
            tampered = _hold_details(1).model_dump(mode="json") | {"amount": 9999}
            await s.execute(update(AuditLogTable).where(AuditLogTable.id == ids[1]).values(details_json=tampered))

        async with session_factory() as s:
            valid, checked = await AuditRepository(s).verify_chain("u1")
        assert valid is False
        assert checked == 1
