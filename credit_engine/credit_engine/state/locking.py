"""Per-account write serialization.

Ledger appends and hold check-then-insert sequences for one
``(user_id, credit_category)`` account must not interleave.  On PostgreSQL the
lock is a transaction-scoped advisory lock (``pg_advisory_xact_lock``), which
the server drops at commit or rollback.  SQLite has no advisory locks, so a
process-local :class:`asyncio.Lock` per account is held until the owning
session's outermost transaction ends.

Locks are re-entrant within one session transaction: acquiring the same key
twice is a no-op, which lets a hold conversion lock the account once and then
append ledger entries through :class:`LedgerStore` without deadlocking.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import weakref
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

from credit_engine.state.database import is_postgresql

logger = logging.getLogger(__name__)

_HELD_KEYS = "credit_engine.held_lock_keys"
_LOCAL_LOCKS = "credit_engine.local_locks"
_LISTENING = "credit_engine.lock_listener"

# Process-local locks for dialects without advisory locking.  Entries vanish
# once no session references the lock any more.
_local_registry: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


def lock_key(*parts: str) -> str:
    """Build a lock key from its components, e.g. ``("ledger", user, category)``."""
    return ":".join(parts)


def advisory_lock_id(key: str) -> int:
    """Map *key* to a stable signed 64-bit advisory lock id.

    Python's built-in ``hash()`` is salted per process, so two workers would
    disagree on the id; a SHA-256 prefix is stable across processes.
    """
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def _release_on_transaction_end(sync_session: Session, transaction: SessionTransaction) -> None:
    if transaction.parent is not None:
        return
    sync_session.info.pop(_HELD_KEYS, None)
    locks: list[asyncio.Lock] = sync_session.info.pop(_LOCAL_LOCKS, [])
    for lock in reversed(locks):
        if lock.locked():
            lock.release()


def _ensure_listener(session: AsyncSession) -> None:
    sync_session = session.sync_session
    if sync_session.info.get(_LISTENING):
        return
    event.listen(sync_session, "after_transaction_end", _release_on_transaction_end)
    sync_session.info[_LISTENING] = True


async def acquire(session: AsyncSession, key: str) -> None:
    """Serialize the remainder of *session*'s transaction on *key*.

    Blocks until no other transaction holds *key*.  The lock is released
    automatically when the session's outermost transaction commits, rolls
    back, or the session is closed.
    """
    info: dict[str, Any] = session.sync_session.info
    held: set[str] = info.setdefault(_HELD_KEYS, set())
    if key in held:
        return

    _ensure_listener(session)

    if is_postgresql(session):
        await session.execute(
            text("SELECT pg_advisory_xact_lock(:lock_id)"),
            {"lock_id": advisory_lock_id(key)},
        )
    else:
        # Make sure a transaction is open so that its end releases the lock.
        if not session.in_transaction():
            await session.begin()
        lock = _local_registry.get(key)
        if lock is None:
            lock = asyncio.Lock()
            _local_registry[key] = lock
        await lock.acquire()
        info.setdefault(_LOCAL_LOCKS, []).append(lock)

    held.add(key)
    logger.debug("Acquired account lock %s", key)


async def lock_account(session: AsyncSession, user_id: str, category: str) -> None:
    """Serialize ledger and hold writes for one ``(user_id, category)`` account."""
    await acquire(session, lock_key("account", user_id, category))


async def lock_accounts(session: AsyncSession, user_id: str, categories: list[str]) -> None:
    """Lock several accounts of one user in a fixed order to avoid lock inversion."""
    for category in sorted(set(categories)):
        await lock_account(session, user_id, category)
