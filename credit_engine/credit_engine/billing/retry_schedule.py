"""Fixed payment-retry schedule.

Every retry date is an offset from the *first* failure of an invoice, not
from the previous attempt: a failure on day 0 retries on days 1, 2, 4, 7
and 14.  The subscription is cancelled only after attempt 5 fails.

Billing passes run once a day, so due-ness is decided per UTC calendar
day: anything dated before :func:`due_cutoff` of the pass is due.
"""

from __future__ import annotations

from datetime import UTC, datetime, time, timedelta

RETRY_OFFSETS_DAYS: tuple[int, ...] = (1, 2, 4, 7, 14)
MAX_ATTEMPTS = len(RETRY_OFFSETS_DAYS)


def retry_date_for(anchor: datetime, attempt_number: int) -> datetime:
    """Return when attempt *attempt_number* (1-based) is due.

    Raises
    ------
    ValueError
        If *attempt_number* is outside ``1..MAX_ATTEMPTS``.
    """
    if not 1 <= attempt_number <= MAX_ATTEMPTS:
        raise ValueError(f"attempt_number must be between 1 and {MAX_ATTEMPTS}, got {attempt_number}")
    return anchor + timedelta(days=RETRY_OFFSETS_DAYS[attempt_number - 1])


def next_attempt_number(attempt_number: int) -> int | None:
    """The attempt that follows a failed *attempt_number*, or ``None`` after the last."""
    if attempt_number >= MAX_ATTEMPTS:
        return None
    return attempt_number + 1


def days_until(retry_date: datetime, now: datetime) -> int:
    """UTC calendar days from *now* to *retry_date*, never negative."""
    delta = retry_date.astimezone(UTC).date() - now.astimezone(UTC).date()
    return max(delta.days, 0)


def due_cutoff(now: datetime) -> datetime:
    """Midnight UTC after *now*; items dated before it are due on *now*'s day."""
    return datetime.combine(now.astimezone(UTC).date() + timedelta(days=1), time.min, tzinfo=UTC)
