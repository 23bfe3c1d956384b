"""Deadline arithmetic shared by batches, disbursements and suspense.

Working days are Monday to Friday; public holidays are not modelled here.
"""

from datetime import datetime, date, timedelta, timezone
from typing import TypeVar

from app.config import settings

_D = TypeVar("_D", date, datetime)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_working_day(d: date) -> bool:
    return d.isoweekday() <= 5


def add_working_days(start: _D, days: int) -> _D:
    """Step forward one calendar day at a time, counting only weekdays.

    The start day itself is never counted, so Friday + 1 is Monday.
    """
    if days < 0:
        raise ValueError("days must be non-negative")
    current = start
    counted = 0
    while counted < days:
        current = current + timedelta(days=1)
        if is_working_day(current):
            counted += 1
    return current


def batch_sla_deadline(started_at: datetime, hours: int | None = None) -> datetime:
    return started_at + timedelta(hours=hours if hours is not None else settings.batch_sla_hours)


def disbursement_sla_deadline(initiated_at: datetime, working_days: int | None = None) -> datetime:
    if working_days is None:
        working_days = settings.disbursement_sla_working_days
    return add_working_days(initiated_at, working_days)


def is_deadline_passed(deadline: datetime | None, now: datetime | None = None) -> bool:
    if deadline is None:
        return False
    return (now or utcnow()) > deadline
