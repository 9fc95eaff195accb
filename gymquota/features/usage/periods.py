"""
gymquota/features/usage/periods.py

Monthly billing periods anchored on a day of month.

A period is the half-open interval [start, end) between two consecutive
anchor dates at midnight UTC. Anchor days past the end of a short month
clamp to its last day (anchor 31 -> Feb 28/29).
"""

import calendar
from datetime import date, datetime, time, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict


class UsagePeriod(BaseModel):
    """One billing cycle: [start, end), both midnight UTC."""
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= normalize_now(moment) < self.end

    @property
    def start_date(self) -> date:
        return self.start.date()

    @property
    def end_date(self) -> date:
        return self.end.date()

    @property
    def reset_date(self) -> str:
        """ISO-8601 date on which the next period begins."""
        return self.end.date().isoformat()

    def next(self, anchor_day: int) -> "UsagePeriod":
        return billing_period(self.end, anchor_day)


def normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _anchor_date(year: int, month: int, anchor_day: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor_day, last_day))


def _shift_month(year: int, month: int, delta: int):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def validate_anchor_day(anchor_day: int) -> int:
    if isinstance(anchor_day, bool) or not isinstance(anchor_day, int) or not 1 <= anchor_day <= 31:
        raise ValueError(f"anchor_day must be an int in 1..31, got {anchor_day!r}")
    return anchor_day


def billing_period(now: Optional[datetime] = None, anchor_day: int = 1) -> UsagePeriod:
    """
    Return the billing period containing `now`.

    Args:
        now: Moment to resolve (defaults to now(); naive values are UTC)
        anchor_day: Day of month the period starts on (1 = calendar month)

    Returns:
        UsagePeriod with start <= now < end
    """
    validate_anchor_day(anchor_day)
    moment = normalize_now(now)
    today = moment.date()

    start = _anchor_date(today.year, today.month, anchor_day)
    if start > today:
        year, month = _shift_month(today.year, today.month, -1)
        start = _anchor_date(year, month, anchor_day)

    year, month = _shift_month(start.year, start.month, 1)
    end = _anchor_date(year, month, anchor_day)

    return UsagePeriod(start=_midnight(start), end=_midnight(end))


def anchor_day_for(created_at: Optional[datetime], mode: str = "calendar") -> int:
    """Anchor day for a new organization: 1 in calendar mode, signup day otherwise."""
    if (mode or "calendar").lower() != "signup" or created_at is None:
        return 1
    return normalize_now(created_at).day
