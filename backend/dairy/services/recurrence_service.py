# Overview: Calendar expansion of subscription recurrences into concrete delivery dates.

"""
Recurrence Expansion

A subscription's schedule is one of three variants:

    DailyRecurrence                       every date
    WeeklyRecurrence(days)                weekday index in days (0 = Sunday .. 6 = Saturday)
    MonthlyRecurrence(day)                that day-of-month, clamped to the month's last day

expand() yields due dates lazily, intersected with the subscription's
[start_date, end_date] window. It keeps no state between calls, so calling
it again with the same inputs restarts the same sequence.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterator, Union

from ..validation import ValidationError


class InvalidRecurrence(ValidationError):
    """Schedule definition cannot produce delivery dates."""


WEEKDAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
MAX_SUBSCRIPTION_DAY_OF_MONTH = 28


def weekday_index(d: date) -> int:
    """0 = Sunday .. 6 = Saturday (Python's date.weekday() has Monday = 0)."""
    return (d.weekday() + 1) % 7


@dataclass(frozen=True)
class DailyRecurrence:
    def occurs_on(self, d: date) -> bool:
        return True


@dataclass(frozen=True)
class WeeklyRecurrence:
    days: frozenset

    def __post_init__(self):
        if not self.days:
            raise InvalidRecurrence("Weekly subscriptions need at least one delivery day")
        for day in self.days:
            if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
                raise InvalidRecurrence(f"Invalid weekday {day!r}; expected 0 (Sunday) to 6 (Saturday)")

    def occurs_on(self, d: date) -> bool:
        return weekday_index(d) in self.days


@dataclass(frozen=True)
class MonthlyRecurrence:
    day: int

    def __post_init__(self):
        if isinstance(self.day, bool) or not isinstance(self.day, int) or not 1 <= self.day <= 31:
            raise InvalidRecurrence(f"Invalid day of month {self.day!r}")

    def date_in_month(self, year: int, month: int) -> date:
        last_day = calendar.monthrange(year, month)[1]
        return date(year, month, min(self.day, last_day))

    def occurs_on(self, d: date) -> bool:
        return d == self.date_in_month(d.year, d.month)


Recurrence = Union[DailyRecurrence, WeeklyRecurrence, MonthlyRecurrence]


def parse_recurrence(billing_cycle: str, delivery_days) -> Recurrence:
    """
    Build the recurrence variant for a stored or submitted schedule.

    Monthly subscriptions accept a single day-of-month in 1-28.
    """
    if billing_cycle == "daily":
        return DailyRecurrence()

    days = list(delivery_days or [])

    if billing_cycle == "weekly":
        if not days:
            raise InvalidRecurrence("Weekly subscriptions need at least one delivery day")
        return WeeklyRecurrence(frozenset(days))

    if billing_cycle == "monthly":
        if len(days) != 1:
            raise InvalidRecurrence("Monthly subscriptions need exactly one day of month")
        day = days[0]
        if isinstance(day, bool) or not isinstance(day, int) or not 1 <= day <= MAX_SUBSCRIPTION_DAY_OF_MONTH:
            raise InvalidRecurrence(
                f"Day of month must be between 1 and {MAX_SUBSCRIPTION_DAY_OF_MONTH}"
            )
        return MonthlyRecurrence(day)

    raise InvalidRecurrence(f"Unknown billing cycle '{billing_cycle}'")


def recurrence_for(subscription) -> Recurrence:
    return parse_recurrence(subscription.billing_cycle, subscription.delivery_days)


def validate_date_window(start_date: date, end_date: date | None) -> None:
    if end_date is not None and end_date < start_date:
        raise InvalidRecurrence("end_date cannot be before start_date")


def _months_between(lo: date, hi: date) -> Iterator[tuple[int, int]]:
    year, month = lo.year, lo.month
    while (year, month) <= (hi.year, hi.month):
        yield year, month
        month += 1
        if month > 12:
            year, month = year + 1, 1


def _iter_dates(recurrence: Recurrence, lo: date, hi: date) -> Iterator[date]:
    if isinstance(recurrence, MonthlyRecurrence):
        for year, month in _months_between(lo, hi):
            d = recurrence.date_in_month(year, month)
            if lo <= d <= hi:
                yield d
        return

    d = lo
    one_day = timedelta(days=1)
    while d <= hi:
        if recurrence.occurs_on(d):
            yield d
        d += one_day


def iter_due_dates(
    recurrence: Recurrence,
    *,
    start_date: date,
    end_date: date | None,
    date_from: date,
    date_to: date,
) -> Iterator[date]:
    """
    Lazily yield due dates in [date_from, date_to] ∩ [start_date, end_date].

    Validation happens eagerly; iteration happens on demand.
    """
    validate_date_window(start_date, end_date)
    lo = max(start_date, date_from)
    hi = date_to if end_date is None else min(end_date, date_to)
    if lo > hi:
        return iter(())
    return _iter_dates(recurrence, lo, hi)


def expand(subscription, date_from: date, date_to: date) -> Iterator[date]:
    """Due dates for a subscription within [date_from, date_to]."""
    return iter_due_dates(
        recurrence_for(subscription),
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        date_from=date_from,
        date_to=date_to,
    )


def describe(recurrence: Recurrence) -> str:
    if isinstance(recurrence, DailyRecurrence):
        return "Every day"
    if isinstance(recurrence, WeeklyRecurrence):
        return "Every " + ", ".join(WEEKDAY_NAMES[d] for d in sorted(recurrence.days))
    return f"Monthly on day {recurrence.day}"
