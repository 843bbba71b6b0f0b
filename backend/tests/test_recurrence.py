# Overview: Pytest coverage for recurrence parsing and due-date expansion.

from datetime import date
from types import SimpleNamespace

import pytest
from dairy.services.recurrence_service import (
    DailyRecurrence,
    InvalidRecurrence,
    MonthlyRecurrence,
    WeeklyRecurrence,
    describe,
    expand,
    iter_due_dates,
    parse_recurrence,
    weekday_index,
)
from dairy.validation import ValidationError


# 2026-03-01 is a Sunday
SUNDAY = date(2026, 3, 1)


class TestParseRecurrence:

    def test_daily_ignores_days(self):
        assert parse_recurrence("daily", [1, 2]) == DailyRecurrence()

    def test_weekly_days(self):
        assert parse_recurrence("weekly", [1, 3]) == WeeklyRecurrence(frozenset({1, 3}))

    def test_monthly_single_day(self):
        assert parse_recurrence("monthly", [15]) == MonthlyRecurrence(15)

    @pytest.mark.parametrize(
        "cycle,days",
        [
            ("weekly", []),
            ("weekly", None),
            ("weekly", [7]),
            ("weekly", [-1]),
            ("monthly", []),
            ("monthly", [1, 15]),
            ("monthly", [0]),
            ("monthly", [29]),
            ("yearly", [1]),
        ],
    )
    def test_invalid_schedules(self, cycle, days):
        with pytest.raises(InvalidRecurrence):
            parse_recurrence(cycle, days)

    def test_invalid_recurrence_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            parse_recurrence("weekly", [])

    def test_booleans_are_not_days(self):
        with pytest.raises(InvalidRecurrence):
            parse_recurrence("weekly", [True])


class TestExpansion:

    def test_weekday_index_is_sunday_based(self):
        assert weekday_index(SUNDAY) == 0
        assert weekday_index(date(2026, 3, 7)) == 6

    def test_weekly_dates(self):
        dates = list(iter_due_dates(
            WeeklyRecurrence(frozenset({1, 3})),
            start_date=SUNDAY,
            end_date=None,
            date_from=SUNDAY,
            date_to=date(2026, 3, 14),
        ))
        assert dates == [date(2026, 3, 2), date(2026, 3, 4), date(2026, 3, 9), date(2026, 3, 11)]

    def test_daily_window_intersects_subscription_dates(self):
        dates = list(iter_due_dates(
            DailyRecurrence(),
            start_date=date(2026, 3, 5),
            end_date=date(2026, 3, 7),
            date_from=SUNDAY,
            date_to=date(2026, 3, 31),
        ))
        assert dates == [date(2026, 3, 5), date(2026, 3, 6), date(2026, 3, 7)]

    def test_monthly_clamps_to_last_day(self):
        dates = list(iter_due_dates(
            MonthlyRecurrence(31),
            start_date=date(2026, 1, 1),
            end_date=None,
            date_from=date(2026, 1, 1),
            date_to=date(2026, 4, 30),
        ))
        assert dates == [date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31), date(2026, 4, 30)]

    def test_monthly_leap_year(self):
        assert MonthlyRecurrence(30).date_in_month(2028, 2) == date(2028, 2, 29)

    def test_weekly_monday_wednesday_friday_in_january_2024(self):
        # 2024-01-01 is a Monday
        subscription = SimpleNamespace(
            billing_cycle="weekly",
            delivery_days=[1, 3, 5],
            start_date=date(2024, 1, 1),
            end_date=None,
        )
        dates = set(expand(subscription, date(2024, 1, 1), date(2024, 1, 14)))
        assert dates == {
            date(2024, 1, 1), date(2024, 1, 3), date(2024, 1, 5),
            date(2024, 1, 8), date(2024, 1, 10), date(2024, 1, 12),
        }

    @pytest.mark.parametrize(
        "year,expected",
        [
            (2023, date(2023, 2, 28)),
            (2024, date(2024, 2, 29)),
        ],
    )
    def test_monthly_day_30_in_february(self, year, expected):
        dates = list(iter_due_dates(
            MonthlyRecurrence(30),
            start_date=date(year, 1, 1),
            end_date=None,
            date_from=date(year, 2, 1),
            date_to=date(year, 3, 1),
        ))
        assert dates == [expected]

    def test_empty_when_window_before_start(self):
        dates = list(iter_due_dates(
            DailyRecurrence(),
            start_date=date(2026, 4, 1),
            end_date=None,
            date_from=SUNDAY,
            date_to=date(2026, 3, 31),
        ))
        assert dates == []

    def test_end_before_start_rejected(self):
        with pytest.raises(InvalidRecurrence):
            iter_due_dates(
                DailyRecurrence(),
                start_date=date(2026, 3, 10),
                end_date=date(2026, 3, 9),
                date_from=SUNDAY,
                date_to=date(2026, 3, 31),
            )

    def test_expand_is_restartable(self):
        subscription = SimpleNamespace(
            billing_cycle="weekly",
            delivery_days=[0],
            start_date=SUNDAY,
            end_date=None,
        )
        first = list(expand(subscription, SUNDAY, date(2026, 3, 31)))
        second = list(expand(subscription, SUNDAY, date(2026, 3, 31)))
        assert first == second == [date(2026, 3, d) for d in (1, 8, 15, 22, 29)]


class TestDescribe:

    def test_descriptions(self):
        assert describe(DailyRecurrence()) == "Every day"
        assert describe(WeeklyRecurrence(frozenset({3, 1}))) == "Every Monday, Wednesday"
        assert describe(MonthlyRecurrence(5)) == "Monthly on day 5"
