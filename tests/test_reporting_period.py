from datetime import datetime

import pytest

from engine.reporting_period import ALL_TIME_START, build_date_range


def test_daily_bounds_are_inclusive():
    period = build_date_range("daily", 2024, 2, day=29)
    assert period.start == datetime(2024, 2, 29)
    assert period.end == datetime(2024, 2, 29, 23, 59, 59, 999999)
    assert period.to_dict()["date"] == "2024-02-29T00:00:00"


def test_weekly_uses_iso_weeks():
    period = build_date_range("weekly", 2024, week=1)
    assert period.start == datetime(2024, 1, 1)
    assert period.end.date() == datetime(2024, 1, 7).date()


def test_monthly_december_rolls_into_next_year():
    period = build_date_range("monthly", 2023, 12)
    assert period.start == datetime(2023, 12, 1)
    assert period.end == datetime(2023, 12, 31, 23, 59, 59, 999999)
    assert period.contains(datetime(2023, 12, 31, 12))
    assert not period.contains(datetime(2024, 1, 1))


def test_yearly():
    period = build_date_range("yearly", 2022)
    assert period.start == datetime(2022, 1, 1)
    assert period.end.year == 2022


def test_all_time():
    now = datetime(2025, 6, 1)
    period = build_date_range("all-time", now=now)
    assert period.start == ALL_TIME_START
    assert period.end == now


def test_invalid_period_type():
    with pytest.raises(ValueError):
        build_date_range("quarterly", 2024)


def test_missing_period_parts():
    with pytest.raises(ValueError, match="month"):
        build_date_range("monthly", 2024)
