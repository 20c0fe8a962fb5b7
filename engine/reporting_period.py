from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional

PERIOD_TYPES = ("daily", "weekly", "monthly", "yearly", "all-time")

ALL_TIME_START = datetime(2000, 1, 1)

_END_OF_DAY = timedelta(days=1) - timedelta(microseconds=1)

_REQUIRED_PARTS = {
    "daily": ("year", "month", "day"),
    "weekly": ("year", "week"),
    "monthly": ("year", "month"),
    "yearly": ("year",),
    "all-time": (),
}


@dataclass(frozen=True)
class ReportingPeriod:
    type: str
    start: datetime
    end: datetime
    year: Optional[int] = None
    month: Optional[int] = None
    week: Optional[int] = None
    day: Optional[int] = None

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "year": self.year,
            "month": self.month,
            "week": self.week,
            "day": self.day,
            "date": self.start.isoformat() if self.type == "daily" else None,
            "from": self.start.isoformat(),
            "to": self.end.isoformat(),
        }


def build_date_range(
    period_type: str,
    year: Optional[int] = None,
    month: Optional[int] = None,
    week: Optional[int] = None,
    day: Optional[int] = None,
    now: Optional[datetime] = None,
) -> ReportingPeriod:
    """
    Inclusive UTC bounds (naive datetimes) for a reporting period.
    Weeks are ISO weeks, Monday through Sunday.
    """
    if period_type not in _REQUIRED_PARTS:
        raise ValueError(f"Invalid period type: {period_type}")
    parts = {"year": year, "month": month, "week": week, "day": day}
    missing = [name for name in _REQUIRED_PARTS[period_type] if parts[name] is None]
    if missing:
        raise ValueError(f"{period_type} period requires: {', '.join(missing)}")

    if period_type == "daily":
        start = datetime(year, month, day)
        end = start + _END_OF_DAY
    elif period_type == "weekly":
        start = datetime.combine(date.fromisocalendar(year, week, 1), datetime.min.time())
        end = start + timedelta(days=6) + _END_OF_DAY
    elif period_type == "monthly":
        start = datetime(year, month, 1)
        next_month = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
        end = next_month - timedelta(microseconds=1)
    elif period_type == "yearly":
        start = datetime(year, 1, 1)
        end = datetime(year + 1, 1, 1) - timedelta(microseconds=1)
    else:
        start = ALL_TIME_START
        end = now or datetime.utcnow()

    return ReportingPeriod(
        type=period_type, start=start, end=end,
        year=year, month=month, week=week, day=day,
    )
