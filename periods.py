import calendar
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings


class TrendPeriod(str, Enum):
    week = "week"
    month = "month"
    year = "year"


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def today_local() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    first = month_start(d)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def add_months(d: date, count: int) -> date:
    """Shift ``d`` by ``count`` calendar months, clamping the day to the month length."""
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def month_period(d: date) -> Period:
    return Period("month", month_start(d), month_end(d))


def year_to_date(d: date) -> Period:
    return Period("year_to_date", date(d.year, 1, 1), month_end(d))


def month_label(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def week_label(iso_year: int, iso_week: int) -> str:
    return f"{iso_year:04d}-W{iso_week:02d}"


def parse_month(value: Union[str, date, None], *, today: Optional[date] = None) -> date:
    """Resolve a ``YYYY-MM`` / ``YYYY-MM-DD`` string or date to the first of its month.

    ``None`` resolves to the current month.
    """
    if value is None:
        return month_start(today or today_local())
    if isinstance(value, date):
        return month_start(value)
    raw = value.strip()
    try:
        if len(raw) == 7:
            year_str, month_str = raw.split("-", 1)
            return date(int(year_str), int(month_str), 1)
        return month_start(date.fromisoformat(raw))
    except ValueError as exc:
        raise ValueError(f"Invalid month: {value!r}") from exc


def parse_date(value: Optional[str]) -> Optional[date]:
    if value is None or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value!r}") from exc
