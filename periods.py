from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    year: int
    month: int
    start: date
    end: date


def month_bounds(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Period(year, month, first, next_month - date.resolution)


def local_today() -> date:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).date()


def current_month(today: Optional[date] = None) -> Period:
    today = today or local_today()
    return month_bounds(today.year, today.month)


def previous_month(today: Optional[date] = None) -> Period:
    today = today or local_today()
    first_this = today.replace(day=1)
    last_month_end = first_this - date.resolution
    return month_bounds(last_month_end.year, last_month_end.month)
