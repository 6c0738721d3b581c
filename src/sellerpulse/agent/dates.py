"""Relative date ranges for the ``filterType`` tool argument."""

from datetime import date, timedelta
from typing import Optional, Tuple

FILTER_TYPES = ("currentmonth", "previousmonth", "currentyear", "lastyear")

DateRange = Tuple[date, date]


def _month_end(first: date) -> date:
    next_month = (first.replace(day=28) + timedelta(days=4)).replace(day=1)
    return next_month - timedelta(days=1)


def current_month(today: date) -> DateRange:
    first = today.replace(day=1)
    return first, _month_end(first)


def previous_month(today: date) -> DateRange:
    last = today.replace(day=1) - timedelta(days=1)
    return last.replace(day=1), last


def current_year(today: date) -> DateRange:
    """Year to date."""
    return date(today.year, 1, 1), today


def last_year(today: date) -> DateRange:
    return date(today.year - 1, 1, 1), date(today.year - 1, 12, 31)


def range_for_filter(filter_type: Optional[str], today: date) -> DateRange:
    """Map a filterType to an inclusive date range; unknown or missing means previous month."""
    normalized = (filter_type or "").lower()
    if normalized == "currentmonth":
        return current_month(today)
    if normalized == "currentyear":
        return current_year(today)
    if normalized == "lastyear":
        return last_year(today)
    return previous_month(today)


def month_range(start_month: str, end_month: str) -> DateRange:
    """Inclusive range from two YYYY-MM strings."""
    start_year, start_mon = (int(p) for p in start_month.split("-")[:2])
    end_year, end_mon = (int(p) for p in end_month.split("-")[:2])
    start = date(start_year, start_mon, 1)
    end = _month_end(date(end_year, end_mon, 1))
    if end < start:
        raise ValueError(f"endMonth {end_month} is before startMonth {start_month}")
    return start, end
