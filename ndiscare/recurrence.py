"""Expansion of a single shift definition into a recurring series.

Occurrences keep the wall-clock time of the first shift; no timezone
conversion is applied. Monthly series stay anchored to the day of month of
the first occurrence and clamp to the last day of shorter months, so a
series starting on the 31st lands on Feb 28/29, Mar 31, Apr 30 and so on.
"""

import calendar
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from .config import settings

RECURRENCE_UNITS = ("daily", "weekly", "fortnightly", "monthly")
END_CONDITIONS = ("occurrences", "end_date")

_FIXED_STEP_DAYS = {
    "daily": 1,
    "weekly": 7,
    "fortnightly": 14,
}


@dataclass(frozen=True)
class Occurrence:
    start: datetime
    end: datetime


def new_series_id() -> str:
    return f"series_{uuid.uuid4().hex}"


def add_months(anchor: datetime, months: int) -> datetime:
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return anchor.replace(year=year, month=month, day=min(anchor.day, last_day))


def nth_start(first_start: datetime, unit: str, index: int) -> datetime:
    if unit == "monthly":
        return add_months(first_start, index)
    step = _FIXED_STEP_DAYS.get(unit)
    if step is None:
        raise ValueError(f"Unsupported recurrence unit: {unit}")
    return first_start + timedelta(days=step * index)


def generate_occurrences(
    start: datetime,
    end: datetime,
    unit: str,
    count: int | None = None,
    end_date: date | None = None,
) -> list[Occurrence]:
    normalized_unit = (unit or "").strip().lower()
    if normalized_unit not in RECURRENCE_UNITS:
        raise ValueError(f"Unsupported recurrence unit: {unit}")
    if (start.tzinfo is None) != (end.tzinfo is None):
        raise ValueError("Start and end must both carry a UTC offset or both omit it")
    if end <= start:
        raise ValueError("Shift end must be after its start")
    if count is None and end_date is None:
        raise ValueError("Either an occurrence count or an end date is required")
    if count is not None and end_date is not None:
        raise ValueError("Occurrence count and end date are mutually exclusive")

    duration = end - start
    out: list[Occurrence] = []

    if count is not None:
        max_count = max(1, int(settings.RECURRENCE_MAX_OCCURRENCES))
        if count < 1 or count > max_count:
            raise ValueError(f"Occurrence count must be between 1 and {max_count}")
        for index in range(count):
            current = nth_start(start, normalized_unit, index)
            out.append(Occurrence(start=current, end=current + duration))
        return out

    if end_date < start.date():
        raise ValueError("End date cannot be before the first shift")
    max_bounded = max(1, int(settings.RECURRENCE_MAX_DATE_BOUNDED))
    index = 0
    while True:
        current = nth_start(start, normalized_unit, index)
        if current.date() > end_date:
            break
        if len(out) >= max_bounded:
            raise ValueError(
                f"Date range produces more than {max_bounded} shifts; shorten the range"
            )
        out.append(Occurrence(start=current, end=current + duration))
        index += 1
    return out
