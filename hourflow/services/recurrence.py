"""
Pure recurrence math for recurring jobs.

Contract:
    Nothing here reads the clock, the database or settings. Callers pass
    "today" and the job; functions return plain ``datetime.date`` values.

Weekday numbering follows the stored jobs: 0 = Sunday ... 6 = Saturday.
Python's ``date.weekday()`` is 0 = Monday, hence ``weekday_index()``.
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import List, Optional, Tuple

from hourflow.data.models import FREQUENCIES, RecurringJob

# Upper bound on dates returned by one call. Anything beyond is picked up by
# the next run, because the watermark only advances to the last date returned.
MAX_OCCURRENCES_PER_RUN = 100

_STEP_DAYS = {"weekly": 7, "biweekly": 14}


def weekday_index(d: date) -> int:
    """Sunday-based weekday (0 = Sunday)."""
    return (d.weekday() + 1) % 7


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(year: int, month: int, count: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + count
    return index // 12, index % 12 + 1


def day_in_month(year: int, month: int, day_of_month: int) -> date:
    """The given day of a month, clamped to the month's last day."""
    return date(year, month, min(day_of_month, days_in_month(year, month)))


def first_weekday_on_or_after(start: date, day_of_week: int) -> date:
    return start + timedelta(days=(day_of_week - weekday_index(start)) % 7)


def validate_job(job: RecurringJob) -> None:
    """Raise ValueError if the job can't produce a schedule."""
    if job.frequency not in FREQUENCIES:
        raise ValueError(f"Unknown frequency: {job.frequency!r}")
    if not 0 <= job.day_of_week <= 6:
        raise ValueError(f"day_of_week must be 0-6, got {job.day_of_week}")
    if job.frequency == "monthly":
        if job.day_of_month is None or not 1 <= job.day_of_month <= 31:
            raise ValueError(f"day_of_month must be 1-31, got {job.day_of_month}")
    if job.duration_seconds <= 0:
        raise ValueError("duration_seconds must be positive")
    if job.start_date is None:
        raise ValueError("start_date is required")
    if job.end_date is not None and job.end_date < job.start_date:
        raise ValueError("end_date is before start_date")


def due_window(job: RecurringJob, today: date) -> Tuple[date, date]:
    """
    (from, to) for the next generation pass.

    Starts the day after the watermark, or at start_date when nothing has
    been generated yet; never earlier than start_date. ``to`` is today.
    """
    if job.last_generated_date is not None:
        start = job.last_generated_date + timedelta(days=1)
        if job.start_date is not None and start < job.start_date:
            start = job.start_date
    else:
        start = job.start_date
    return start, today


def compute_due_dates(
    job: RecurringJob,
    from_date: date,
    to_date: date,
    limit: int = MAX_OCCURRENCES_PER_RUN,
) -> List[date]:
    """
    Occurrence dates in [from_date, to_date], oldest first.

    Rules:
        - weekly/biweekly: first matching weekday on/after from_date, then
          every 7/14 days. Biweekly keeps the fortnight anchored on the
          first matching weekday on/after start_date.
        - monthly: day_of_month in from_date's month (or the next month if
          that day has passed), then one calendar month at a time.
        - stops at to_date, at end_date (inclusive) and after ``limit`` dates.
    """
    if limit <= 0 or from_date > to_date:
        return []
    last = to_date if job.end_date is None else min(to_date, job.end_date)

    dates: List[date] = []
    if job.frequency in _STEP_DAYS:
        step = timedelta(days=_STEP_DAYS[job.frequency])
        cursor = first_weekday_on_or_after(from_date, job.day_of_week)
        if job.frequency == "biweekly" and job.start_date is not None:
            anchor = first_weekday_on_or_after(job.start_date, job.day_of_week)
            if cursor < anchor:
                cursor = anchor
            elif (cursor - anchor).days % 14:
                cursor += timedelta(days=7)
        while cursor <= last and len(dates) < limit:
            dates.append(cursor)
            cursor += step
    elif job.frequency == "monthly":
        day_of_month = job.day_of_month or 1
        year, month = from_date.year, from_date.month
        cursor = day_in_month(year, month, day_of_month)
        if cursor < from_date:
            year, month = add_months(year, month, 1)
            cursor = day_in_month(year, month, day_of_month)
        while cursor <= last and len(dates) < limit:
            dates.append(cursor)
            year, month = add_months(year, month, 1)
            cursor = day_in_month(year, month, day_of_month)
    else:
        raise ValueError(f"Unknown frequency: {job.frequency!r}")
    return dates


def next_due_date(job: RecurringJob, today: date) -> Optional[date]:
    """The first date the job will generate on or after today, if any."""
    start = today
    if job.start_date is not None and job.start_date > start:
        start = job.start_date
    if job.last_generated_date is not None and job.last_generated_date >= start:
        start = job.last_generated_date + timedelta(days=1)
    far = start + timedelta(days=62)
    dates = compute_due_dates(job, start, far, limit=1)
    return dates[0] if dates else None


def seconds_to_hours(seconds: int) -> float:
    """Hours rounded to two decimals, as billed on invoices."""
    return round(seconds / 3600, 2)
