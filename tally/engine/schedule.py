"""
tally.engine.schedule — Report Schedule Calculator
===================================================

Pure functions for recurring report schedules.  Nothing in here reads the
wall clock: every function takes the reference instant explicitly, so the
same inputs always yield the same output regardless of the server zone.

Recurrence parameters:
    WEEKLY   ``day`` is a weekday 0–6 with 0 = Sunday.
    MONTHLY  ``day`` is a day-of-month 1–31.  Months shorter than ``day``
             fire on their last day (day 31 → Apr 30, Feb 28/29).
    ``hour`` is 0–23, on the hour, in the schedule's own timezone.

A schedule is *due* whenever it is active and ``next_run_at <= now``;
that state is observed, never stored.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from tally.database.models import ReportPeriod
from tally.engine.periods import ensure_utc, localize, resolve_zone, to_local

__all__ = [
    "InvalidScheduleError",
    "ReportWindow",
    "compute_next_run",
    "current_window",
    "explicit_window",
    "is_due",
    "resolve_report_period",
    "validate_recurrence",
]


class InvalidScheduleError(ValueError):
    """Recurrence parameters rejected at the schedule boundary."""


@dataclass(frozen=True, slots=True)
class ReportWindow:
    """Reporting period covered by one run: ``[start, end)`` plus a label."""

    start: datetime
    end: datetime
    label: str


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_recurrence(
    period_type: ReportPeriod | str,
    day: int,
    hour: int,
    timezone: str,
) -> ReportPeriod:
    """Check recurrence parameters and return the parsed period type.

    Raises
    ------
    InvalidScheduleError
        On an unknown period type, an out-of-range day or hour, or an
        unknown timezone.
    """
    try:
        kind = ReportPeriod(period_type)
    except ValueError as exc:
        raise InvalidScheduleError(f"Unknown report period: {period_type!r}") from exc

    if not _is_int(hour) or not 0 <= hour <= 23:
        raise InvalidScheduleError(f"schedule_hour must be 0-23, got {hour!r}")

    if kind == ReportPeriod.WEEKLY:
        if not _is_int(day) or not 0 <= day <= 6:
            raise InvalidScheduleError(
                f"WEEKLY schedule_day must be a weekday 0-6, got {day!r}"
            )
    elif not _is_int(day) or not 1 <= day <= 31:
        raise InvalidScheduleError(
            f"MONTHLY schedule_day must be 1-31, got {day!r}"
        )

    try:
        resolve_zone(timezone)
    except ValueError as exc:
        raise InvalidScheduleError(str(exc)) from exc
    return kind


# ---------------------------------------------------------------------------
# Next-run calculation
# ---------------------------------------------------------------------------
def _sunday_based_weekday(day: date) -> int:
    # date.weekday(): Monday=0 … Sunday=6  →  Sunday=0 … Saturday=6
    return (day.weekday() + 1) % 7


def _monthly_date(year: int, month: int, day: int) -> date:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last))


def compute_next_run(
    period_type: ReportPeriod | str,
    day: int,
    hour: int,
    timezone: str,
    from_: datetime,
) -> datetime:
    """Return the first run instant strictly after *from_* (UTC-aware).

    If *from_* is itself a run instant, the following occurrence is
    returned, so a freshly computed schedule always points forward.
    """
    kind = validate_recurrence(period_type, day, hour, timezone)
    tz = resolve_zone(timezone)
    reference = ensure_utc(from_)
    local_day = to_local(reference, tz).date()
    run_time = time(hour)

    if kind == ReportPeriod.WEEKLY:
        target = local_day + timedelta(days=(day - _sunday_based_weekday(local_day)) % 7)
        candidate = localize(datetime.combine(target, run_time), tz)
        while candidate <= reference:
            target += timedelta(days=7)
            candidate = localize(datetime.combine(target, run_time), tz)
        return candidate

    year, month = local_day.year, local_day.month
    candidate = localize(
        datetime.combine(_monthly_date(year, month, day), run_time), tz
    )
    while candidate <= reference:
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        candidate = localize(
            datetime.combine(_monthly_date(year, month, day), run_time), tz
        )
    return candidate


def is_due(next_run_at: datetime | None, is_active: bool, now: datetime) -> bool:
    """True when the schedule is active and its next run is not in the future."""
    if not is_active or next_run_at is None:
        return False
    return ensure_utc(next_run_at) <= ensure_utc(now)


# ---------------------------------------------------------------------------
# Reporting period resolution
# ---------------------------------------------------------------------------
def resolve_report_period(
    period_type: ReportPeriod | str,
    trigger: datetime,
    timezone: str,
) -> ReportWindow:
    """Return the period a run at *trigger* reports on.

    WEEKLY reports cover the previous Monday–Sunday week; MONTHLY reports
    cover the previous calendar month.  Both in the schedule's timezone.
    """
    kind = ReportPeriod(period_type)
    tz = resolve_zone(timezone)
    local_day = to_local(trigger, tz).date()

    if kind == ReportPeriod.WEEKLY:
        this_monday = local_day - timedelta(days=local_day.weekday())
        first = this_monday - timedelta(days=7)
    else:
        first = (local_day.replace(day=1) - timedelta(days=1)).replace(day=1)
    return current_window(kind, first, timezone)


def current_window(
    period_type: ReportPeriod | str,
    moment: date | datetime,
    timezone: str,
) -> ReportWindow:
    """Return the week (Monday-based) or month containing *moment*.

    A plain ``date`` is read as a local calendar day.
    """
    kind = ReportPeriod(period_type)
    tz = resolve_zone(timezone)
    local_day = moment if not isinstance(moment, datetime) else to_local(moment, tz).date()

    if kind == ReportPeriod.WEEKLY:
        monday = local_day - timedelta(days=local_day.weekday())
        sunday = monday + timedelta(days=6)
        return ReportWindow(
            start=localize(datetime.combine(monday, time.min), tz),
            end=localize(datetime.combine(monday + timedelta(days=7), time.min), tz),
            label=f"{monday.year}년 {monday.month}/{monday.day} ~ {sunday.month}/{sunday.day}",
        )

    first = local_day.replace(day=1)
    following = (first + timedelta(days=32)).replace(day=1)
    return ReportWindow(
        start=localize(datetime.combine(first, time.min), tz),
        end=localize(datetime.combine(following, time.min), tz),
        label=f"{first.year}년 {first.month}월",
    )


def _boundary(value: date | datetime, tz: ZoneInfo) -> datetime:
    if not isinstance(value, datetime):
        return localize(datetime.combine(value, time.min), tz)
    if value.tzinfo is None:
        return localize(value, tz)
    return ensure_utc(value)


def explicit_window(
    period_type: ReportPeriod | str,
    start: date | datetime,
    end: date | datetime,
    timezone: str,
) -> ReportWindow:
    """Build a window from caller-chosen bounds (manual report runs).

    ``end`` is exclusive.  Dates and naive datetimes are wall time in
    *timezone*.  The label follows the period type: the month of *start*
    for MONTHLY, first and last day for WEEKLY.

    Raises ``ValueError`` unless ``start < end``.
    """
    kind = ReportPeriod(period_type)
    tz = resolve_zone(timezone)
    lower, upper = _boundary(start, tz), _boundary(end, tz)
    if lower >= upper:
        raise ValueError(f"Report window start {lower} must precede end {upper}")

    first = to_local(lower, tz).date()
    if kind == ReportPeriod.MONTHLY:
        label = f"{first.year}년 {first.month}월"
    else:
        last = (to_local(upper, tz) - timedelta(microseconds=1)).date()
        label = f"{first.year}년 {first.month}/{first.day} ~ {last.month}/{last.day}"
    return ReportWindow(start=lower, end=upper, label=label)
