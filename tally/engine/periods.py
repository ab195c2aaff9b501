"""
tally.engine.periods — Time Bucket Arithmetic
==============================================

Pure helpers that map instants onto DAILY / WEEKLY / MONTHLY buckets in a
tenant's timezone.  Buckets are half-open: ``[start, end)``.  Every value
returned here is a UTC-aware datetime; wall-clock arithmetic happens on
local dates and is converted back through :mod:`zoneinfo`.

Weeks start on Monday.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tally.database.models import PeriodType

__all__ = [
    "bucket_bounds",
    "ensure_utc",
    "localize",
    "month_window",
    "normalize_period_start",
    "period_end",
    "resolve_zone",
    "to_local",
]


def resolve_zone(name: str) -> ZoneInfo:
    """Return the :class:`ZoneInfo` for *name*; ``ValueError`` if unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as exc:
        raise ValueError(f"Unknown timezone: {name!r}") from exc


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as a UTC-aware datetime.

    Naive values are treated as UTC (SQLite drops tzinfo on read-back).
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def localize(wall: datetime, tz: ZoneInfo) -> datetime:
    """Attach *tz* to a naive wall-clock time and return it in UTC.

    Wall times that fall in a DST gap come out shifted forward.
    """
    return wall.replace(tzinfo=tz).astimezone(UTC)


def to_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Convert an instant to wall-clock time in *tz*."""
    return ensure_utc(value).astimezone(tz)


def _local_date(moment: date | datetime, tz: ZoneInfo) -> date:
    if isinstance(moment, datetime):
        if moment.tzinfo is None:
            return moment.date()
        return moment.astimezone(tz).date()
    return moment


def _add_months(day: date, months: int) -> date:
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def _bucket_start_date(period_type: PeriodType, day: date) -> date:
    if period_type == PeriodType.DAILY:
        return day
    if period_type == PeriodType.WEEKLY:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def _bucket_end_date(period_type: PeriodType, start_day: date) -> date:
    if period_type == PeriodType.DAILY:
        return start_day + timedelta(days=1)
    if period_type == PeriodType.WEEKLY:
        return start_day + timedelta(days=7)
    return _add_months(start_day, 1)


def normalize_period_start(
    period_type: PeriodType | str,
    moment: date | datetime,
    tz: ZoneInfo,
) -> datetime:
    """Return the start of the bucket containing *moment*.

    A naive datetime (or a plain ``date``) is read as wall time in *tz*;
    an aware datetime is converted to *tz* first.

    Raises
    ------
    ValueError
        If *period_type* is not a recognised :class:`PeriodType`.
    """
    kind = PeriodType(period_type)
    start_day = _bucket_start_date(kind, _local_date(moment, tz))
    return localize(datetime.combine(start_day, time.min), tz)


def period_end(period_type: PeriodType | str, start: datetime, tz: ZoneInfo) -> datetime:
    """Exclusive end of the bucket that begins at *start*."""
    kind = PeriodType(period_type)
    start_day = to_local(start, tz).date()
    return localize(datetime.combine(_bucket_end_date(kind, start_day), time.min), tz)


def bucket_bounds(
    period_type: PeriodType | str,
    moment: date | datetime,
    tz: ZoneInfo,
) -> tuple[datetime, datetime]:
    """Return ``(start, end)`` of the bucket containing *moment*."""
    start = normalize_period_start(period_type, moment, tz)
    return start, period_end(period_type, start, tz)


def month_window(year: int, month: int, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` instants of a calendar month in *tz*."""
    if not 1 <= month <= 12:
        raise ValueError(f"month must be 1-12, got {month}")
    first = date(year, month, 1)
    return (
        localize(datetime.combine(first, time.min), tz),
        localize(datetime.combine(_add_months(first, 1), time.min), tz),
    )
