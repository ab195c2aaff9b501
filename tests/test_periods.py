"""
tests/test_periods.py — Time Bucket Arithmetic
===============================================
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from tally.database.models import PeriodType
from tally.engine.periods import (
    bucket_bounds,
    ensure_utc,
    month_window,
    normalize_period_start,
    period_end,
    resolve_zone,
)

SEOUL = resolve_zone("Asia/Seoul")
NEW_YORK = resolve_zone("America/New_York")


class TestNormalizePeriodStart:

    def test_daily_date_is_local_midnight(self):
        start = normalize_period_start(PeriodType.DAILY, date(2026, 10, 14), SEOUL)
        assert start == datetime(2026, 10, 13, 15, 0, tzinfo=UTC)

    def test_weekly_starts_on_monday(self):
        # 2026-10-14 is a Wednesday
        start = normalize_period_start(PeriodType.WEEKLY, date(2026, 10, 14), SEOUL)
        assert start == datetime(2026, 10, 11, 15, 0, tzinfo=UTC)

    def test_monthly_starts_on_first(self):
        start = normalize_period_start(PeriodType.MONTHLY, date(2026, 10, 14), SEOUL)
        assert start == datetime(2026, 9, 30, 15, 0, tzinfo=UTC)

    def test_aware_instant_converted_to_local_day_first(self):
        # 16:00 UTC on the 13th is already 01:00 on the 14th in Seoul
        instant = datetime(2026, 10, 13, 16, 0, tzinfo=UTC)
        start = normalize_period_start(PeriodType.DAILY, instant, SEOUL)
        assert start == datetime(2026, 10, 13, 15, 0, tzinfo=UTC)

    def test_naive_datetime_read_as_wall_time(self):
        start = normalize_period_start(PeriodType.DAILY, datetime(2026, 10, 14, 23, 59), SEOUL)
        assert start == datetime(2026, 10, 13, 15, 0, tzinfo=UTC)

    def test_any_instant_in_bucket_normalises_to_same_start(self):
        day = date(2026, 10, 14)
        starts = {
            normalize_period_start(PeriodType.WEEKLY, day + timedelta(days=n), SEOUL)
            for n in range(-2, 5)  # Mon 12th … Sun 18th
        }
        assert len(starts) == 1

    def test_unknown_period_type_rejected(self):
        with pytest.raises(ValueError):
            normalize_period_start("HOURLY", date(2026, 10, 14), SEOUL)


class TestPeriodEnd:

    def test_month_end_rolls_year(self):
        start = normalize_period_start(PeriodType.MONTHLY, date(2026, 12, 5), SEOUL)
        assert period_end(PeriodType.MONTHLY, start, SEOUL) == datetime(
            2026, 12, 31, 15, 0, tzinfo=UTC
        )

    def test_weekly_bucket_is_seven_days(self):
        start, end = bucket_bounds(PeriodType.WEEKLY, date(2026, 10, 14), SEOUL)
        assert end - start == timedelta(days=7)

    def test_dst_day_is_23_hours(self):
        # US DST starts on Sunday 2026-03-08
        start, end = bucket_bounds(PeriodType.DAILY, date(2026, 3, 8), NEW_YORK)
        assert start == datetime(2026, 3, 8, 5, 0, tzinfo=UTC)
        assert end - start == timedelta(hours=23)


class TestHelpers:

    def test_month_window(self):
        start, end = month_window(2026, 2, SEOUL)
        assert start == datetime(2026, 1, 31, 15, 0, tzinfo=UTC)
        assert end == datetime(2026, 2, 28, 15, 0, tzinfo=UTC)

    def test_month_window_rejects_bad_month(self):
        with pytest.raises(ValueError):
            month_window(2026, 13, SEOUL)

    def test_resolve_zone_unknown(self):
        with pytest.raises(ValueError, match="Unknown timezone"):
            resolve_zone("Mars/Olympus_Mons")

    def test_ensure_utc_treats_naive_as_utc(self):
        assert ensure_utc(datetime(2026, 1, 1, 12)) == datetime(2026, 1, 1, 12, tzinfo=UTC)
