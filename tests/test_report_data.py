"""
tests/test_report_data.py — Report Payload Builder
===================================================
"""

from __future__ import annotations

import json
from datetime import UTC, date, datetime

import pytest

from conftest import make_connection
from tally.database.models import ChannelProvider, PeriodType
from tally.engine.schedule import current_window, resolve_report_period
from tally.services.report_data import (
    NO_DATA_LABEL,
    build_report_payload,
    previous_window,
)
from tally.services.snapshot_store import MetricRecord, SnapshotIdentity

MON_09_KST = datetime(2026, 10, 19, 0, 0, tzinfo=UTC)
WEEK = resolve_report_period("WEEKLY", MON_09_KST, "Asia/Seoul")  # Oct 12–18


@pytest.fixture
def channels(db_engine, workspace_id):
    return {
        "instagram": make_connection(db_engine, workspace_id, ChannelProvider.META_INSTAGRAM),
        "smartstore": make_connection(db_engine, workspace_id, ChannelProvider.SMARTSTORE),
        "coupang": make_connection(db_engine, workspace_id, ChannelProvider.COUPANG),
    }


def _daily(store, workspace_id, connection_id, day, **metrics):
    store.upsert_records(workspace_id, connection_id, [MetricRecord(date=day, metrics=metrics)])


class TestWeeklyPayload:

    @pytest.fixture
    def payload(self, store, workspace_id, channels):
        # Current week
        _daily(store, workspace_id, channels["instagram"], date(2026, 10, 12),
               reach=1000, engagements=50, engagementRate=5.0)
        _daily(store, workspace_id, channels["instagram"], date(2026, 10, 18),
               reach=1000, engagements=30, engagementRate=3.0)
        _daily(store, workspace_id, channels["smartstore"], date(2026, 10, 13),
               revenue=900, orders=3)
        _daily(store, workspace_id, channels["smartstore"], date(2026, 10, 14),
               revenue=100, orders=1)
        _daily(store, workspace_id, channels["coupang"], date(2026, 10, 15),
               revenue=3000, orders=6)
        # Previous week
        _daily(store, workspace_id, channels["smartstore"], date(2026, 10, 7), revenue=2000)
        # Next week, outside the window
        _daily(store, workspace_id, channels["smartstore"], date(2026, 10, 19), revenue=99999)
        return build_report_payload(store, workspace_id, "WEEKLY", WEEK, timezone="Asia/Seoul")

    def test_period(self, payload):
        assert payload.has_data
        assert payload.period["label"] == "2026년 10/12 ~ 10/18"
        assert payload.workspace["name"] == "Acme"

    def test_kpis(self, payload):
        kpis = {k.label: k for k in payload.kpis}
        assert kpis["총 매출"].value == 4000
        assert kpis["총 매출"].previous_value == 2000
        assert kpis["총 매출"].change == 100.0
        assert kpis["총 도달"].value == 2000
        assert kpis["총 도달"].change == 0.0
        assert kpis["총 참여"].value == 80

    def test_channel_mix(self, payload):
        assert payload.channel_mix == [
            {"name": "쿠팡", "percentage": 75},
            {"name": "스마트스토어", "percentage": 25},
        ]

    def test_sns_and_store_sections(self, payload):
        assert payload.sns_performance == [
            {"channel": "Instagram", "followers": 0.0, "engagement": 4.0},
        ]
        store_rows = {row["channel"]: row for row in payload.store_performance}
        assert store_rows["스마트스토어"]["orders"] == 4
        assert store_rows["쿠팡"]["revenue"] == 3000

    def test_serialisable(self, payload):
        data = json.loads(json.dumps(payload.to_dict(), ensure_ascii=False))
        assert data["period"]["start"] == "2026-10-11T15:00:00+00:00"
        assert data["sections"][0] == "kpi"


class TestMonthlyPayload:

    def test_reads_monthly_rollups(self, store, workspace_id, channels):
        store.replace(
            SnapshotIdentity(workspace_id, PeriodType.MONTHLY, date(2026, 10, 1),
                             channels["smartstore"]),
            {"revenue": 12345},
        )
        # DAILY rows are ignored for monthly reports
        _daily(store, workspace_id, channels["smartstore"], date(2026, 10, 3), revenue=1)

        window = resolve_report_period("MONTHLY", datetime(2026, 11, 1, tzinfo=UTC), "Asia/Seoul")
        payload = build_report_payload(store, workspace_id, "MONTHLY", window,
                                       timezone="Asia/Seoul")
        [revenue] = [k for k in payload.kpis if k.label == "총 매출"]
        assert revenue.value == 12345


class TestEmptyWorkspace:

    def test_placeholder_content(self, store, workspace_id):
        payload = build_report_payload(store, workspace_id, "WEEKLY", WEEK,
                                       timezone="Asia/Seoul")
        assert not payload.has_data
        assert [k.value for k in payload.kpis] == [0, 0, 0, 0]
        assert payload.channel_mix == [{"name": NO_DATA_LABEL, "percentage": 100}]
        assert payload.channel_breakdown == []
        assert set(payload.insights) == {"achievements", "improvements", "next_focus"}

    def test_report_config_sections(self, store, workspace_id):
        payload = build_report_payload(
            store, workspace_id, "WEEKLY", WEEK, timezone="Asia/Seoul",
            report_config={"sections": ["kpi"]},
        )
        assert payload.sections == ["kpi"]

    def test_unknown_workspace(self, store):
        with pytest.raises(LookupError):
            build_report_payload(store, 404, "WEEKLY", WEEK, timezone="Asia/Seoul")


class TestPreviousWindow:

    def test_weekly(self):
        start, end = previous_window("WEEKLY", WEEK, "Asia/Seoul")
        assert start == datetime(2026, 10, 4, 15, 0, tzinfo=UTC)
        assert end == WEEK.start

    def test_monthly(self):
        march = current_window("MONTHLY", date(2026, 3, 10), "UTC")
        start, end = previous_window("MONTHLY", march, "UTC")
        assert (start, end) == (datetime(2026, 2, 1, tzinfo=UTC), datetime(2026, 3, 1, tzinfo=UTC))
