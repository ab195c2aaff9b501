"""
tests/test_ingest_service.py — Channel Row Ingestion
=====================================================
"""

from __future__ import annotations

from datetime import date

import pytest

from conftest import make_connection
from tally.database.models import ChannelProvider, DataSource, PeriodType
from tally.services.ingest_service import (
    csv_rows_to_records,
    date_range,
    engagement_rate,
    ingest_csv_rows,
    ingest_records,
)
from tally.services.snapshot_store import MetricRecord, SnapshotIdentity

SNS_ROWS = [
    {"date": "2026-10-12", "views": 100, "reach": 1000, "engagement": 50, "likes": 40},
    {"date": "2026-10-13", "views": 200, "reach": 0, "engagement": 0},
]


class TestMapping:

    def test_store_prefers_net_sales(self):
        [record] = csv_rows_to_records(ChannelProvider.SMARTSTORE, [
            {"date": "2026-10-12", "sales_net": 900, "sales_gmv": 1000, "orders_count": 3},
        ])
        assert record.metrics["revenue"] == 900
        assert record.metrics["gmv"] == 1000
        assert record.metrics["orders"] == 3
        assert record.period_type == PeriodType.DAILY

    def test_store_falls_back_to_gmv(self):
        [record] = csv_rows_to_records(ChannelProvider.COUPANG, [
            {"date": "2026-10-12", "sales_gmv": 1000},
        ])
        assert record.metrics["revenue"] == 1000

    def test_sns_engagement_rate(self):
        first, second = csv_rows_to_records(ChannelProvider.META_INSTAGRAM, SNS_ROWS)
        assert first.metrics["engagementRate"] == 5.0
        assert first.metrics["engagements"] == 50
        assert second.metrics["engagementRate"] is None

    def test_missing_columns_become_none(self):
        [record] = csv_rows_to_records(ChannelProvider.GA4, [{"date": "2026-10-12"}])
        assert record.metrics["sessions"] is None
        assert "bounceRate" in record.metrics

    def test_dates_parsed(self):
        [record] = csv_rows_to_records(
            ChannelProvider.NAVER_BLOG, [{"date": "2026-10-12T00:00:00", "visitors": 5}]
        )
        assert record.date == date(2026, 10, 12)

    def test_unknown_provider_yields_nothing(self):
        assert csv_rows_to_records("MYSPACE", [{"date": "2026-10-12"}]) == []

    def test_row_without_date_rejected(self):
        with pytest.raises(ValueError):
            csv_rows_to_records(ChannelProvider.GA4, [{"sessions": 1}])

    @pytest.mark.parametrize(
        "engagement, reach, expected",
        [(50, 1000, 5.0), (1, 3, 33.33), (10, 0, None), (None, 100, 0.0), ("x", 10, None)],
    )
    def test_engagement_rate(self, engagement, reach, expected):
        assert engagement_rate(engagement, reach) == expected

    def test_date_range(self):
        assert date_range(SNS_ROWS + [{"date": None}]) == (date(2026, 10, 12), date(2026, 10, 13))
        assert date_range([]) is None


class TestIngest:

    def test_csv_rows_written_with_csv_source(self, db_engine, store, workspace_id):
        conn = make_connection(db_engine, workspace_id, ChannelProvider.META_INSTAGRAM)
        summary = ingest_csv_rows(
            store, workspace_id, conn, ChannelProvider.META_INSTAGRAM, SNS_ROWS,
            csv_upload_id="upload-1",
        )
        assert summary == {"created": 2, "updated": 0}

        view = store.get(SnapshotIdentity(workspace_id, PeriodType.DAILY, date(2026, 10, 12), conn))
        assert view.source == DataSource.CSV
        assert view.metrics["views"] == 100

    def test_reimport_is_idempotent(self, db_engine, store, workspace_id):
        conn = make_connection(db_engine, workspace_id, ChannelProvider.META_INSTAGRAM)
        ingest_csv_rows(store, workspace_id, conn, ChannelProvider.META_INSTAGRAM, SNS_ROWS)
        before = store.query(workspace_id, PeriodType.DAILY, date(2026, 10, 1), date(2026, 11, 1))

        summary = ingest_csv_rows(
            store, workspace_id, conn, ChannelProvider.META_INSTAGRAM, SNS_ROWS
        )
        after = store.query(workspace_id, PeriodType.DAILY, date(2026, 10, 1), date(2026, 11, 1))

        assert summary == {"created": 0, "updated": 2}
        assert [v.metrics for v in after] == [v.metrics for v in before]

    def test_partial_upload_keeps_other_keys(self, store, workspace_id, connection_id):
        ingest_records(store, workspace_id, connection_id, [
            MetricRecord(date=date(2026, 10, 12), metrics={"views": 10, "likes": 1}),
        ])
        ingest_records(store, workspace_id, connection_id, [
            MetricRecord(date=date(2026, 10, 12), metrics={"likes": 4}),
        ])
        identity = SnapshotIdentity(workspace_id, PeriodType.DAILY, date(2026, 10, 12), connection_id)
        assert store.read(identity) == {"views": 10, "likes": 4}

    def test_empty_batch(self, store, workspace_id, connection_id):
        assert ingest_records(store, workspace_id, connection_id, []) == {
            "created": 0, "updated": 0,
        }
