"""
tally.services.ingest_service — Channel Record Ingestion
=========================================================

Maps already-parsed rows (CSV uploads, connector pulls) onto the
canonical metric names and forwards them to the snapshot store.

Each channel family has its own column layout:

    store   SMARTSTORE, COUPANG          sales_net / sales_gmv / orders_count …
    sns     META_INSTAGRAM, META_FACEBOOK, YOUTUBE
                                         views / reach / engagement …
    blog    NAVER_BLOG                   visitors / pageviews …
    traffic GA4                          sessions / users / new_users …

Columns that are missing from a row become ``None``; the store keeps the
key so a later partial upload can fill it in.  Parsing and validating
the raw file is the upload handler's job, not this module's.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import date, datetime

from tally.database.models import ChannelProvider, DataSource, PeriodType
from tally.services.snapshot_store import MetricRecord, SnapshotStore

logger = logging.getLogger(__name__)

Row = Mapping[str, object]


def _col(row: Row, *names: str) -> object | None:
    """First non-null value among *names* (``None`` if all are missing)."""
    for name in names:
        value = row.get(name)
        if value is not None:
            return value
    return None


def _record_date(row: Row) -> date:
    raw = row.get("date")
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        return date.fromisoformat(raw.strip()[:10])
    raise ValueError(f"Row has no usable 'date' value: {raw!r}")


def engagement_rate(engagement: object, reach: object) -> float | None:
    """Engagement as a percentage of reach, rounded to 2 decimals.

    ``None`` when reach is zero or either value is not numeric.
    """
    engagement = engagement or 0
    reach = reach or 0
    if not isinstance(engagement, int | float) or not isinstance(reach, int | float):
        return None
    if reach == 0:
        return None
    return round(engagement / reach * 100, 2)


# ---------------------------------------------------------------------------
# Per-family mappers
# ---------------------------------------------------------------------------
def _store_metrics(row: Row) -> dict[str, object]:
    return {
        "revenue": _col(row, "sales_net", "sales_gmv"),
        "gmv": row.get("sales_gmv"),
        "netSales": row.get("sales_net"),
        "orders": row.get("orders_count"),
        "unitsSold": row.get("units_sold"),
        "aov": row.get("aov"),
        "cancels": row.get("cancels_count"),
        "refunds": row.get("refunds_count"),
        "refundAmount": row.get("refunds_amount"),
        "returns": row.get("returns_count"),
        "delivered": row.get("delivered_count"),
        "settlementExpected": row.get("settlement_expected"),
        "feesTotal": row.get("fees_total"),
    }


def _sns_metrics(row: Row) -> dict[str, object]:
    return {
        "uploads": row.get("uploads_count"),
        "views": row.get("views"),
        "reach": row.get("reach"),
        "engagements": row.get("engagement"),
        "followers": row.get("followers"),
        "likes": row.get("likes"),
        "comments": row.get("comments"),
        "shares": row.get("shares"),
        "engagementRate": engagement_rate(row.get("engagement"), row.get("reach")),
    }


def _blog_metrics(row: Row) -> dict[str, object]:
    return {
        "posts": row.get("posts_count"),
        "visitors": row.get("visitors"),
        "pageviews": row.get("pageviews"),
        "avgDuration": row.get("avg_duration"),
    }


def _traffic_metrics(row: Row) -> dict[str, object]:
    return {
        "sessions": row.get("sessions"),
        "totalUsers": row.get("users"),
        "newUsers": row.get("new_users"),
        "screenPageViews": row.get("pageviews"),
        "averageSessionDuration": row.get("avg_session_duration"),
        "bounceRate": row.get("bounce_rate"),
    }


_MAPPERS: dict[str, Callable[[Row], dict[str, object]]] = {
    ChannelProvider.SMARTSTORE: _store_metrics,
    ChannelProvider.COUPANG: _store_metrics,
    ChannelProvider.META_INSTAGRAM: _sns_metrics,
    ChannelProvider.META_FACEBOOK: _sns_metrics,
    ChannelProvider.YOUTUBE: _sns_metrics,
    ChannelProvider.NAVER_BLOG: _blog_metrics,
    ChannelProvider.GA4: _traffic_metrics,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def csv_rows_to_records(provider: str, rows: Iterable[Row]) -> list[MetricRecord]:
    """Convert parsed rows for *provider* into DAILY :class:`MetricRecord` objects.

    Unsupported providers yield an empty list.
    """
    mapper = _MAPPERS.get(provider)
    if mapper is None:
        logger.warning("No CSV mapping for provider %r; rows ignored", provider)
        return []
    return [
        MetricRecord(date=_record_date(row), metrics=mapper(row), period_type=PeriodType.DAILY)
        for row in rows
    ]


def date_range(rows: Iterable[Row]) -> tuple[date, date] | None:
    """Return ``(first, last)`` dates found in *rows*, or ``None``."""
    dates = []
    for row in rows:
        try:
            dates.append(_record_date(row))
        except ValueError:
            continue
    if not dates:
        return None
    return min(dates), max(dates)


def ingest_records(
    store: SnapshotStore,
    workspace_id: int,
    connection_id: int | None,
    records: Iterable[MetricRecord],
    *,
    source: DataSource = DataSource.CONNECTOR,
    csv_upload_id: str | None = None,
) -> dict[str, int]:
    """Upsert *records* into the live store.

    Returns ``{"created": N, "updated": M}``.  A record with an invalid
    value rejects the whole batch before anything is written.
    """
    records = list(records)
    if not records:
        return {"created": 0, "updated": 0}
    summary = store.upsert_records(
        workspace_id, connection_id, records,
        source=source, csv_upload_id=csv_upload_id,
    )
    logger.info(
        "Ingested %d record(s) for ws=%s conn=%s (%s)",
        len(records), workspace_id, connection_id, source,
    )
    return summary


def ingest_csv_rows(
    store: SnapshotStore,
    workspace_id: int,
    connection_id: int,
    provider: str,
    rows: Iterable[Row],
    *,
    csv_upload_id: str | None = None,
) -> dict[str, int]:
    """Map parsed CSV *rows* for *provider* and upsert them with ``source=CSV``."""
    records = csv_rows_to_records(provider, rows)
    return ingest_records(
        store, workspace_id, connection_id, records,
        source=DataSource.CSV, csv_upload_id=csv_upload_id,
    )
