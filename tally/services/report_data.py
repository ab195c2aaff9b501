"""
tally.services.report_data — Report Payload Builder
====================================================

Collects the numbers a rendered report shows for one workspace and one
reporting window:

- **kpis** — revenue, visitors, reach and engagement, each with the
  previous window's value and the percent change.
- **channel_mix** — share of revenue per channel.
- **sns_performance** / **store_performance** — per-channel highlights.
- **insights** — note lists (placeholder text until notes exist).

Monthly reports read the MONTHLY rollups; weekly reports aggregate the
DAILY records of the week per connection through the metric classifier.
When the window has no data at all, placeholder content is returned so
the renderer never has to special-case empty workspaces.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta
from typing import Any

from tally.constants import (
    CHANNEL_LABELS,
    DEFAULT_REPORT_CONFIG,
    SNS_CHANNELS,
    STORE_CHANNELS,
)
from tally.database.engine import get_session
from tally.database.models import PeriodType, ReportPeriod, Workspace
from tally.engine.metrics import Aggregation, classify_metric
from tally.engine.periods import localize, month_window, resolve_zone, to_local
from tally.engine.schedule import ReportWindow
from tally.services.rollup_service import aggregate_metrics
from tally.services.snapshot_store import SnapshotStore, SnapshotView

logger = logging.getLogger(__name__)

NO_DATA_LABEL = "데이터 없음"


@dataclass(slots=True)
class Kpi:
    label: str
    value: float
    previous_value: float
    change: float
    format: str = "number"


@dataclass(slots=True)
class ChannelSummary:
    """Aggregated metrics of one channel connection over the window."""

    connection_id: int | None
    provider: str | None
    name: str
    metrics: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class ReportPayload:
    workspace: dict[str, Any]
    period: dict[str, Any]
    kpis: list[Kpi]
    channel_breakdown: list[ChannelSummary]
    channel_mix: list[dict[str, Any]]
    sns_performance: list[dict[str, Any]]
    store_performance: list[dict[str, Any]]
    insights: dict[str, list[str]]
    sections: list[str]
    has_data: bool

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["period"] = {
            k: v.isoformat() if isinstance(v, datetime) else v
            for k, v in self.period.items()
        }
        return data


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------
def _channel_name(provider: str | None) -> str:
    if provider is None:
        return "전체"
    return CHANNEL_LABELS.get(provider, provider)


def _summaries(views: list[SnapshotView], period_type: PeriodType) -> list[ChannelSummary]:
    grouped: dict[int | None, list[SnapshotView]] = defaultdict(list)
    for view in views:
        grouped[view.connection_id].append(view)

    summaries = []
    for connection_id, rows in grouped.items():
        provider = rows[0].provider
        if period_type == PeriodType.DAILY:
            metrics = aggregate_metrics(view.metrics for view in rows)
        else:
            metrics = {
                k: v for k, v in rows[-1].metrics.items() if v is not None
            }
        summaries.append(ChannelSummary(connection_id, provider, _channel_name(provider), metrics))
    summaries.sort(key=lambda s: (s.provider or "", s.connection_id or 0))
    return summaries


def _totals(summaries: list[ChannelSummary]) -> dict[str, float]:
    totals: dict[str, float] = {}
    for summary in summaries:
        for key, value in summary.metrics.items():
            if classify_metric(key) == Aggregation.SUM:
                totals[key] = totals.get(key, 0.0) + value
    return totals


def _collect(
    store: SnapshotStore,
    workspace_id: int,
    source_type: PeriodType,
    start: datetime,
    end: datetime,
) -> list[ChannelSummary]:
    views = store.query(workspace_id, source_type, start, end)
    return _summaries(views, source_type)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------
def _change(current: float, previous: float) -> float:
    if previous > 0:
        return round((current - previous) / previous * 100, 1)
    return 0.0


def build_kpis(current: dict[str, float], previous: dict[str, float]) -> list[Kpi]:
    kpis: list[Kpi] = []

    if "revenue" in current:
        prev = previous.get("revenue", 0.0)
        kpis.append(Kpi("총 매출", current["revenue"], prev,
                        _change(current["revenue"], prev), "currency"))

    if "totalUsers" in current:
        prev = previous.get("totalUsers", 0.0)
        kpis.append(Kpi("총 방문자", current["totalUsers"], prev,
                        _change(current["totalUsers"], prev)))

    reach = current.get("reach") or current.get("impressions") or 0.0
    prev_reach = previous.get("reach") or previous.get("impressions") or 0.0
    if reach > 0:
        kpis.append(Kpi("총 도달", reach, prev_reach, _change(reach, prev_reach)))

    if "engagements" in current:
        prev = previous.get("engagements", 0.0)
        kpis.append(Kpi("총 참여", current["engagements"], prev,
                        _change(current["engagements"], prev)))

    return kpis


def build_channel_mix(summaries: list[ChannelSummary]) -> list[dict[str, Any]]:
    revenue: dict[str, float] = defaultdict(float)
    for summary in summaries:
        value = summary.metrics.get("revenue")
        if summary.provider and value:
            revenue[summary.name] += value

    total = sum(revenue.values())
    if total == 0:
        return [{"name": NO_DATA_LABEL, "percentage": 100}]
    mix = [
        {"name": name, "percentage": round(value / total * 100)}
        for name, value in revenue.items()
    ]
    mix.sort(key=lambda item: item["percentage"], reverse=True)
    return mix


def build_sns_performance(summaries: list[ChannelSummary]) -> list[dict[str, Any]]:
    result = [
        {
            "channel": s.name,
            "followers": s.metrics.get("followers", 0.0),
            "engagement": s.metrics.get("engagementRate") or s.metrics.get("engagements", 0.0),
        }
        for s in summaries
        if s.provider in SNS_CHANNELS
    ]
    return result or [{"channel": "채널 연결 필요", "followers": 0, "engagement": 0}]


def build_store_performance(summaries: list[ChannelSummary]) -> list[dict[str, Any]]:
    result = [
        {
            "channel": s.name,
            "revenue": s.metrics.get("revenue", 0.0),
            "orders": s.metrics.get("orders", 0.0),
        }
        for s in summaries
        if s.provider in STORE_CHANNELS
    ]
    return result or [{"channel": "채널 연결 필요", "revenue": 0, "orders": 0}]


def placeholder_kpis() -> list[Kpi]:
    return [
        Kpi("총 매출", 0, 0, 0, "currency"),
        Kpi("총 방문자", 0, 0, 0),
        Kpi("총 도달", 0, 0, 0),
        Kpi("총 참여", 0, 0, 0),
    ]


def _insights(has_data: bool) -> dict[str, list[str]]:
    if has_data:
        return {
            "achievements": ["데이터 수집 중"],
            "improvements": ["분석 진행 중"],
            "next_focus": ["전략 수립 중"],
        }
    return {
        "achievements": ["데이터가 수집되면 자동으로 업데이트됩니다"],
        "improvements": ["채널을 연결하여 데이터를 수집해주세요"],
        "next_focus": ["리포트 설정에서 KPI를 구성해주세요"],
    }


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def previous_window(
    period_type: ReportPeriod | str, window: ReportWindow, timezone: str
) -> tuple[datetime, datetime]:
    """Return the window immediately before *window* (same length in local time)."""
    tz = resolve_zone(timezone)
    local_start = to_local(window.start, tz).date()
    if ReportPeriod(period_type) == ReportPeriod.WEEKLY:
        prev_start = local_start - timedelta(days=7)
        return localize(datetime.combine(prev_start, time.min), tz), window.start
    prev_month_day = local_start - timedelta(days=1)
    return month_window(prev_month_day.year, prev_month_day.month, tz)


def build_report_payload(
    store: SnapshotStore,
    workspace_id: int,
    period_type: ReportPeriod | str,
    window: ReportWindow,
    *,
    timezone: str,
    report_config: dict | None = None,
) -> ReportPayload:
    """Assemble the data for one report.

    Raises
    ------
    LookupError
        If the workspace does not exist.
    """
    kind = ReportPeriod(period_type)
    with get_session(store.engine) as session:
        workspace = session.get(Workspace, workspace_id)
        if workspace is None:
            raise LookupError(f"Workspace not found: {workspace_id}")
        workspace_info = {"id": workspace.id, "name": workspace.name,
                          "description": workspace.description}

    source_type = PeriodType.DAILY if kind == ReportPeriod.WEEKLY else PeriodType.MONTHLY
    prev_start, prev_end = previous_window(kind, window, timezone)

    current = _collect(store, workspace_id, source_type, window.start, window.end)
    previous = _collect(store, workspace_id, source_type, prev_start, prev_end)
    has_data = bool(current)

    config = report_config or DEFAULT_REPORT_CONFIG
    payload = ReportPayload(
        workspace=workspace_info,
        period={
            "type": str(kind),
            "label": window.label,
            "start": window.start,
            "end": window.end,
        },
        kpis=build_kpis(_totals(current), _totals(previous)) if has_data else placeholder_kpis(),
        channel_breakdown=current,
        channel_mix=build_channel_mix(current),
        sns_performance=build_sns_performance(current),
        store_performance=build_store_performance(current),
        insights=_insights(has_data),
        sections=list(config.get("sections", DEFAULT_REPORT_CONFIG["sections"])),
        has_data=has_data,
    )
    logger.debug(
        "Report payload ws=%s %s %s: %d channel(s), has_data=%s",
        workspace_id, kind, window.label, len(current), has_data,
    )
    return payload
