"""
tally.constants — Shared Constants
===================================

Single source of truth for report defaults and presentation labels.
Import from here instead of duplicating in services and jobs.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Report defaults
# ---------------------------------------------------------------------------
DEFAULT_TIMEZONE = "Asia/Seoul"
DEFAULT_SCHEDULE_HOUR = 9
MAX_RECIPIENTS = 20
RENDER_TIMEOUT_SECONDS = 60.0
DELIVERY_TIMEOUT_SECONDS = 30.0
DELIVERY_MAX_ATTEMPTS = 3
DELIVERY_BASE_DELAY = 1.0
FREEZE_WINDOW_DAYS = 7
DISPATCH_WORKERS = 1
HISTORY_PAGE_SIZE = 20
HISTORY_MAX_PAGE_SIZE = 100

# Author marker written on every version created by the freezer
SYSTEM_AUTHOR = "SYSTEM"

REPORT_SECTIONS: tuple[str, ...] = (
    "kpi", "channelMix", "snsPerformance", "storePerformance", "insights",
)

DEFAULT_REPORT_CONFIG: dict[str, object] = {
    "sections": list(REPORT_SECTIONS),
    "include_charts": True,
    "include_trends": True,
}


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------
# 0 = Sunday, matching ReportSchedule.schedule_day for WEEKLY schedules
WEEKDAY_LABELS: dict[int, str] = {
    0: "일요일",
    1: "월요일",
    2: "화요일",
    3: "수요일",
    4: "목요일",
    5: "금요일",
    6: "토요일",
}

PERIOD_LABELS: dict[str, str] = {
    "WEEKLY": "주간",
    "MONTHLY": "월간",
}

CHANNEL_LABELS: dict[str, str] = {
    "GA4": "Google Analytics",
    "META_INSTAGRAM": "Instagram",
    "META_FACEBOOK": "Facebook",
    "YOUTUBE": "YouTube",
    "NAVER_BLOG": "네이버 블로그",
    "SMARTSTORE": "스마트스토어",
    "COUPANG": "쿠팡",
}

SNS_CHANNELS: frozenset[str] = frozenset({"META_INSTAGRAM", "META_FACEBOOK", "YOUTUBE"})
STORE_CHANNELS: frozenset[str] = frozenset({"SMARTSTORE", "COUPANG"})
