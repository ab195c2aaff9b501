"""
tally.engine.metrics — Metric Classifier
=========================================

Explicit allow-list deciding how each metric rolls up across a time
window.  Metrics that are not listed classify as ``UNKNOWN`` and are left
out of rollups entirely, so adding a new metric to a connector requires
registering it here first.

Pure lookups.  No DB I/O.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

__all__ = [
    "Aggregation",
    "MetricDefinition",
    "METRICS",
    "classify_metric",
    "get_metric",
    "metrics_by_aggregation",
]


class Aggregation(enum.StrEnum):
    """Rollup semantics of a metric."""
    SUM = "SUM"
    AVERAGE = "AVERAGE"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True, slots=True)
class MetricDefinition:
    """Describes a single allow-listed metric."""

    name: str
    aggregation: Aggregation
    unit: str = "count"
    description: str = ""


def _sum(name: str, unit: str = "count", description: str = "") -> MetricDefinition:
    return MetricDefinition(name, Aggregation.SUM, unit, description)


def _avg(name: str, unit: str, description: str = "") -> MetricDefinition:
    return MetricDefinition(name, Aggregation.AVERAGE, unit, description)


# ---------------------------------------------------------------------------
# Canonical registry
# ---------------------------------------------------------------------------
_DEFINITIONS: tuple[MetricDefinition, ...] = (
    # Traffic (GA4)
    _sum("sessions", description="Sessions started"),
    _sum("totalUsers", description="Distinct users"),
    _sum("newUsers", description="First-time users"),
    _sum("screenPageViews", description="Screen and page views"),
    _sum("pageviews", description="Page views"),
    _sum("visitors", description="Blog visitors"),
    # Content / SNS
    _sum("views", description="Content views"),
    _sum("likes"),
    _sum("comments"),
    _sum("shares"),
    _sum("saves"),
    _sum("reach", description="Unique accounts reached"),
    _sum("impressions", description="Times content was shown"),
    _sum("engagements", description="Total engagements"),
    _sum("followers"),
    _sum("subscriberGained"),
    _sum("subscriberLost"),
    _sum("estimatedMinutesWatched", unit="minutes"),
    # Commerce
    _sum("revenue", unit="currency", description="Net sales"),
    _sum("orders"),
    # Rates and durations
    _avg("averageSessionDuration", "seconds"),
    _avg("bounceRate", "%"),
    _avg("engagementRate", "%"),
    _avg("averageViewDuration", "seconds"),
    _avg("averageViewPercentage", "%"),
    _avg("ctr", "%", "Click-through rate"),
    _avg("conversionRate", "%"),
)

METRICS: dict[str, MetricDefinition] = {d.name: d for d in _DEFINITIONS}


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
def classify_metric(name: str) -> Aggregation:
    """Return the rollup semantics of *name* (``UNKNOWN`` if unregistered)."""
    definition = METRICS.get(name)
    if definition is None:
        return Aggregation.UNKNOWN
    return definition.aggregation


def get_metric(name: str) -> MetricDefinition | None:
    """Look up a metric definition by name."""
    return METRICS.get(name)


def metrics_by_aggregation(kind: Aggregation) -> list[str]:
    """Return the names of all metrics that aggregate by *kind*."""
    return [d.name for d in _DEFINITIONS if d.aggregation == kind]
