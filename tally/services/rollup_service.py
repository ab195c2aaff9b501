"""
tally.services.rollup_service — Daily → Weekly/Monthly Rollup
==============================================================

Promotes fine-grained DAILY live snapshots into one coarse live snapshot
per (workspace, connection, target bucket).

Aggregation per metric key, driven by :mod:`tally.engine.metrics`:

    SUM       arithmetic sum; ``None`` contributes nothing (a key that is
              only ever ``None`` still appears, as 0).
    AVERAGE   mean over the records where the key is present and numeric;
              silent records do not drag the mean toward zero.
    UNKNOWN   dropped.

The coarse record is written through :meth:`SnapshotStore.replace`, so a
re-run over unchanged daily data produces an identical result and no
dirty-tracking is needed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import Engine, select

from tally.database.engine import get_session
from tally.database.models import DataSource, MetricSnapshot, PeriodType
from tally.engine.metrics import Aggregation, classify_metric
from tally.engine.periods import bucket_bounds, ensure_utc, month_window, resolve_zone
from tally.services.batch import BatchErrorKind, BatchResult
from tally.services.snapshot_store import SnapshotIdentity, SnapshotStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RollupResult:
    """Outcome of one rollup unit."""

    target_type: str
    target_start: datetime
    contributing: int = 0
    written: bool = False
    created: bool = False
    metrics: dict[str, float] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Pure aggregation
# ---------------------------------------------------------------------------
def aggregate_metrics(rows: Iterable[Mapping[str, float | None]]) -> dict[str, float]:
    """Combine metric mappings according to each key's classification."""
    sums: dict[str, float] = {}
    avg_totals: dict[str, float] = {}
    avg_counts: dict[str, int] = {}

    for row in rows:
        for key, value in row.items():
            kind = classify_metric(key)
            if kind == Aggregation.SUM:
                sums.setdefault(key, 0.0)
                if _is_number(value):
                    sums[key] += value
            elif kind == Aggregation.AVERAGE and _is_number(value):
                avg_totals[key] = avg_totals.get(key, 0.0) + value
                avg_counts[key] = avg_counts.get(key, 0) + 1

    result = dict(sums)
    for key, total in avg_totals.items():
        result[key] = total / avg_counts[key]
    return result


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Single-unit rollup
# ---------------------------------------------------------------------------
def rollup_window(
    store: SnapshotStore,
    workspace_id: int,
    connection_id: int | None,
    target_type: PeriodType | str,
    anchor: date | datetime,
) -> RollupResult:
    """Roll DAILY snapshots into the *target_type* bucket containing *anchor*.

    Only daily buckets lying entirely inside the target window contribute.
    With no contributing data nothing is written.
    """
    kind = PeriodType(target_type)
    if kind == PeriodType.DAILY:
        raise ValueError("Rollup target must be coarser than DAILY")

    tz = store.zone_for(workspace_id)
    start, end = bucket_bounds(kind, anchor, tz)
    return _rollup(store, workspace_id, connection_id, kind, start, end)


def rollup_period(
    store: SnapshotStore,
    workspace_id: int,
    connection_id: int | None,
    year: int,
    month: int,
) -> RollupResult:
    """Roll the DAILY snapshots of calendar month *year*-*month* into MONTHLY."""
    tz = store.zone_for(workspace_id)
    start, end = month_window(year, month, tz)
    return _rollup(store, workspace_id, connection_id, PeriodType.MONTHLY, start, end)


def _rollup(
    store: SnapshotStore,
    workspace_id: int,
    connection_id: int | None,
    kind: PeriodType,
    start: datetime,
    end: datetime,
) -> RollupResult:
    daily = [
        view for view in store.query(workspace_id, PeriodType.DAILY, start, end)
        if view.connection_id == connection_id and view.period_end <= end
    ]
    result = RollupResult(target_type=kind, target_start=start, contributing=len(daily))
    if not daily:
        logger.debug(
            "Rollup skipped: no DAILY data for ws=%s conn=%s %s@%s",
            workspace_id, connection_id, kind, start.isoformat(),
        )
        return result

    result.metrics = aggregate_metrics(view.metrics for view in daily)
    upsert = store.replace(
        SnapshotIdentity(
            workspace_id=workspace_id,
            connection_id=connection_id,
            period_type=kind,
            period_start=start,
        ),
        result.metrics,
        source=DataSource.ROLLUP,
    )
    result.written = True
    result.created = upsert.created
    logger.info(
        "Rollup ws=%s conn=%s %s@%s from %d daily record(s) → %d metric(s)",
        workspace_id, connection_id, kind, start.date().isoformat(),
        len(daily), len(result.metrics),
    )
    return result


# ---------------------------------------------------------------------------
# Batch entry points
# ---------------------------------------------------------------------------
def run_rollup_job(
    store: SnapshotStore,
    workspace_id: int,
    connection_id: int | None,
    year: int,
    month: int,
) -> BatchResult:
    """Batch-trigger form of :func:`rollup_period` for a single unit."""
    batch = BatchResult(job="rollup", processed=1)
    unit = f"{workspace_id}:{connection_id}:{year:04d}-{month:02d}"
    try:
        result = rollup_period(store, workspace_id, connection_id, year, month)
    except Exception as exc:
        logger.exception("Rollup failed for %s", unit)
        batch.failed = 1
        batch.record_error(unit, BatchErrorKind.UNIT_FAILED, str(exc))
        return batch

    if result.written:
        batch.succeeded = 1
    else:
        batch.skipped = 1
    return batch


def _candidate_units(
    engine: Engine, start: datetime, end: datetime
) -> list[tuple[int, int | None]]:
    # Widened by a day each side so every tenant timezone is covered;
    # the per-unit rollup applies the exact local window.
    with get_session(engine) as session:
        rows = session.execute(
            select(MetricSnapshot.workspace_id, MetricSnapshot.connection_id)
            .where(
                MetricSnapshot.period_type == PeriodType.DAILY,
                MetricSnapshot.period_start >= start - timedelta(days=1),
                MetricSnapshot.period_start < end + timedelta(days=1),
            )
            .distinct()
        ).all()
    return sorted(
        ((ws, conn) for ws, conn in rows),
        key=lambda unit: (unit[0], unit[1] or 0),
    )


def run_monthly_rollups(
    engine: Engine,
    store: SnapshotStore,
    year: int,
    month: int,
) -> BatchResult:
    """Roll up every (workspace, connection) that has DAILY data in the month.

    One unit's failure is recorded and the remaining units still run.
    """
    start, end = month_window(year, month, resolve_zone("UTC"))
    units = _candidate_units(engine, start, end)
    batch = BatchResult(job="rollup")

    for workspace_id, connection_id in units:
        batch.processed += 1
        unit = f"{workspace_id}:{connection_id}"
        try:
            result = rollup_period(store, workspace_id, connection_id, year, month)
        except Exception as exc:
            logger.exception("Monthly rollup failed for %s", unit)
            batch.failed += 1
            batch.record_error(unit, BatchErrorKind.UNIT_FAILED, str(exc))
            continue
        if result.written:
            batch.succeeded += 1
        else:
            batch.skipped += 1

    logger.info(
        "Monthly rollup %04d-%02d complete — %d unit(s), %d ok, %d failed, %d empty",
        year, month, batch.processed, batch.succeeded, batch.failed, batch.skipped,
    )
    return batch


def run_weekly_rollups(
    engine: Engine,
    store: SnapshotStore,
    anchor: date,
) -> BatchResult:
    """Roll up the Monday-based week containing *anchor* for every unit."""
    week_start = anchor - timedelta(days=anchor.weekday())
    start = ensure_utc(datetime.combine(week_start, datetime.min.time()))
    units = _candidate_units(engine, start, start + timedelta(days=7))
    batch = BatchResult(job="rollup")

    for workspace_id, connection_id in units:
        batch.processed += 1
        unit = f"{workspace_id}:{connection_id}"
        try:
            result = rollup_window(
                store, workspace_id, connection_id, PeriodType.WEEKLY, week_start
            )
        except Exception as exc:
            logger.exception("Weekly rollup failed for %s", unit)
            batch.failed += 1
            batch.record_error(unit, BatchErrorKind.UNIT_FAILED, str(exc))
            continue
        if result.written:
            batch.succeeded += 1
        else:
            batch.skipped += 1

    logger.info(
        "Weekly rollup %s complete — %d unit(s), %d ok, %d failed, %d empty",
        week_start.isoformat(), batch.processed, batch.succeeded,
        batch.failed, batch.skipped,
    )
    return batch
