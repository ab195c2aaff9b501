"""
tally.services.freeze_service — Weekly Snapshot Versioning
===========================================================

Freezes live snapshots into numbered, write-once :class:`SnapshotVersion`
rows so past report numbers can be audited after the live record keeps
changing.

How it works, per live snapshot in scope:
    1. If a ``SNAPSHOT`` version was created within the freeze window
       (default: last 7 days), skip; the job may fire more than once per
       window.
    2. Otherwise read the version high-water mark (0 if none) and insert
       version ``high_water + 1`` holding a deep copy of the live mapping,
       authored by ``SYSTEM``.

Each snapshot is frozen in its own transaction; a failure on one is
logged and recorded, and its siblings still freeze.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from tally.constants import FREEZE_WINDOW_DAYS, SYSTEM_AUTHOR
from tally.database.engine import get_session
from tally.database.models import (
    MetricSnapshot,
    PeriodType,
    SnapshotStatus,
    SnapshotVersion,
    Workspace,
)
from tally.engine.periods import ensure_utc
from tally.services.batch import BatchErrorKind, BatchResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FreezeScope:
    """Which live snapshots a freeze run covers and how often."""

    period_type: PeriodType = PeriodType.WEEKLY
    window: timedelta = timedelta(days=FREEZE_WINDOW_DAYS)


def freeze_snapshot(
    session: Session,
    snapshot: MetricSnapshot,
    *,
    now: datetime,
    window: timedelta = timedelta(days=FREEZE_WINDOW_DAYS),
) -> SnapshotVersion | None:
    """Create the next version of *snapshot*, or return ``None`` if one is recent.

    The caller owns the transaction.
    """
    cutoff = ensure_utc(now) - window
    recent = session.scalar(
        select(SnapshotVersion.id)
        .where(
            SnapshotVersion.snapshot_id == snapshot.id,
            SnapshotVersion.status == SnapshotStatus.SNAPSHOT,
            SnapshotVersion.created_at >= cutoff,
        )
        .limit(1)
    )
    if recent is not None:
        return None

    high_water = session.scalar(
        select(func.max(SnapshotVersion.version_no))
        .where(SnapshotVersion.snapshot_id == snapshot.id)
    ) or 0

    version = SnapshotVersion(
        workspace_id=snapshot.workspace_id,
        snapshot_id=snapshot.id,
        version_no=high_water + 1,
        status=SnapshotStatus.SNAPSHOT,
        # Deep copy: later merges into the live record must not reach here
        frozen_data=copy.deepcopy(snapshot.data or {}),
        created_by=SYSTEM_AUTHOR,
        created_at=ensure_utc(now),
    )
    session.add(version)
    session.flush()
    return version


def freeze_workspace(
    engine: Engine,
    workspace_id: int,
    scope: FreezeScope = FreezeScope(),
    *,
    now: datetime | None = None,
    batch: BatchResult | None = None,
) -> BatchResult:
    """Freeze every live snapshot of *workspace_id* that matches *scope*."""
    now = ensure_utc(now or datetime.now(UTC))
    batch = batch or BatchResult(job="freeze")

    with get_session(engine) as session:
        snapshot_ids = session.scalars(
            select(MetricSnapshot.id)
            .where(
                MetricSnapshot.workspace_id == workspace_id,
                MetricSnapshot.period_type == PeriodType(scope.period_type),
            )
            .order_by(MetricSnapshot.period_start, MetricSnapshot.id)
        ).all()

    created = 0
    for snapshot_id in snapshot_ids:
        batch.processed += 1
        try:
            with get_session(engine) as session:
                snapshot = session.get(MetricSnapshot, snapshot_id)
                if snapshot is None:
                    batch.skipped += 1
                    continue
                version = freeze_snapshot(session, snapshot, now=now, window=scope.window)
        except Exception as exc:
            logger.exception("Freeze failed for snapshot %s", snapshot_id)
            batch.failed += 1
            batch.record_error(snapshot_id, BatchErrorKind.UNIT_FAILED, str(exc))
            continue

        if version is None:
            batch.skipped += 1
        else:
            batch.succeeded += 1
            created += 1

    logger.info(
        "Freeze ws=%s: %d version(s) created from %d %s snapshot(s)",
        workspace_id, created, len(snapshot_ids), scope.period_type,
    )
    return batch


def run_freeze_job(
    engine: Engine,
    scope: FreezeScope = FreezeScope(),
    *,
    now: datetime | None = None,
    workspace_ids: Iterable[int] | None = None,
) -> BatchResult:
    """Freeze all workspaces (or only *workspace_ids*).

    Listing workspaces is the batch boundary: a failure there propagates.
    """
    now = ensure_utc(now or datetime.now(UTC))
    if workspace_ids is None:
        with get_session(engine) as session:
            workspace_ids = session.scalars(
                select(Workspace.id).order_by(Workspace.id)
            ).all()

    batch = BatchResult(job="freeze")
    for workspace_id in workspace_ids:
        freeze_workspace(engine, workspace_id, scope, now=now, batch=batch)

    logger.info(
        "Freeze job complete — %d processed, %d frozen, %d skipped, %d failed",
        batch.processed, batch.succeeded, batch.skipped, batch.failed,
    )
    return batch


def list_versions(engine: Engine, snapshot_id: int) -> list[dict]:
    """Return every version of *snapshot_id*, oldest first."""
    with get_session(engine) as session:
        versions = session.scalars(
            select(SnapshotVersion)
            .where(SnapshotVersion.snapshot_id == snapshot_id)
            .order_by(SnapshotVersion.version_no)
        ).all()
        return [
            {
                "id": v.id,
                "version_no": v.version_no,
                "status": v.status,
                "frozen_data": copy.deepcopy(v.frozen_data),
                "created_by": v.created_by,
                "created_at": ensure_utc(v.created_at).isoformat(),
            }
            for v in versions
        ]
