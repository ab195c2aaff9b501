"""
tally.services.snapshot_store — Live Metric Snapshot Store
===========================================================

Owns the mutable "live" record for every (workspace, connection,
period_type, period_start) identity and is the only shared mutable
resource in the pipeline.  Every other component receives a
:class:`SnapshotStore` instance instead of reaching for the database
directly.

Write policy (per metric key, not per record):

    existing  {"views": 10, "likes": 3}
    incoming  {"likes": 5, "shares": 1}
    result    {"views": 10, "likes": 5, "shares": 1}

New keys are added, keys present in the incoming mapping overwrite the
stored value (latest write wins), absent keys are preserved.  Re-applying
the same partial mapping is therefore a no-op on the stored values, which
is what makes re-importing the same CSV file safe.

Concurrency: writes to one identity are serialised by a striped
in-process lock plus a transactional read-modify-write
(``SELECT … FOR UPDATE`` where the dialect supports it).  If another
process creates the row first, the UNIQUE constraint fires and the write
is retried once as a merge.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tally.constants import DEFAULT_TIMEZONE
from tally.database.engine import get_session
from tally.database.models import (
    ChannelConnection,
    DataSource,
    MetricSnapshot,
    PeriodType,
    Workspace,
)
from tally.engine.periods import (
    ensure_utc,
    localize,
    normalize_period_start,
    period_end,
    resolve_zone,
)

logger = logging.getLogger(__name__)

MetricMap = dict[str, float | None]


class SnapshotValidationError(ValueError):
    """Incoming metrics rejected before anything was written."""


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SnapshotIdentity:
    """Identity tuple of a live snapshot.

    ``period_start`` may be any instant inside the bucket; the store
    normalises it to the bucket start in the workspace timezone.
    """

    workspace_id: int
    period_type: PeriodType
    period_start: date | datetime
    connection_id: int | None = None


@dataclass(frozen=True, slots=True)
class UpsertResult:
    created: bool
    snapshot_id: int
    period_start: datetime


@dataclass(frozen=True, slots=True)
class SnapshotView:
    """Detached, read-only copy of a live snapshot row."""

    id: int
    workspace_id: int
    connection_id: int | None
    provider: str | None
    period_type: str
    period_start: datetime
    period_end: datetime
    metrics: MetricMap = field(default_factory=dict)
    source: str = DataSource.CONNECTOR
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class MetricRecord:
    """One ingestion record: a period bucket and its partial metrics."""

    date: date | datetime
    metrics: Mapping[str, object]
    period_type: PeriodType = PeriodType.DAILY


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def validate_metrics(metrics: Mapping[str, object]) -> MetricMap:
    """Return a cleaned ``str → float | None`` copy of *metrics*.

    Raises
    ------
    SnapshotValidationError
        If *metrics* is not a mapping, a key is not a non-empty string, or a
        value is not a finite number or ``None``.  Booleans are rejected.
    """
    if not isinstance(metrics, Mapping):
        raise SnapshotValidationError(
            f"metrics must be a mapping, got {type(metrics).__name__}"
        )

    cleaned: MetricMap = {}
    for key, value in metrics.items():
        if not isinstance(key, str) or not key:
            raise SnapshotValidationError(f"Invalid metric name: {key!r}")
        if value is None:
            cleaned[key] = None
            continue
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise SnapshotValidationError(
                f"Metric {key!r} must be numeric or null, got {type(value).__name__}"
            )
        number = float(value)
        if not math.isfinite(number):
            raise SnapshotValidationError(f"Metric {key!r} is not finite: {value!r}")
        cleaned[key] = number
    return cleaned


# ---------------------------------------------------------------------------
# SnapshotStore
# ---------------------------------------------------------------------------
class SnapshotStore:
    """Upsert-merge, read and query access to live metric snapshots."""

    def __init__(
        self,
        engine: Engine,
        *,
        default_timezone: str = DEFAULT_TIMEZONE,
        lock_stripes: int = 64,
    ) -> None:
        self.engine = engine
        self.default_timezone = default_timezone
        self._locks = [threading.Lock() for _ in range(lock_stripes)]

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    def _lock_for(self, workspace_id: int, connection_id: int | None,
                  period_type: str, start: datetime) -> threading.Lock:
        # Keyed on the normalised bucket start: every instant of one bucket
        # maps to the same stripe.
        key = (workspace_id, connection_id, str(period_type), start.isoformat())
        return self._locks[hash(key) % len(self._locks)]

    def _zone(self, session: Session, workspace_id: int) -> ZoneInfo:
        workspace = session.get(Workspace, workspace_id)
        if workspace is None:
            raise LookupError(f"Workspace not found: {workspace_id}")
        return resolve_zone(workspace.timezone or self.default_timezone)

    @staticmethod
    def _find(
        session: Session,
        workspace_id: int,
        connection_id: int | None,
        period_type: str,
        period_start: datetime,
        *,
        for_update: bool = False,
    ) -> MetricSnapshot | None:
        conn_clause = (
            MetricSnapshot.connection_id.is_(None)
            if connection_id is None
            else MetricSnapshot.connection_id == connection_id
        )
        stmt = select(MetricSnapshot).where(
            MetricSnapshot.workspace_id == workspace_id,
            conn_clause,
            MetricSnapshot.period_type == period_type,
            MetricSnapshot.period_start == period_start,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return session.scalar(stmt)

    @staticmethod
    def _to_view(row: MetricSnapshot, provider: str | None) -> SnapshotView:
        return SnapshotView(
            id=row.id,
            workspace_id=row.workspace_id,
            connection_id=row.connection_id,
            provider=provider,
            period_type=row.period_type,
            period_start=ensure_utc(row.period_start),
            period_end=ensure_utc(row.period_end),
            metrics=dict(row.data or {}),
            source=row.source,
            updated_at=ensure_utc(row.updated_at) if row.updated_at else None,
        )

    def _write(
        self,
        identity: SnapshotIdentity,
        metrics: MetricMap,
        *,
        merge: bool,
        source: DataSource,
        csv_upload_id: str | None,
    ) -> UpsertResult:
        kind = PeriodType(identity.period_type)
        tz = self.zone_for(identity.workspace_id)
        start = normalize_period_start(kind, identity.period_start, tz)
        lock = self._lock_for(identity.workspace_id, identity.connection_id, kind, start)

        for attempt in (1, 2):
            try:
                with lock, get_session(self.engine) as session:
                    existing = self._find(
                        session, identity.workspace_id, identity.connection_id,
                        kind, start, for_update=True,
                    )
                    now = datetime.now(UTC)

                    if existing is None:
                        row = MetricSnapshot(
                            workspace_id=identity.workspace_id,
                            connection_id=identity.connection_id,
                            period_type=kind,
                            period_start=start,
                            period_end=period_end(kind, start, tz),
                            data=dict(metrics),
                            source=source,
                            csv_upload_id=csv_upload_id,
                            created_at=now,
                            updated_at=now,
                        )
                        session.add(row)
                        session.flush()
                        return UpsertResult(created=True, snapshot_id=row.id, period_start=start)

                    # Assign a new dict so the JSON column is flagged dirty
                    if merge:
                        existing.data = {**(existing.data or {}), **metrics}
                    else:
                        existing.data = dict(metrics)
                    existing.source = source
                    existing.csv_upload_id = csv_upload_id
                    existing.updated_at = now
                    session.flush()
                    return UpsertResult(created=False, snapshot_id=existing.id, period_start=start)
            except IntegrityError:
                if attempt == 2:
                    raise
                logger.debug(
                    "Concurrent create on snapshot identity ws=%s conn=%s %s; retrying as merge",
                    identity.workspace_id, identity.connection_id, kind,
                )
        raise AssertionError("unreachable")

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------
    def upsert_merge(
        self,
        identity: SnapshotIdentity,
        partial_metrics: Mapping[str, object],
        *,
        source: DataSource = DataSource.CONNECTOR,
        csv_upload_id: str | None = None,
    ) -> UpsertResult:
        """Create the live record or merge *partial_metrics* into it key by key.

        Raises
        ------
        SnapshotValidationError
            If any metric value is not numeric or null (nothing is written).
        ValueError
            If the period type is not recognised.
        LookupError
            If the workspace does not exist.
        """
        cleaned = validate_metrics(partial_metrics)
        PeriodType(identity.period_type)
        return self._write(
            identity, cleaned, merge=True, source=source, csv_upload_id=csv_upload_id
        )

    def replace(
        self,
        identity: SnapshotIdentity,
        metrics: Mapping[str, object],
        *,
        source: DataSource = DataSource.ROLLUP,
    ) -> UpsertResult:
        """Overwrite the whole mapping of a live record (used by rollups)."""
        cleaned = validate_metrics(metrics)
        PeriodType(identity.period_type)
        return self._write(identity, cleaned, merge=False, source=source, csv_upload_id=None)

    def upsert_records(
        self,
        workspace_id: int,
        connection_id: int | None,
        records: Iterable[MetricRecord],
        *,
        source: DataSource = DataSource.CONNECTOR,
        csv_upload_id: str | None = None,
    ) -> dict[str, int]:
        """Upsert a batch of ingestion records.

        Every record is validated before the first write, so one bad row
        rejects the whole batch.  Returns ``{"created": N, "updated": M}``.
        """
        prepared: list[tuple[SnapshotIdentity, MetricMap]] = []
        for record in records:
            kind = PeriodType(record.period_type)
            prepared.append((
                SnapshotIdentity(
                    workspace_id=workspace_id,
                    connection_id=connection_id,
                    period_type=kind,
                    period_start=record.date,
                ),
                validate_metrics(record.metrics),
            ))

        created = updated = 0
        for identity, metrics in prepared:
            result = self._write(
                identity, metrics, merge=True, source=source, csv_upload_id=csv_upload_id
            )
            if result.created:
                created += 1
            else:
                updated += 1

        logger.info(
            "Snapshot upsert: ws=%s conn=%s source=%s created=%d updated=%d",
            workspace_id, connection_id, source, created, updated,
        )
        return {"created": created, "updated": updated}

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def zone_for(self, workspace_id: int) -> ZoneInfo:
        """Return the reporting timezone of *workspace_id*."""
        with get_session(self.engine) as session:
            return self._zone(session, workspace_id)

    def get(self, identity: SnapshotIdentity) -> SnapshotView | None:
        """Return the live record for *identity*, or ``None``."""
        kind = PeriodType(identity.period_type)
        with get_session(self.engine) as session:
            tz = self._zone(session, identity.workspace_id)
            start = normalize_period_start(kind, identity.period_start, tz)
            row = self._find(
                session, identity.workspace_id, identity.connection_id, kind, start
            )
            if row is None:
                return None
            provider = row.connection.provider if row.connection else None
            return self._to_view(row, provider)

    def read(self, identity: SnapshotIdentity) -> MetricMap | None:
        """Return a copy of the metric mapping for *identity*, or ``None``."""
        view = self.get(identity)
        return None if view is None else dict(view.metrics)

    def query(
        self,
        workspace_id: int,
        period_type: PeriodType | str,
        start: date | datetime,
        end: date | datetime,
        connection_ids: Iterable[int] | None = None,
    ) -> list[SnapshotView]:
        """Return live snapshots whose ``period_start`` lies in ``[start, end)``.

        Dates and naive datetimes are read as wall time in the workspace
        timezone.  ``connection_ids=None`` means every connection (and the
        workspace-level record); an empty collection matches nothing.
        Results are ordered by period start, then channel provider, then
        connection id.
        """
        kind = PeriodType(period_type)
        ids = None if connection_ids is None else set(connection_ids)
        if ids is not None and not ids:
            return []

        with get_session(self.engine) as session:
            tz = self._zone(session, workspace_id)
            lower = _coerce_bound(start, tz)
            upper = _coerce_bound(end, tz)

            stmt = (
                select(MetricSnapshot, ChannelConnection.provider)
                .outerjoin(
                    ChannelConnection,
                    ChannelConnection.id == MetricSnapshot.connection_id,
                )
                .where(
                    MetricSnapshot.workspace_id == workspace_id,
                    MetricSnapshot.period_type == kind,
                    MetricSnapshot.period_start >= lower,
                    MetricSnapshot.period_start < upper,
                )
                .order_by(
                    MetricSnapshot.period_start,
                    func.coalesce(ChannelConnection.provider, ""),
                    func.coalesce(MetricSnapshot.connection_id, 0),
                )
            )
            if ids is not None:
                stmt = stmt.where(MetricSnapshot.connection_id.in_(ids))

            return [self._to_view(row, provider) for row, provider in session.execute(stmt).all()]


def _coerce_bound(value: date | datetime, tz: ZoneInfo) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return localize(value, tz)
        return ensure_utc(value)
    return localize(datetime.combine(value, datetime.min.time()), tz)
