"""
tally.jobs — Batch Trigger Entry Points
========================================

One function per externally triggered job.  An outside clock (cron, a
platform scheduler) calls these once per tick; each returns a
:class:`~tally.services.batch.BatchResult` summary instead of a single
pass/fail flag, so operators can tell "nothing was due" apart from
"everything failed".

    rollup    daily → monthly (or weekly) live snapshots
    freeze    weekly versions for one or all workspaces
    dispatch  render and deliver every due report schedule
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime

from sqlalchemy import Engine

from tally.config import TallyConfig
from tally.database.models import PeriodType
from tally.services.batch import BatchResult
from tally.services.delivery import ChatWebhookChannel, EmailChannel
from tally.services.freeze_service import FreezeScope, run_freeze_job
from tally.services.report_service import (
    DispatchSettings,
    JsonRenderer,
    Renderer,
    ReportDispatcher,
)
from tally.services.rollup_service import (
    run_monthly_rollups,
    run_rollup_job,
    run_weekly_rollups,
)
from tally.services.snapshot_store import SnapshotStore, SnapshotView

logger = logging.getLogger(__name__)


def run_rollup(
    engine: Engine,
    store: SnapshotStore,
    year: int,
    month: int,
    *,
    workspace_id: int | None = None,
    connection_id: int | None = None,
) -> BatchResult:
    """Roll DAILY data of *year*-*month* into MONTHLY snapshots.

    With *workspace_id* only that (workspace, connection) unit runs;
    otherwise every unit with DAILY data in the month.
    """
    if workspace_id is not None:
        return run_rollup_job(store, workspace_id, connection_id, year, month)
    return run_monthly_rollups(engine, store, year, month)


def run_weekly_rollup(
    engine: Engine,
    store: SnapshotStore,
    anchor: date,
) -> BatchResult:
    """Roll DAILY data of the Monday-based week containing *anchor* into WEEKLY."""
    return run_weekly_rollups(engine, store, anchor)


def run_freeze(
    engine: Engine,
    workspace_id: int | None = None,
    scope: FreezeScope = FreezeScope(),
    now: datetime | None = None,
) -> BatchResult:
    """Freeze live snapshots in *scope* for one workspace or all of them."""
    workspace_ids = None if workspace_id is None else [workspace_id]
    return run_freeze_job(engine, scope, now=now, workspace_ids=workspace_ids)


def run_report_dispatch(
    dispatcher: ReportDispatcher,
    now: datetime | None = None,
) -> BatchResult:
    """Run every report schedule due at *now* (defaults to the current instant)."""
    return dispatcher.run(now or datetime.now(UTC))


def query_snapshots(
    store: SnapshotStore,
    workspace_id: int,
    period_type: PeriodType | str,
    start: date | datetime,
    end: date | datetime,
    connection_ids: Iterable[int] | None = None,
) -> list[SnapshotView]:
    """Read-only snapshot query for analytics consumers."""
    return store.query(workspace_id, period_type, start, end, connection_ids)


def build_dispatcher(
    engine: Engine,
    cfg: TallyConfig,
    *,
    renderer: Renderer | None = None,
    store: SnapshotStore | None = None,
) -> ReportDispatcher:
    """Wire a :class:`ReportDispatcher` from config and environment.

    Email is enabled only when ``RESEND_API_KEY`` and ``EMAIL_FROM`` are
    set; otherwise email deliveries are recorded as failed.
    """
    store = store or SnapshotStore(engine, default_timezone=cfg.default_timezone)
    try:
        email = EmailChannel.from_env(timeout=cfg.delivery_timeout_seconds)
    except RuntimeError as exc:
        logger.warning("Email delivery disabled: %s", exc)
        email = None

    return ReportDispatcher(
        engine,
        store,
        renderer or JsonRenderer(),
        email_channel=email,
        chat_channel=ChatWebhookChannel(timeout=cfg.delivery_timeout_seconds),
        settings=DispatchSettings.from_config(cfg),
    )
