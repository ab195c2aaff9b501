"""
tally.services.report_service — Scheduled Report Dispatch
==========================================================

Hourly batch job: find every due schedule, render its report, deliver it,
and move the schedule to its next run.

Per schedule, strictly in order:
    1. Resolve the reporting window (previous week / previous month).
    2. Build the payload from the snapshot store and render it, bounded by
       ``render_timeout``.
    3. Render failed → write a FAILED audit row, advance ``next_run_at``
       (``last_run_at`` unchanged).  The failure surfaces at the next
       scheduled instant; it is not retried inside this cycle.
    4. Render succeeded → commit a GENERATED audit row, deliver to every
       active recipient (email) and the chat webhook, record each outcome.
    5. Commit ``last_run_at`` / ``next_run_at``.  A failure here is the
       most serious kind (the schedule may re-fire or never fire) and is
       logged at CRITICAL.

No database session is held while rendering or delivering.  Audit rows
and the schedule update are committed per schedule, so a job killed half
way does not redo finished schedules on the next tick.
"""

from __future__ import annotations

import enum
import json
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Protocol

from sqlalchemy import Engine, select
from sqlalchemy.orm import selectinload

from tally import constants
from tally.config import TallyConfig
from tally.database.engine import get_session
from tally.database.models import (
    GeneratedReport,
    ReportDelivery,
    ReportPeriod,
    ReportSchedule,
    ReportStatus,
)
from tally.engine.periods import ensure_utc
from tally.engine.schedule import (
    ReportWindow,
    compute_next_run,
    current_window,
    explicit_window,
    resolve_report_period,
)
from tally.services.batch import BatchErrorKind, BatchResult, UnitError
from tally.services.delivery import (
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryMessage,
    deliver_with_retry,
    report_filename,
    report_subject,
    report_text,
)
from tally.services.report_data import ReportPayload, build_report_payload
from tally.services.schedule_service import list_due_schedules
from tally.services.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

JOB_NAME = "report-dispatch"


# ---------------------------------------------------------------------------
# Renderer contract
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RenderResult:
    success: bool
    artifact: bytes | None = None
    error: str | None = None


class Renderer(Protocol):
    extension: str  # attachment file extension, e.g. "pdf"

    def render(self, payload: ReportPayload) -> RenderResult: ...


class JsonRenderer:
    """Serialises the payload as UTF-8 JSON.

    Stand-in artifact for deployments without a document renderer.
    """

    extension = "json"

    def render(self, payload: ReportPayload) -> RenderResult:
        body = json.dumps(payload.to_dict(), ensure_ascii=False, indent=2, default=str)
        return RenderResult(success=True, artifact=body.encode("utf-8"))


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
class RunStatus(enum.StrEnum):
    SUCCEEDED = "SUCCEEDED"
    RENDER_FAILED = "RENDER_FAILED"
    FAILED = "FAILED"


@dataclass(slots=True)
class ScheduleRunResult:
    schedule_id: int
    status: RunStatus = RunStatus.SUCCEEDED
    report_id: int | None = None
    delivered: int = 0
    delivery_failed: int = 0
    errors: list[UnitError] = field(default_factory=list)
    next_run_at: datetime | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = str(self.status)
        data["next_run_at"] = self.next_run_at.isoformat() if self.next_run_at else None
        return data


@dataclass(frozen=True, slots=True)
class DispatchSettings:
    render_timeout: float = constants.RENDER_TIMEOUT_SECONDS
    delivery_max_attempts: int = constants.DELIVERY_MAX_ATTEMPTS
    delivery_base_delay: float = constants.DELIVERY_BASE_DELAY
    max_workers: int = constants.DISPATCH_WORKERS
    report_base_url: str | None = None

    @classmethod
    def from_config(cls, cfg: TallyConfig) -> DispatchSettings:
        return cls(
            render_timeout=cfg.render_timeout_seconds,
            delivery_max_attempts=cfg.delivery_max_attempts,
            delivery_base_delay=cfg.delivery_base_delay,
            max_workers=cfg.dispatch_workers,
            report_base_url=cfg.report_base_url,
        )


@dataclass(frozen=True, slots=True)
class _ScheduleSnapshot:
    """Plain copy of the schedule fields needed outside a session."""

    id: int
    workspace_id: int
    workspace_name: str
    period_type: str
    schedule_day: int
    schedule_hour: int
    timezone: str
    email_enabled: bool
    chat_enabled: bool
    chat_webhook_url: str | None
    report_config: dict | None
    recipients: tuple[tuple[str, str | None], ...]


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------
def _iso(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value else None


def report_to_dict(report: GeneratedReport) -> dict[str, Any]:
    return {
        "id": report.id,
        "schedule_id": report.schedule_id,
        "period_type": report.period_type,
        "period_start": _iso(report.period_start),
        "period_end": _iso(report.period_end),
        "status": report.status,
        "error": report.error,
        "artifact_size": report.artifact_size,
        "generated_at": _iso(report.generated_at),
        "deliveries": [
            {
                "recipient": d.recipient,
                "channel": d.channel,
                "succeeded": d.succeeded,
                "attempts": d.attempts,
                "provider_message_id": d.provider_message_id,
                "error": d.error,
            }
            for d in report.deliveries
        ],
    }


def list_report_history(
    engine: Engine,
    workspace_id: int,
    *,
    period_type: ReportPeriod | str | None = None,
    limit: int = constants.HISTORY_PAGE_SIZE,
    cursor: int | None = None,
) -> dict[str, Any]:
    """Return one page of a workspace's generated reports, newest first.

    Failed renders are included; filter on ``status`` for sent reports.
    *limit* is clamped to ``1..HISTORY_MAX_PAGE_SIZE``.  Pass the returned
    ``next_cursor`` back as *cursor* for the following page.

    Returns ``{"reports": [...], "has_more": bool, "next_cursor": int | None}``.
    """
    limit = max(1, min(limit, constants.HISTORY_MAX_PAGE_SIZE))
    stmt = (
        select(GeneratedReport)
        .where(GeneratedReport.workspace_id == workspace_id)
        .options(selectinload(GeneratedReport.deliveries))
        .order_by(GeneratedReport.id.desc())
        .limit(limit + 1)
    )
    if period_type is not None:
        stmt = stmt.where(GeneratedReport.period_type == ReportPeriod(period_type))
    if cursor is not None:
        stmt = stmt.where(GeneratedReport.id < cursor)

    with get_session(engine) as session:
        rows = list(session.scalars(stmt))
        items = [report_to_dict(row) for row in rows[:limit]]

    has_more = len(rows) > limit
    return {
        "reports": items,
        "has_more": has_more,
        "next_cursor": items[-1]["id"] if has_more else None,
    }


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------
class ReportDispatcher:
    """Runs due report schedules against injected renderer and channels."""

    def __init__(
        self,
        engine: Engine,
        store: SnapshotStore,
        renderer: Renderer,
        *,
        email_channel: DeliveryChannel | None = None,
        chat_channel: DeliveryChannel | None = None,
        settings: DispatchSettings = DispatchSettings(),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.store = store
        self.renderer = renderer
        self.email_channel = email_channel
        self.chat_channel = chat_channel
        self.settings = settings
        self._sleep = sleep

    # -------------------------------------------------------------------
    # Batch entry point
    # -------------------------------------------------------------------
    def run(self, now: datetime | None = None) -> BatchResult:
        """Process every schedule due at *now*.

        Loading the due list is the batch boundary: if it fails the
        exception propagates and the whole batch is retried next tick.
        """
        now = ensure_utc(now or datetime.now(UTC))
        with get_session(self.engine) as session:
            due_ids = [s.id for s in list_due_schedules(session, now)]

        batch = BatchResult(job=JOB_NAME)
        if not due_ids:
            batch.info.append(BatchErrorKind.NO_SCHEDULES_DUE)
            logger.info("Report dispatch at %s: no schedules due", now.isoformat())
            return batch

        logger.info("Report dispatch at %s: %d schedule(s) due", now.isoformat(), len(due_ids))
        if self.settings.max_workers > 1:
            with ThreadPoolExecutor(
                max_workers=self.settings.max_workers, thread_name_prefix="tally-dispatch"
            ) as pool:
                results = list(pool.map(lambda sid: self._run_unit(sid, now), due_ids))
        else:
            results = [self._run_unit(sid, now) for sid in due_ids]

        for result in results:
            batch.processed += 1
            if result.status == RunStatus.SUCCEEDED:
                batch.succeeded += 1
            else:
                batch.failed += 1
            batch.errors.extend(result.errors)
            batch.units.append(result.to_dict())

        logger.info(
            "Report dispatch complete — %d processed, %d succeeded, %d failed, %d error(s)",
            batch.processed, batch.succeeded, batch.failed, len(batch.errors),
        )
        return batch

    def _run_unit(self, schedule_id: int, now: datetime) -> ScheduleRunResult:
        try:
            return self.process_schedule(schedule_id, now)
        except Exception as exc:
            logger.exception("Report schedule %d failed unexpectedly", schedule_id)
            result = ScheduleRunResult(schedule_id=schedule_id, status=RunStatus.FAILED)
            result.errors.append(
                UnitError(str(schedule_id), BatchErrorKind.UNIT_FAILED, str(exc))
            )
            return result

    # -------------------------------------------------------------------
    # One schedule
    # -------------------------------------------------------------------
    def process_schedule(self, schedule_id: int, now: datetime) -> ScheduleRunResult:
        now = ensure_utc(now)
        schedule = self._load(schedule_id)
        window = resolve_report_period(schedule.period_type, now, schedule.timezone)
        return self._produce(schedule, window, now, advance=True)

    def generate_manual(
        self,
        schedule_id: int,
        start: date | datetime,
        end: date | datetime,
        *,
        now: datetime | None = None,
    ) -> ScheduleRunResult:
        """Render and deliver *schedule_id* for an explicit ``[start, end)``.

        Writes the same audit rows as a scheduled run but leaves
        ``last_run_at`` and ``next_run_at`` untouched, whether or not the
        schedule is active.

        Raises
        ------
        LookupError
            If the schedule does not exist.
        ValueError
            If *start* is not before *end*.
        """
        now = ensure_utc(now or datetime.now(UTC))
        schedule = self._load(schedule_id)
        window = explicit_window(schedule.period_type, start, end, schedule.timezone)
        logger.info("Manual report for schedule %d (%s)", schedule_id, window.label)
        return self._produce(schedule, window, now, advance=False)

    def _produce(
        self,
        schedule: _ScheduleSnapshot,
        window: ReportWindow,
        now: datetime,
        *,
        advance: bool,
    ) -> ScheduleRunResult:
        schedule_id = schedule.id
        result = ScheduleRunResult(schedule_id=schedule_id)
        payload = build_report_payload(
            self.store, schedule.workspace_id, schedule.period_type, window,
            timezone=schedule.timezone, report_config=schedule.report_config,
        )
        rendered = self.render(payload)

        if not rendered.success:
            logger.error(
                "Render failed for schedule %d (%s): %s",
                schedule_id, window.label, rendered.error,
            )
            result.status = RunStatus.RENDER_FAILED
            result.errors.append(UnitError(
                str(schedule_id), BatchErrorKind.RENDER_FAILED, rendered.error or "render failed",
            ))
            result.report_id = self._record_report(
                schedule, window, ReportStatus.FAILED, error=rendered.error, now=now,
            )
            if advance:
                self._advance(schedule, now, ran=False, result=result)
            return result

        result.report_id = self._record_report(
            schedule, window, ReportStatus.GENERATED,
            artifact_size=len(rendered.artifact or b""), now=now,
        )

        attempts = self._deliver(schedule, window, rendered.artifact, result.report_id)
        for attempt in attempts:
            if attempt.success:
                result.delivered += 1
            else:
                result.delivery_failed += 1
                result.errors.append(UnitError(
                    str(schedule_id), BatchErrorKind.DELIVERY_FAILED,
                    attempt.error or "delivery failed", recipient=attempt.recipient,
                ))
        self._record_deliveries(result.report_id, attempts)

        if advance:
            self._advance(schedule, now, ran=True, result=result)
        logger.info(
            "Schedule %d (%s %s): report %s, %d delivered, %d failed",
            schedule_id, schedule.period_type, window.label, result.report_id,
            result.delivered, result.delivery_failed,
        )
        return result

    def render(self, payload: ReportPayload) -> RenderResult:
        """Call the renderer on a daemon thread, bounded by ``render_timeout``.

        A timeout, an exception, or an empty artifact all become a failed
        :class:`RenderResult`.  A timed-out renderer cannot be interrupted;
        its daemon thread is abandoned and does not hold up process exit.
        """
        outcome: dict[str, object] = {}

        def target() -> None:
            try:
                outcome["result"] = self.renderer.render(payload)
            except Exception as exc:
                outcome["error"] = exc

        worker = threading.Thread(target=target, name="tally-render", daemon=True)
        worker.start()
        worker.join(self.settings.render_timeout)

        if worker.is_alive():
            return RenderResult(
                success=False,
                error=f"Render timed out after {self.settings.render_timeout:g}s",
            )
        if "error" in outcome:
            exc = outcome["error"]
            logger.error("Renderer raised", exc_info=exc)
            return RenderResult(success=False, error=f"{type(exc).__name__}: {exc}")

        rendered = outcome["result"]
        if rendered.success and not rendered.artifact:
            return RenderResult(success=False, error="Renderer returned an empty artifact")
        return rendered

    # -------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------
    def _load(self, schedule_id: int) -> _ScheduleSnapshot:
        with get_session(self.engine) as session:
            schedule = session.get(ReportSchedule, schedule_id)
            if schedule is None:
                raise LookupError(f"Report schedule not found: {schedule_id}")
            return _ScheduleSnapshot(
                id=schedule.id,
                workspace_id=schedule.workspace_id,
                workspace_name=schedule.workspace.name,
                period_type=schedule.period_type,
                schedule_day=schedule.schedule_day,
                schedule_hour=schedule.schedule_hour,
                timezone=schedule.timezone,
                email_enabled=schedule.email_enabled,
                chat_enabled=schedule.chat_enabled,
                chat_webhook_url=schedule.chat_webhook_url,
                report_config=dict(schedule.report_config) if schedule.report_config else None,
                recipients=tuple(
                    (r.email, r.name) for r in schedule.recipients if r.is_active
                ),
            )

    def _record_report(
        self,
        schedule: _ScheduleSnapshot,
        window: ReportWindow,
        status: ReportStatus,
        *,
        now: datetime,
        error: str | None = None,
        artifact_size: int | None = None,
    ) -> int:
        with get_session(self.engine) as session:
            report = GeneratedReport(
                workspace_id=schedule.workspace_id,
                schedule_id=schedule.id,
                period_type=schedule.period_type,
                period_start=window.start,
                period_end=window.end,
                status=status,
                error=error,
                artifact_size=artifact_size,
                generated_at=now,
            )
            session.add(report)
            session.flush()
            return report.id

    def _message(
        self,
        schedule: _ScheduleSnapshot,
        window: ReportWindow,
        recipient: str,
        recipient_name: str | None,
        artifact: bytes | None,
        report_id: int | None,
    ) -> DeliveryMessage:
        preview_url = None
        if self.settings.report_base_url and report_id is not None:
            preview_url = (
                f"{self.settings.report_base_url.rstrip('/')}"
                f"/workspaces/{schedule.workspace_id}/reports/{report_id}"
            )
        return DeliveryMessage(
            recipient=recipient,
            subject=report_subject(schedule.workspace_name, schedule.period_type, window.label),
            text=report_text(
                schedule.workspace_name, schedule.period_type, window.label,
                recipient_name=recipient_name, preview_url=preview_url,
            ),
            attachment=artifact,
            attachment_filename=report_filename(
                schedule.workspace_name, window.label, self.renderer.extension
            ),
        )

    def _send(self, channel: DeliveryChannel, message: DeliveryMessage) -> DeliveryAttempt:
        return deliver_with_retry(
            channel, message,
            max_attempts=self.settings.delivery_max_attempts,
            base_delay=self.settings.delivery_base_delay,
            sleep=self._sleep,
        )

    def _deliver(
        self,
        schedule: _ScheduleSnapshot,
        window: ReportWindow,
        artifact: bytes | None,
        report_id: int | None,
    ) -> list[DeliveryAttempt]:
        attempts: list[DeliveryAttempt] = []

        if schedule.email_enabled:
            for email, name in schedule.recipients:
                if self.email_channel is None:
                    attempts.append(DeliveryAttempt(
                        recipient=email, channel="email", success=False, attempts=0,
                        error="Email channel is not configured",
                    ))
                    continue
                message = self._message(schedule, window, email, name, artifact, report_id)
                attempts.append(self._send(self.email_channel, message))

        if schedule.chat_enabled and schedule.chat_webhook_url:
            if self.chat_channel is None:
                attempts.append(DeliveryAttempt(
                    recipient=schedule.chat_webhook_url, channel="chat", success=False,
                    attempts=0, error="Chat channel is not configured",
                ))
            else:
                message = self._message(
                    schedule, window, schedule.chat_webhook_url, None, None, report_id,
                )
                attempts.append(self._send(self.chat_channel, message))

        return attempts

    def _record_deliveries(self, report_id: int, attempts: list[DeliveryAttempt]) -> None:
        if not attempts:
            return
        try:
            with get_session(self.engine) as session:
                session.add_all([
                    ReportDelivery(
                        report_id=report_id,
                        recipient=a.recipient,
                        channel=a.channel,
                        succeeded=a.success,
                        attempts=a.attempts,
                        provider_message_id=a.provider_message_id,
                        error=a.error,
                    )
                    for a in attempts
                ])
        except Exception:
            # The schedule still advances without the history rows
            logger.exception("Failed to record deliveries for report %d", report_id)

    def _advance(
        self,
        schedule: _ScheduleSnapshot,
        now: datetime,
        *,
        ran: bool,
        result: ScheduleRunResult,
    ) -> None:
        try:
            next_run = compute_next_run(
                schedule.period_type, schedule.schedule_day,
                schedule.schedule_hour, schedule.timezone, now,
            )
            with get_session(self.engine) as session:
                row = session.get(ReportSchedule, schedule.id)
                if row is None:
                    raise LookupError(f"Report schedule {schedule.id} vanished")
                row.next_run_at = next_run
                if ran:
                    row.last_run_at = now
                row.updated_at = now
        except Exception as exc:
            logger.critical(
                "SCHEDULE UPDATE FAILED for schedule %d — next_run_at not advanced, "
                "it may fire again on the next tick",
                schedule.id,
                exc_info=True,
                extra={"job": JOB_NAME, "schedule_id": schedule.id},
            )
            result.status = RunStatus.FAILED
            result.errors.append(UnitError(
                str(schedule.id), BatchErrorKind.SCHEDULE_UPDATE_FAILED, str(exc),
            ))
            return
        result.next_run_at = next_run

    # -------------------------------------------------------------------
    # Test send
    # -------------------------------------------------------------------
    def send_test_report(
        self,
        workspace_id: int,
        period_type: str,
        recipient: str,
        *,
        timezone: str = constants.DEFAULT_TIMEZONE,
        now: datetime | None = None,
    ) -> DeliveryAttempt:
        """Render the *current* week or month and email it to *recipient*.

        Writes no audit rows and leaves every schedule untouched.
        """
        now = ensure_utc(now or datetime.now(UTC))
        window = current_window(period_type, now, timezone)
        payload = build_report_payload(
            self.store, workspace_id, period_type, window, timezone=timezone,
        )
        rendered = self.render(payload)
        if not rendered.success:
            return DeliveryAttempt(
                recipient=recipient, channel="email", success=False, attempts=0,
                error=f"Render failed: {rendered.error}",
            )
        if self.email_channel is None:
            return DeliveryAttempt(
                recipient=recipient, channel="email", success=False, attempts=0,
                error="Email channel is not configured",
            )

        name = payload.workspace["name"]
        message = DeliveryMessage(
            recipient=recipient,
            subject=f"[테스트] {report_subject(name, period_type, window.label)}",
            text=report_text(name, period_type, window.label),
            attachment=rendered.artifact,
            attachment_filename=report_filename(name, window.label, self.renderer.extension),
        )
        return self._send(self.email_channel, message)
