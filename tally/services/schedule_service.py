"""
tally.services.schedule_service — Report Schedule Administration
=================================================================

Create / update / delete recurring report schedules and their
recipients.  Every write that touches the recurrence (period type, day,
hour, timezone) or re-activates a schedule recomputes ``next_run_at``
from the caller-supplied ``now``, so a schedule always points at a
future run.

Recurrence parameters are validated here, at creation time, not when
the dispatcher fires.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session, selectinload

from tally.constants import (
    DEFAULT_REPORT_CONFIG,
    DEFAULT_SCHEDULE_HOUR,
    DEFAULT_TIMEZONE,
    MAX_RECIPIENTS,
)
from tally.database.engine import get_session
from tally.database.models import ReportRecipient, ReportSchedule, Workspace
from tally.engine.periods import ensure_utc
from tally.engine.schedule import compute_next_run, validate_recurrence

logger = logging.getLogger(__name__)

_RECURRENCE_FIELDS = frozenset({"period_type", "schedule_day", "schedule_hour", "timezone"})
_MUTABLE_FIELDS = _RECURRENCE_FIELDS | {
    "is_active",
    "email_enabled",
    "chat_enabled",
    "chat_webhook_url",
    "report_config",
}


class DuplicateScheduleError(ValueError):
    """The workspace already has a schedule for this period type."""


class RecipientLimitError(ValueError):
    """Adding the recipient would exceed the per-schedule cap."""


class DuplicateRecipientError(ValueError):
    """The address is already registered on the schedule."""


def _detach(session: Session, obj: ReportSchedule | ReportRecipient) -> None:
    # Load server defaults (and recipients) so the object is usable detached
    session.refresh(obj)
    if isinstance(obj, ReportSchedule):
        obj.recipients  # noqa: B018
    session.expunge(obj)


def _check_unique(
    session: Session, workspace_id: int, kind: str, exclude_id: int | None = None
) -> None:
    stmt = select(ReportSchedule.id).where(
        ReportSchedule.workspace_id == workspace_id,
        ReportSchedule.period_type == kind,
    )
    if exclude_id is not None:
        stmt = stmt.where(ReportSchedule.id != exclude_id)
    existing = session.scalar(stmt)
    if existing is not None:
        raise DuplicateScheduleError(
            f"Workspace {workspace_id} already has a {kind} schedule (id={existing})"
        )


def schedule_to_dict(schedule: ReportSchedule) -> dict[str, Any]:
    """Convert a schedule (and its loaded recipients) to a JSON-friendly dict."""
    result: dict[str, Any] = {}
    for col in schedule.__table__.columns:
        value = getattr(schedule, col.key)
        if isinstance(value, datetime):
            value = ensure_utc(value).isoformat()
        result[col.name] = value
    if "recipients" in schedule.__dict__:
        result["recipients"] = [
            {"id": r.id, "email": r.email, "name": r.name, "is_active": r.is_active}
            for r in schedule.recipients
        ]
    return result


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------
def create_schedule(
    engine: Engine,
    *,
    workspace_id: int,
    period_type: str,
    schedule_day: int,
    schedule_hour: int = DEFAULT_SCHEDULE_HOUR,
    timezone: str = DEFAULT_TIMEZONE,
    is_active: bool = True,
    email_enabled: bool = True,
    chat_enabled: bool = False,
    chat_webhook_url: str | None = None,
    report_config: dict | None = None,
    now: datetime | None = None,
) -> ReportSchedule:
    """Create a schedule and compute its first ``next_run_at``.

    Raises
    ------
    InvalidScheduleError
        If the recurrence parameters are out of range.
    LookupError
        If the workspace does not exist.
    DuplicateScheduleError
        If the workspace already has a schedule for *period_type*.
    """
    kind = validate_recurrence(period_type, schedule_day, schedule_hour, timezone)
    now = ensure_utc(now or datetime.now(UTC))

    with get_session(engine) as session:
        if session.get(Workspace, workspace_id) is None:
            raise LookupError(f"Workspace not found: {workspace_id}")

        _check_unique(session, workspace_id, kind)

        schedule = ReportSchedule(
            workspace_id=workspace_id,
            period_type=kind,
            schedule_day=schedule_day,
            schedule_hour=schedule_hour,
            timezone=timezone,
            is_active=is_active,
            email_enabled=email_enabled,
            chat_enabled=chat_enabled,
            chat_webhook_url=chat_webhook_url,
            report_config=dict(report_config or DEFAULT_REPORT_CONFIG),
            next_run_at=compute_next_run(kind, schedule_day, schedule_hour, timezone, now),
        )
        session.add(schedule)
        session.flush()
        _detach(session, schedule)

    logger.info(
        "Created %s schedule %d for ws=%s (next run %s)",
        kind, schedule.id, workspace_id, ensure_utc(schedule.next_run_at).isoformat(),
    )
    return schedule


def update_schedule(
    engine: Engine,
    schedule_id: int,
    *,
    now: datetime | None = None,
    **changes: Any,
) -> ReportSchedule | None:
    """Apply *changes* to a schedule; ``None`` if it doesn't exist.

    ``next_run_at`` is recomputed when a recurrence field changes or the
    schedule is re-activated.  Unknown field names raise ``TypeError``;
    moving to a period type the workspace already schedules raises
    :class:`DuplicateScheduleError`.
    """
    unknown = set(changes) - _MUTABLE_FIELDS
    if unknown:
        raise TypeError(f"Unknown schedule field(s): {', '.join(sorted(unknown))}")
    now = ensure_utc(now or datetime.now(UTC))

    with get_session(engine) as session:
        schedule = session.get(ReportSchedule, schedule_id)
        if schedule is None:
            return None

        merged = {
            "period_type": schedule.period_type,
            "schedule_day": schedule.schedule_day,
            "schedule_hour": schedule.schedule_hour,
            "timezone": schedule.timezone,
        }
        merged.update({k: v for k, v in changes.items() if k in _RECURRENCE_FIELDS})
        kind = validate_recurrence(
            merged["period_type"], merged["schedule_day"],
            merged["schedule_hour"], merged["timezone"],
        )
        if kind != schedule.period_type:
            _check_unique(session, schedule.workspace_id, kind, exclude_id=schedule.id)

        reactivated = changes.get("is_active") is True and not schedule.is_active
        recurrence_changed = any(
            getattr(schedule, key) != merged[key] for key in _RECURRENCE_FIELDS
        )

        for key, value in changes.items():
            setattr(schedule, key, value)
        schedule.period_type = kind
        schedule.updated_at = now

        if recurrence_changed or reactivated:
            schedule.next_run_at = compute_next_run(
                kind, schedule.schedule_day, schedule.schedule_hour, schedule.timezone, now
            )
            logger.info(
                "Schedule %d recurrence updated → next run %s",
                schedule_id, ensure_utc(schedule.next_run_at).isoformat(),
            )
        session.flush()
        _detach(session, schedule)
    return schedule


def delete_schedule(engine: Engine, schedule_id: int) -> bool:
    """Delete a schedule and its recipients.  ``True`` if it existed."""
    with get_session(engine) as session:
        schedule = session.get(ReportSchedule, schedule_id)
        if schedule is None:
            return False
        session.delete(schedule)
    logger.info("Deleted report schedule %d", schedule_id)
    return True


def get_schedule(engine: Engine, schedule_id: int) -> ReportSchedule | None:
    """Load a detached schedule with its recipients."""
    with get_session(engine) as session:
        schedule = session.scalar(
            select(ReportSchedule)
            .options(selectinload(ReportSchedule.recipients))
            .where(ReportSchedule.id == schedule_id)
        )
        if schedule is not None:
            session.expunge(schedule)
        return schedule


def list_schedules(engine: Engine, workspace_id: int) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        schedules = session.scalars(
            select(ReportSchedule)
            .options(selectinload(ReportSchedule.recipients))
            .where(ReportSchedule.workspace_id == workspace_id)
            .order_by(ReportSchedule.period_type)
        ).all()
        return [schedule_to_dict(s) for s in schedules]


def list_due_schedules(session: Session, now: datetime) -> list[ReportSchedule]:
    """Active schedules whose ``next_run_at`` is at or before *now*."""
    return list(session.scalars(
        select(ReportSchedule)
        .where(
            ReportSchedule.is_active.is_(True),
            ReportSchedule.next_run_at.is_not(None),
            ReportSchedule.next_run_at <= ensure_utc(now),
        )
        .order_by(ReportSchedule.next_run_at, ReportSchedule.id)
    ).all())


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------
def add_recipient(
    engine: Engine,
    schedule_id: int,
    email: str,
    name: str | None = None,
    *,
    max_recipients: int = MAX_RECIPIENTS,
) -> ReportRecipient:
    """Attach a recipient to a schedule.

    Raises
    ------
    LookupError
        If the schedule does not exist.
    ValueError
        If *email* is blank or not an address.
    RecipientLimitError
        If the schedule already has *max_recipients* recipients.
    DuplicateRecipientError
        If *email* is already registered on the schedule.
    """
    email = (email or "").strip()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValueError(f"Invalid recipient address: {email!r}")

    with get_session(engine) as session:
        if session.get(ReportSchedule, schedule_id) is None:
            raise LookupError(f"Report schedule not found: {schedule_id}")

        count = session.scalar(
            select(func.count())
            .select_from(ReportRecipient)
            .where(ReportRecipient.schedule_id == schedule_id)
        ) or 0
        if count >= max_recipients:
            raise RecipientLimitError(
                f"Schedule {schedule_id} already has the maximum of {max_recipients} recipients"
            )

        duplicate = session.scalar(
            select(ReportRecipient.id).where(
                ReportRecipient.schedule_id == schedule_id,
                ReportRecipient.email == email,
            )
        )
        if duplicate is not None:
            raise DuplicateRecipientError(f"{email} is already a recipient")

        recipient = ReportRecipient(schedule_id=schedule_id, email=email, name=name)
        session.add(recipient)
        session.flush()
        _detach(session, recipient)

    logger.info("Added recipient %s to schedule %d", email, schedule_id)
    return recipient


def remove_recipient(engine: Engine, schedule_id: int, recipient_id: int) -> bool:
    """Remove a recipient.  ``True`` if it existed on *schedule_id*."""
    with get_session(engine) as session:
        recipient = session.get(ReportRecipient, recipient_id)
        if recipient is None or recipient.schedule_id != schedule_id:
            return False
        session.delete(recipient)
    logger.info("Removed recipient %d from schedule %d", recipient_id, schedule_id)
    return True
