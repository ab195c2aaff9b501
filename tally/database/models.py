"""
tally.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- workspaces           — Tenant boundary (name + reporting timezone)
- channel_connections  — External data sources inside a workspace
- metric_snapshots     — The mutable "live" record per (workspace, connection,
                         period_type, period_start)
- snapshot_versions    — Write-once frozen copies of a live snapshot
- report_schedules     — One recurring report rule per (workspace, period)
- report_recipients    — Delivery addresses attached to a schedule
- generated_reports    — Append-only audit of every render attempt
- report_deliveries    — Append-only per-recipient delivery outcomes
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Tally ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class PeriodType(enum.StrEnum):
    """Granularity of a metric time bucket."""
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class ReportPeriod(enum.StrEnum):
    """Cadence of a recurring report."""
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class DataSource(enum.StrEnum):
    """Where the latest write to a live snapshot came from."""
    CONNECTOR = "CONNECTOR"
    CSV = "CSV"
    ROLLUP = "ROLLUP"


class SnapshotStatus(enum.StrEnum):
    """LIVE is reserved for bootstrap rows; the freezer only writes SNAPSHOT."""
    LIVE = "LIVE"
    SNAPSHOT = "SNAPSHOT"


class ReportStatus(enum.StrEnum):
    GENERATED = "GENERATED"
    FAILED = "FAILED"


class ChannelProvider(enum.StrEnum):
    """Supported channel connection providers."""
    GA4 = "GA4"
    META_INSTAGRAM = "META_INSTAGRAM"
    META_FACEBOOK = "META_FACEBOOK"
    YOUTUBE = "YOUTUBE"
    NAVER_BLOG = "NAVER_BLOG"
    SMARTSTORE = "SMARTSTORE"
    COUPANG = "COUPANG"


# ---------------------------------------------------------------------------
# Workspace — tenant boundary
# ---------------------------------------------------------------------------
class Workspace(Base):
    __tablename__ = "workspaces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    timezone: Mapped[str] = mapped_column(
        String(64), nullable=False, default="Asia/Seoul"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    connections: Mapped[list[ChannelConnection]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan"
    )
    snapshots: Mapped[list[MetricSnapshot]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan"
    )
    schedules: Mapped[list[ReportSchedule]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Workspace id={self.id} name={self.name!r} tz={self.timezone}>"


# ---------------------------------------------------------------------------
# ChannelConnection — one external data source within a workspace
# ---------------------------------------------------------------------------
class ChannelConnection(Base):
    __tablename__ = "channel_connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    account_name: Mapped[str | None] = mapped_column(String(200), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    workspace: Mapped[Workspace] = relationship(back_populates="connections")
    snapshots: Mapped[list[MetricSnapshot]] = relationship(
        back_populates="connection", cascade="all, delete"
    )

    __table_args__ = (
        Index("ix_channel_connections_workspace", "workspace_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ChannelConnection id={self.id} provider={self.provider} "
            f"workspace={self.workspace_id}>"
        )


# ---------------------------------------------------------------------------
# MetricSnapshot — the live record for one identity tuple
# ---------------------------------------------------------------------------
class MetricSnapshot(Base):
    """Mutable per-period metric mapping.

    Exactly one row exists per (workspace, connection, period_type,
    period_start).  ``data`` is merged key-by-key on every ingestion;
    rows are only removed by workspace/connection cascade.
    ``period_end`` is the exclusive end of the bucket.
    """
    __tablename__ = "metric_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    connection_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("channel_connections.id", ondelete="CASCADE"),
        nullable=True,
    )
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    period_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    data: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    source: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DataSource.CONNECTOR
    )
    csv_upload_id: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    workspace: Mapped[Workspace] = relationship(back_populates="snapshots")
    connection: Mapped[ChannelConnection | None] = relationship(
        back_populates="snapshots"
    )
    versions: Mapped[list[SnapshotVersion]] = relationship(
        back_populates="snapshot",
        cascade="all, delete-orphan",
        order_by="SnapshotVersion.version_no",
    )

    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "connection_id", "period_type", "period_start",
            name="uq_metric_snapshots_identity",
        ),
        # NULL connection_id is distinct under a plain UNIQUE constraint
        Index(
            "uq_metric_snapshots_workspace_level",
            "workspace_id", "period_type", "period_start",
            unique=True,
            postgresql_where=connection_id.is_(None),
            sqlite_where=connection_id.is_(None),
        ),
        Index(
            "ix_metric_snapshots_lookup",
            "workspace_id", "period_type", "period_start",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<MetricSnapshot id={self.id} ws={self.workspace_id} "
            f"conn={self.connection_id} {self.period_type}@{self.period_start}>"
        )


# ---------------------------------------------------------------------------
# SnapshotVersion — write-once frozen copy
# ---------------------------------------------------------------------------
class SnapshotVersion(Base):
    """Immutable, numbered point-in-time copy of a live snapshot.

    ``version_no`` starts at 1 and increases without gaps per snapshot.
    ``frozen_data`` is a deep copy taken at freeze time and never updated.
    """
    __tablename__ = "snapshot_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    snapshot_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("metric_snapshots.id", ondelete="CASCADE"), nullable=False
    )
    version_no: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SnapshotStatus.SNAPSHOT
    )
    frozen_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    snapshot: Mapped[MetricSnapshot] = relationship(back_populates="versions")

    __table_args__ = (
        UniqueConstraint("snapshot_id", "version_no", name="uq_snapshot_versions_no"),
        Index("ix_snapshot_versions_status_ts", "snapshot_id", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SnapshotVersion snapshot={self.snapshot_id} "
            f"v{self.version_no} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# ReportSchedule — recurring report rule
# ---------------------------------------------------------------------------
class ReportSchedule(Base):
    """One recurring report per (workspace, period_type).

    ``schedule_day`` is a weekday 0–6 (0 = Sunday) for WEEKLY and a
    day-of-month 1–31 for MONTHLY.  ``next_run_at`` is recomputed every
    time the schedule fires or its recurrence changes.
    """
    __tablename__ = "report_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    schedule_day: Mapped[int] = mapped_column(Integer, nullable=False)
    schedule_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=9)
    timezone: Mapped[str] = mapped_column(
        String(64), nullable=False, default="Asia/Seoul"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    chat_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    chat_webhook_url: Mapped[str | None] = mapped_column(String(500), default=None)
    report_config: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    next_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    workspace: Mapped[Workspace] = relationship(back_populates="schedules")
    recipients: Mapped[list[ReportRecipient]] = relationship(
        back_populates="schedule", cascade="all, delete-orphan",
        order_by="ReportRecipient.id",
    )
    # No delete cascade: history outlives the schedule with schedule_id NULL
    reports: Mapped[list[GeneratedReport]] = relationship(back_populates="schedule")

    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "period_type", name="uq_report_schedules_workspace_period"
        ),
        Index("ix_report_schedules_due", "is_active", "next_run_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReportSchedule id={self.id} ws={self.workspace_id} "
            f"{self.period_type} next={self.next_run_at}>"
        )


# ---------------------------------------------------------------------------
# ReportRecipient — delivery address on a schedule
# ---------------------------------------------------------------------------
class ReportRecipient(Base):
    __tablename__ = "report_recipients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("report_schedules.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(100), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    schedule: Mapped[ReportSchedule] = relationship(back_populates="recipients")

    __table_args__ = (
        UniqueConstraint("schedule_id", "email", name="uq_report_recipients_email"),
    )

    def __repr__(self) -> str:
        return f"<ReportRecipient id={self.id} schedule={self.schedule_id} {self.email!r}>"


# ---------------------------------------------------------------------------
# GeneratedReport — append-only render audit
# ---------------------------------------------------------------------------
class GeneratedReport(Base):
    """One row per render attempt made by the dispatcher.  Never updated.

    Failed renders are recorded too (``status = FAILED``, no deliveries),
    so history readers that want sent reports filter on ``status``.
    Deleting the schedule keeps the row and clears ``schedule_id``.
    """
    __tablename__ = "generated_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    schedule_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("report_schedules.id", ondelete="SET NULL"), nullable=True
    )
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, default=None)
    artifact_size: Mapped[int | None] = mapped_column(Integer, default=None)
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    schedule: Mapped[ReportSchedule | None] = relationship(back_populates="reports")
    deliveries: Mapped[list[ReportDelivery]] = relationship(
        back_populates="report", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_generated_reports_schedule_ts", "schedule_id", "generated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<GeneratedReport id={self.id} schedule={self.schedule_id} "
            f"status={self.status}>"
        )


# ---------------------------------------------------------------------------
# ReportDelivery — append-only per-recipient delivery outcome
# ---------------------------------------------------------------------------
class ReportDelivery(Base):
    __tablename__ = "report_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("generated_reports.id", ondelete="CASCADE"), nullable=False
    )
    recipient: Mapped[str] = mapped_column(String(500), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    provider_message_id: Mapped[str | None] = mapped_column(String(200), default=None)
    error: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    report: Mapped[GeneratedReport] = relationship(back_populates="deliveries")

    __table_args__ = (
        Index("ix_report_deliveries_report", "report_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReportDelivery report={self.report_id} {self.channel} "
            f"ok={self.succeeded}>"
        )
