"""Initial schema: workspaces, snapshots, versions, report schedules

Revision ID: 5c1e7a9d2b40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "5c1e7a9d2b40"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True),
        server_default=sa.func.now(), nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "workspaces",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="Asia/Seoul"),
        _created_at(),
    )

    op.create_table(
        "channel_connections",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("account_name", sa.String(200), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        _created_at(),
    )
    op.create_index("ix_channel_connections_workspace", "channel_connections", ["workspace_id"])

    op.create_table(
        "metric_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "connection_id", sa.Integer(),
            sa.ForeignKey("channel_connections.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column("period_type", sa.String(16), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("data", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("source", sa.String(16), nullable=False, server_default="CONNECTOR"),
        sa.Column("csv_upload_id", sa.String(64), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.UniqueConstraint(
            "workspace_id", "connection_id", "period_type", "period_start",
            name="uq_metric_snapshots_identity",
        ),
    )
    op.create_index(
        "uq_metric_snapshots_workspace_level", "metric_snapshots",
        ["workspace_id", "period_type", "period_start"],
        unique=True,
        postgresql_where=sa.text("connection_id IS NULL"),
    )
    op.create_index(
        "ix_metric_snapshots_lookup", "metric_snapshots",
        ["workspace_id", "period_type", "period_start"],
    )

    op.create_table(
        "snapshot_versions",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "snapshot_id", sa.Integer(),
            sa.ForeignKey("metric_snapshots.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("version_no", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="SNAPSHOT"),
        sa.Column("frozen_data", postgresql.JSONB(), nullable=False),
        sa.Column("created_by", sa.String(64), nullable=False, server_default="SYSTEM"),
        _created_at(),
        sa.UniqueConstraint("snapshot_id", "version_no", name="uq_snapshot_versions_no"),
    )
    op.create_index(
        "ix_snapshot_versions_status_ts", "snapshot_versions",
        ["snapshot_id", "status", "created_at"],
    )

    op.create_table(
        "report_schedules",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("period_type", sa.String(16), nullable=False),
        sa.Column("schedule_day", sa.Integer(), nullable=False),
        sa.Column("schedule_hour", sa.Integer(), nullable=False, server_default="9"),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="Asia/Seoul"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("email_enabled", sa.Boolean(), server_default=sa.true()),
        sa.Column("chat_enabled", sa.Boolean(), server_default=sa.false()),
        sa.Column("chat_webhook_url", sa.String(500), nullable=True),
        sa.Column("report_config", postgresql.JSONB(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
        sa.UniqueConstraint(
            "workspace_id", "period_type", name="uq_report_schedules_workspace_period"
        ),
    )
    op.create_index("ix_report_schedules_due", "report_schedules", ["is_active", "next_run_at"])

    op.create_table(
        "report_recipients",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "schedule_id", sa.Integer(),
            sa.ForeignKey("report_schedules.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint("schedule_id", "email", name="uq_report_recipients_email"),
    )

    op.create_table(
        "generated_reports",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "schedule_id", sa.Integer(),
            sa.ForeignKey("report_schedules.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("period_type", sa.String(16), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("artifact_size", sa.Integer(), nullable=True),
        sa.Column(
            "generated_at", sa.DateTime(timezone=True),
            server_default=sa.func.now(), nullable=False,
        ),
    )
    op.create_index(
        "ix_generated_reports_schedule_ts", "generated_reports", ["schedule_id", "generated_at"]
    )

    op.create_table(
        "report_deliveries",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "report_id", sa.Integer(),
            sa.ForeignKey("generated_reports.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("recipient", sa.String(500), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("succeeded", sa.Boolean(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("provider_message_id", sa.String(200), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_report_deliveries_report", "report_deliveries", ["report_id"])


def downgrade() -> None:
    op.drop_table("report_deliveries")
    op.drop_table("generated_reports")
    op.drop_table("report_recipients")
    op.drop_table("report_schedules")
    op.drop_table("snapshot_versions")
    op.drop_table("metric_snapshots")
    op.drop_table("channel_connections")
    op.drop_table("workspaces")
