"""create workflow_sessions, recipients and scheduled_jobs

Revision ID: 0001_initial
Revises:
Create Date: 2025-01-15 10:00:00.000000

Hey future me - THE initial schema!

- workflow_sessions: one row per document hand-off chain
- recipients: ordered slots, unique access_token across ALL sessions,
  unique (session_id, order_index)
- scheduled_jobs: informational side table, garbage-collected by the job-cleanup sweep

Statuses are stored as plain strings (no DB enums) so SQLite and PostgreSQL
stay identical.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the three workflow tables."""
    op.create_table(
        "workflow_sessions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("document_ref", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_workflow_sessions_status_created", "workflow_sessions", ["status", "created_at"]
    )
    op.create_index(
        "ix_workflow_sessions_status_expires", "workflow_sessions", ["status", "expires_at"]
    )
    op.create_index(
        "ix_workflow_sessions_status_updated", "workflow_sessions", ["status", "updated_at"]
    )

    op.create_table(
        "recipients",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "session_id",
            sa.String(36),
            sa.ForeignKey("workflow_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.Column("recipient_type", sa.String(20), nullable=False),
        sa.Column("access_token", sa.String(100), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("mobile", sa.String(20), nullable=True),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("npi", sa.String(10), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("form_data", sa.JSON(), nullable=True),
        sa.Column("accessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("access_token", name="uq_recipients_access_token"),
        sa.UniqueConstraint("session_id", "order_index", name="uq_recipients_session_order"),
    )
    op.create_index("ix_recipients_status_session", "recipients", ["status", "session_id"])
    op.create_index(
        "ix_recipients_last_notified", "recipients", ["status", "last_notified_at"]
    )

    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("job_type", sa.String(20), nullable=False),
        sa.Column(
            "session_id",
            sa.String(36),
            sa.ForeignKey("workflow_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("recipient_id", sa.String(36), nullable=True),
        sa.Column("execute_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_scheduled_jobs_execute_at", "scheduled_jobs", ["execute_at"])


def downgrade() -> None:
    """Drop the workflow tables."""
    op.drop_index("ix_scheduled_jobs_execute_at", table_name="scheduled_jobs")
    op.drop_table("scheduled_jobs")
    op.drop_index("ix_recipients_last_notified", table_name="recipients")
    op.drop_index("ix_recipients_status_session", table_name="recipients")
    op.drop_table("recipients")
    op.drop_index("ix_workflow_sessions_status_updated", table_name="workflow_sessions")
    op.drop_index("ix_workflow_sessions_status_expires", table_name="workflow_sessions")
    op.drop_index("ix_workflow_sessions_status_created", table_name="workflow_sessions")
    op.drop_table("workflow_sessions")
