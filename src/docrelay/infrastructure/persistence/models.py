"""SQLAlchemy ORM models for docrelay."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me - SQLite doesn't preserve timezone info! UTC datetimes come back "naive".
# ALWAYS run DB datetimes through this before comparing them with datetime.now(UTC),
# otherwise you get "can't compare offset-naive and offset-aware datetimes".
def ensure_utc_aware(dt: datetime | None) -> datetime | None:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Listen up, statuses are stored as their string VALUE ("ACTIVE", ...), not as a DB enum -
# keeps SQLite and PostgreSQL migrations identical. Rows are never deleted by the app (audit
# trail), so the cascade on recipients only matters for manual cleanup.
class WorkflowSessionModel(Base):
    """One document's multi-party completion process."""

    __tablename__ = "workflow_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    document_ref: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    recipients: Mapped[list["RecipientModel"]] = relationship(
        "RecipientModel",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="RecipientModel.order_index",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_workflow_sessions_status_created", "status", "created_at"),
        Index("ix_workflow_sessions_status_expires", "status", "expires_at"),
        Index("ix_workflow_sessions_status_updated", "status", "updated_at"),
    )


# Yo, access_token is UNIQUE across ALL sessions - a token resolves to exactly one
# recipient, ever. (session_id, order_index) is unique too, that's the DB half of the
# contiguous-ordering invariant (the other half is checked by the domain entity).
class RecipientModel(Base):
    """One party's slot in a session's ordered chain."""

    __tablename__ = "recipients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workflow_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    recipient_type: Mapped[str] = mapped_column(String(20), nullable=False)
    access_token: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    mobile: Mapped[str | None] = mapped_column(String(20), nullable=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    npi: Mapped[str | None] = mapped_column(String(10), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    form_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reminder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    session: Mapped["WorkflowSessionModel"] = relationship(
        "WorkflowSessionModel", back_populates="recipients"
    )

    __table_args__ = (
        UniqueConstraint("access_token", name="uq_recipients_access_token"),
        UniqueConstraint("session_id", "order_index", name="uq_recipients_session_order"),
        Index("ix_recipients_status_session", "status", "session_id"),
        Index("ix_recipients_last_notified", "status", "last_notified_at"),
    )


# Hey future me - scheduled_jobs is INFORMATIONAL. The sweeps never read it to decide
# anything (they query sessions/recipients directly), it's a record of what the engine
# expected to happen and when. The job-cleanup sweep deletes rows whose execute_at passed.
class ScheduledJobModel(Base):
    """Row of the scheduling side table."""

    __tablename__ = "scheduled_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_type: Mapped[str] = mapped_column(String(20), nullable=False)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workflow_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    recipient_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    execute_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("ix_scheduled_jobs_execute_at", "execute_at"),)
