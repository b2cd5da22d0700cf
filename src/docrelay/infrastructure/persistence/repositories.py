"""Repository implementations for workflow entities."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from types import TracebackType
from typing import Any, cast

from sqlalchemy import Select, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from docrelay.domain.entities import (
    JobType,
    Recipient,
    RecipientStatus,
    RecipientType,
    ScheduledJob,
    SessionStatus,
    WorkflowSession,
)
from docrelay.domain.exceptions import RepositoryError
from docrelay.domain.ports import (
    IScheduledJobRepository,
    IUnitOfWork,
    IWorkflowRepository,
    RecipientQuery,
    SessionQuery,
)
from docrelay.domain.value_objects import AccessToken, RecipientId, SessionId

from .models import (
    RecipientModel,
    ScheduledJobModel,
    WorkflowSessionModel,
    ensure_utc_aware,
)

logger = logging.getLogger(__name__)


# =============================================================================
# MAPPING - the ONLY place rows become domain objects and back
# =============================================================================


def recipient_to_entity(model: RecipientModel) -> Recipient:
    """Map a recipient row to the domain entity."""
    try:
        return Recipient(
            id=RecipientId.from_string(model.id),
            session_id=SessionId.from_string(model.session_id),
            order_index=model.order_index,
            type=RecipientType(model.recipient_type),
            access_token=AccessToken(model.access_token),
            email=model.email,
            mobile=model.mobile,
            name=model.name,
            npi=model.npi,
            status=RecipientStatus(model.status),
            form_data=dict(model.form_data) if model.form_data is not None else None,
            accessed_at=ensure_utc_aware(model.accessed_at),
            completed_at=ensure_utc_aware(model.completed_at),
            activated_at=ensure_utc_aware(model.activated_at),
            last_notified_at=ensure_utc_aware(model.last_notified_at),
            reminder_count=model.reminder_count,
            created_at=cast(datetime, ensure_utc_aware(model.created_at)),
            updated_at=cast(datetime, ensure_utc_aware(model.updated_at)),
        )
    except ValueError as e:
        raise RepositoryError(f"Corrupt recipient row {model.id}: {e}") from e


def session_to_entity(model: WorkflowSessionModel) -> WorkflowSession:
    """Map a session row (with its recipients loaded) to the domain aggregate."""
    try:
        return WorkflowSession(
            id=SessionId.from_string(model.id),
            document_ref=model.document_ref,
            expires_at=cast(datetime, ensure_utc_aware(model.expires_at)),
            recipients=[recipient_to_entity(r) for r in model.recipients],
            status=SessionStatus(model.status),
            metadata=dict(model.metadata_json or {}),
            created_at=cast(datetime, ensure_utc_aware(model.created_at)),
            updated_at=cast(datetime, ensure_utc_aware(model.updated_at)),
        )
    except ValueError as e:
        raise RepositoryError(f"Corrupt workflow session row {model.id}: {e}") from e


def recipient_mutable_values(recipient: Recipient) -> dict[str, Any]:
    """Columns a conditional recipient update is allowed to write."""
    return {
        "status": recipient.status.value,
        "form_data": dict(recipient.form_data) if recipient.form_data is not None else None,
        "accessed_at": recipient.accessed_at,
        "completed_at": recipient.completed_at,
        "activated_at": recipient.activated_at,
        "last_notified_at": recipient.last_notified_at,
        "reminder_count": recipient.reminder_count,
        "updated_at": recipient.updated_at,
    }


def recipient_to_model(recipient: Recipient) -> RecipientModel:
    return RecipientModel(
        id=str(recipient.id),
        session_id=str(recipient.session_id),
        order_index=recipient.order_index,
        recipient_type=recipient.type.value,
        access_token=recipient.access_token.value,
        email=recipient.email,
        mobile=recipient.mobile,
        name=recipient.name,
        npi=recipient.npi,
        created_at=recipient.created_at,
        **recipient_mutable_values(recipient),
    )


# =============================================================================
# WORKFLOW REPOSITORY
# =============================================================================


class WorkflowRepository(IWorkflowRepository):
    """SQLAlchemy implementation of the workflow session repository."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    async def add(self, session: WorkflowSession) -> None:
        """Stage a new session and its recipients (commit happens in the unit of work)."""
        model = WorkflowSessionModel(
            id=str(session.id),
            document_ref=session.document_ref,
            status=session.status.value,
            metadata_json=dict(session.metadata),
            expires_at=session.expires_at,
            created_at=session.created_at,
            updated_at=session.updated_at,
            recipients=[recipient_to_model(r) for r in session.recipients],
        )
        self.session.add(model)
        await self.session.flush()

    # Hey future me - populate_existing is NOT optional here! The conditional updates below
    # are Core UPDATE statements that bypass the identity map, so without it a second read in
    # the same unit of work would hand back the stale objects loaded earlier.
    def _select_sessions(self) -> Select[tuple[WorkflowSessionModel]]:
        return (
            select(WorkflowSessionModel)
            .options(selectinload(WorkflowSessionModel.recipients))
            .execution_options(populate_existing=True)
        )

    async def get_by_id(self, session_id: SessionId) -> WorkflowSession | None:
        """Get a session by ID with its recipients."""
        stmt = self._select_sessions().where(WorkflowSessionModel.id == str(session_id))
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return session_to_entity(model) if model else None

    async def get_by_token(self, token: AccessToken) -> WorkflowSession | None:
        """Get the session owning the recipient with this exact token."""
        stmt = (
            self._select_sessions()
            .join(RecipientModel, RecipientModel.session_id == WorkflowSessionModel.id)
            .where(RecipientModel.access_token == token.value)
        )
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return session_to_entity(model) if model else None

    # Listen up, THIS is the at-most-once guard: one UPDATE ... WHERE status IN (...).
    # rowcount 0 means somebody else changed the row first - the caller lost the race.
    async def update_recipient(
        self,
        recipient: Recipient,
        expected_statuses: frozenset[RecipientStatus],
        expected_reminder_count: int | None = None,
    ) -> bool:
        """Compare-and-set a recipient's mutable fields."""
        stmt = update(RecipientModel).where(
            RecipientModel.id == str(recipient.id),
            RecipientModel.status.in_([s.value for s in expected_statuses]),
        )
        if expected_reminder_count is not None:
            stmt = stmt.where(RecipientModel.reminder_count == expected_reminder_count)
        stmt = stmt.values(**recipient_mutable_values(recipient)).execution_options(
            synchronize_session=False
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def update_session_status(
        self,
        session_id: SessionId,
        status: SessionStatus,
        expected_statuses: frozenset[SessionStatus],
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Compare-and-set a session's status."""
        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if metadata is not None:
            values["metadata_json"] = dict(metadata)
        stmt = (
            update(WorkflowSessionModel)
            .where(
                WorkflowSessionModel.id == str(session_id),
                WorkflowSessionModel.status.in_([s.value for s in expected_statuses]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def touch_last_notified(self, recipient_id: RecipientId, at: datetime) -> None:
        """Record a successful notification delivery."""
        stmt = (
            update(RecipientModel)
            .where(RecipientModel.id == str(recipient_id))
            .values(last_notified_at=at)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    @staticmethod
    def _session_filters(query: SessionQuery) -> list[Any]:
        filters: list[Any] = []
        if query.statuses is not None:
            filters.append(WorkflowSessionModel.status.in_([s.value for s in query.statuses]))
        if query.expires_before is not None:
            filters.append(WorkflowSessionModel.expires_at <= query.expires_before)
        if query.updated_before is not None:
            filters.append(WorkflowSessionModel.updated_at <= query.updated_before)
        return filters

    async def scan_sessions(
        self,
        query: SessionQuery,
        limit: int,
        offset: int = 0,
        newest_first: bool = False,
    ) -> list[WorkflowSession]:
        """Scan sessions matching a predicate, ordered by creation time."""
        order = (
            (WorkflowSessionModel.created_at.desc(), WorkflowSessionModel.id.desc())
            if newest_first
            else (WorkflowSessionModel.created_at.asc(), WorkflowSessionModel.id.asc())
        )
        stmt = (
            self._select_sessions()
            .where(*self._session_filters(query))
            .order_by(*order)
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [session_to_entity(m) for m in result.scalars().all()]

    async def count_sessions(self, query: SessionQuery) -> int:
        """Count sessions matching a predicate."""
        stmt = (
            select(func.count())
            .select_from(WorkflowSessionModel)
            .where(*self._session_filters(query))
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    @staticmethod
    def _recipient_filters(query: RecipientQuery) -> list[Any]:
        filters: list[Any] = [
            WorkflowSessionModel.status == SessionStatus.ACTIVE.value,
            RecipientModel.status.in_([s.value for s in query.statuses]),
            RecipientModel.activated_at.is_not(None),
        ]
        if query.last_notified_before is not None:
            filters.append(
                or_(
                    RecipientModel.last_notified_at.is_(None),
                    RecipientModel.last_notified_at <= query.last_notified_before,
                )
            )
        if query.max_reminders is not None:
            filters.append(RecipientModel.reminder_count < query.max_reminders)
        return filters

    async def scan_recipients(
        self, query: RecipientQuery, limit: int
    ) -> list[tuple[WorkflowSession, Recipient]]:
        """Scan recipients matching a predicate, paired with their session aggregate."""
        stmt = (
            select(RecipientModel.id, RecipientModel.session_id)
            .join(WorkflowSessionModel, RecipientModel.session_id == WorkflowSessionModel.id)
            .where(*self._recipient_filters(query))
            .order_by(RecipientModel.activated_at.asc(), RecipientModel.id.asc())
            .limit(limit)
        )
        rows = (await self.session.execute(stmt)).all()
        if not rows:
            return []

        session_ids = {row.session_id for row in rows}
        sessions_stmt = self._select_sessions().where(
            WorkflowSessionModel.id.in_(session_ids)
        )
        sessions = {
            m.id: session_to_entity(m)
            for m in (await self.session.execute(sessions_stmt)).scalars().all()
        }

        pairs: list[tuple[WorkflowSession, Recipient]] = []
        for row in rows:
            session = sessions.get(row.session_id)
            if session is None:
                continue
            recipient = session.find_recipient(RecipientId.from_string(row.id))
            if recipient is not None:
                pairs.append((session, recipient))
        return pairs

    async def count_recipients(self, query: RecipientQuery) -> int:
        """Count recipients matching a predicate."""
        stmt = (
            select(func.count())
            .select_from(RecipientModel)
            .join(WorkflowSessionModel, RecipientModel.session_id == WorkflowSessionModel.id)
            .where(*self._recipient_filters(query))
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


# =============================================================================
# SCHEDULED JOB REPOSITORY
# =============================================================================


class ScheduledJobRepository(IScheduledJobRepository):
    """SQLAlchemy implementation of the scheduling side table."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    async def add(self, job: ScheduledJob) -> None:
        """Stage a scheduled job row."""
        self.session.add(
            ScheduledJobModel(
                id=job.id,
                job_type=job.job_type.value,
                session_id=str(job.session_id),
                recipient_id=str(job.recipient_id) if job.recipient_id else None,
                execute_at=job.execute_at,
                created_at=job.created_at,
            )
        )

    async def delete_due(self, now: datetime, limit: int) -> int:
        """Delete up to `limit` rows whose execute_at has passed."""
        due_ids = (
            select(ScheduledJobModel.id)
            .where(ScheduledJobModel.execute_at <= now)
            .order_by(ScheduledJobModel.execute_at.asc())
            .limit(limit)
        )
        stmt = (
            delete(ScheduledJobModel)
            .where(ScheduledJobModel.id.in_(due_ids))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    async def count_pending(self, now: datetime) -> int:
        """Count rows still in the future."""
        stmt = (
            select(func.count())
            .select_from(ScheduledJobModel)
            .where(ScheduledJobModel.execute_at > now)
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def list_for_session(self, session_id: SessionId) -> list[ScheduledJob]:
        """All job rows of one session (oldest first)."""
        stmt = (
            select(ScheduledJobModel)
            .where(ScheduledJobModel.session_id == str(session_id))
            .order_by(ScheduledJobModel.execute_at.asc())
        )
        result = await self.session.execute(stmt)
        return [
            ScheduledJob(
                id=m.id,
                job_type=JobType(m.job_type),
                session_id=SessionId.from_string(m.session_id),
                execute_at=cast(datetime, ensure_utc_aware(m.execute_at)),
                recipient_id=RecipientId.from_string(m.recipient_id) if m.recipient_id else None,
                created_at=cast(datetime, ensure_utc_aware(m.created_at)),
            )
            for m in result.scalars().all()
        ]


# =============================================================================
# UNIT OF WORK
# =============================================================================


# Hey future me - one SqlAlchemyUnitOfWork = one AsyncSession = one transaction. Build a
# fresh one per operation via the factory, never share an instance between tasks.
class SqlAlchemyUnitOfWork(IUnitOfWork):
    """Transactional scope backed by one AsyncSession."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._session: AsyncSession | None = None

    async def __aenter__(self) -> SqlAlchemyUnitOfWork:
        self._session = self._session_factory()
        self.workflows = WorkflowRepository(self._session)
        self.jobs = ScheduledJobRepository(self._session)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        session = self._session
        if session is None:
            return
        try:
            if exc is None:
                try:
                    await session.commit()
                except SQLAlchemyError as e:
                    await session.rollback()
                    logger.error("Unit of work commit failed: %s", e)
                    raise RepositoryError(f"Failed to commit transaction: {e}") from e
            else:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError):
                    logger.error("Unit of work rolled back after database error: %s", exc)
                    raise RepositoryError(f"Database operation failed: {exc}") from exc
        finally:
            await session.close()
            self._session = None


def sqlalchemy_uow_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[], SqlAlchemyUnitOfWork]:
    """Build the unit-of-work factory the WorkflowService expects."""

    def factory() -> SqlAlchemyUnitOfWork:
        return SqlAlchemyUnitOfWork(session_factory)

    return factory
