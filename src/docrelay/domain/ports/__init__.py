"""Domain ports (interfaces) for dependency inversion."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from types import TracebackType
from typing import Any

from docrelay.domain.entities import (
    Recipient,
    RecipientStatus,
    ScheduledJob,
    SessionStatus,
    WorkflowSession,
)

# Notification system interfaces
from docrelay.domain.ports.notification import (
    INotificationDispatcher,
    INotificationProvider,
    Notification,
    NotificationChannel,
    NotificationKind,
    NotificationResult,
)
from docrelay.domain.value_objects import AccessToken, RecipientId, SessionId


# Hey future me, the sweeps never hand-roll SQL - they describe WHAT they want with these
# query objects and each repository implementation translates them (WHERE clause for SQL,
# plain filter for the in-memory double). Every field is optional; None means "don't filter".
@dataclass(frozen=True)
class SessionQuery:
    """Predicate for scanning sessions."""

    statuses: frozenset[SessionStatus] | None = None
    expires_before: datetime | None = None
    updated_before: datetime | None = None


@dataclass(frozen=True)
class RecipientQuery:
    """Predicate for scanning recipients (joined with their session).

    Only recipients whose session is ACTIVE and who were actually reached by the
    hand-off (activated_at set) are ever returned. A recipient that was reached but never
    successfully notified (last_notified_at is None) always matches the time filter.
    """

    statuses: frozenset[RecipientStatus]
    last_notified_before: datetime | None = None
    max_reminders: int | None = None


# Yo, IWorkflowRepository is the PORT for sessions AND their recipients - a session owns its
# recipients, so they are loaded/stored together. All conditional writes are compare-and-set:
# they return False when the row was no longer in one of the expected statuses. Callers MUST
# look at that bool, it's the at-most-once guard!
class IWorkflowRepository(ABC):
    """Repository interface for WorkflowSession aggregates."""

    @abstractmethod
    async def add(self, session: WorkflowSession) -> None:
        """Persist a new session with all of its recipients."""
        pass

    @abstractmethod
    async def get_by_id(self, session_id: SessionId) -> WorkflowSession | None:
        """Get a session (with recipients) by ID."""
        pass

    @abstractmethod
    async def get_by_token(self, token: AccessToken) -> WorkflowSession | None:
        """Get the session owning the recipient with this exact access token."""
        pass

    @abstractmethod
    async def update_recipient(
        self,
        recipient: Recipient,
        expected_statuses: frozenset[RecipientStatus],
        expected_reminder_count: int | None = None,
    ) -> bool:
        """Write the recipient's mutable fields if its stored status is still expected.

        Args:
            recipient: Recipient carrying the new state
            expected_statuses: Statuses the stored row must currently have
            expected_reminder_count: If set, the stored reminder_count must also match

        Returns:
            True if the row was written, False if the compare-and-set lost
        """
        pass

    @abstractmethod
    async def update_session_status(
        self,
        session_id: SessionId,
        status: SessionStatus,
        expected_statuses: frozenset[SessionStatus],
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Move a session to a new status if its stored status is still expected.

        Returns:
            True if the row was written, False if the compare-and-set lost
        """
        pass

    @abstractmethod
    async def touch_last_notified(self, recipient_id: RecipientId, at: datetime) -> None:
        """Record a successful notification delivery."""
        pass

    @abstractmethod
    async def scan_sessions(
        self,
        query: SessionQuery,
        limit: int,
        offset: int = 0,
        newest_first: bool = False,
    ) -> list[WorkflowSession]:
        """Scan sessions matching a predicate, in bounded batches."""
        pass

    @abstractmethod
    async def count_sessions(self, query: SessionQuery) -> int:
        """Count sessions matching a predicate."""
        pass

    @abstractmethod
    async def scan_recipients(
        self, query: RecipientQuery, limit: int
    ) -> list[tuple[WorkflowSession, Recipient]]:
        """Scan recipients matching a predicate, together with their session."""
        pass

    @abstractmethod
    async def count_recipients(self, query: RecipientQuery) -> int:
        """Count recipients matching a predicate."""
        pass


class IScheduledJobRepository(ABC):
    """Repository interface for the scheduling side table."""

    @abstractmethod
    async def add(self, job: ScheduledJob) -> None:
        """Record a scheduled job row."""
        pass

    @abstractmethod
    async def delete_due(self, now: datetime, limit: int) -> int:
        """Delete up to `limit` rows whose execute_at has passed. Returns rows deleted."""
        pass

    @abstractmethod
    async def count_pending(self, now: datetime) -> int:
        """Count rows whose execute_at is still in the future."""
        pass

    @abstractmethod
    async def list_for_session(self, session_id: SessionId) -> list[ScheduledJob]:
        """All rows of one session, soonest execute_at first."""
        pass


# Hey future me, a unit of work is ONE durable transaction. Use it as:
#     async with uow_factory() as uow:
#         session = await uow.workflows.get_by_token(token)
#         ...
# Clean exit commits, an exception rolls back and re-raises. Storage faults come out as
# RepositoryError, never as raw driver exceptions.
class IUnitOfWork(ABC):
    """Transactional scope over the workflow and job repositories."""

    workflows: IWorkflowRepository
    jobs: IScheduledJobRepository

    @abstractmethod
    async def __aenter__(self) -> "IUnitOfWork":
        pass

    @abstractmethod
    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        pass


__all__ = [
    "INotificationDispatcher",
    "INotificationProvider",
    "IScheduledJobRepository",
    "IUnitOfWork",
    "IWorkflowRepository",
    "Notification",
    "NotificationChannel",
    "NotificationKind",
    "NotificationResult",
    "RecipientQuery",
    "SessionQuery",
]
