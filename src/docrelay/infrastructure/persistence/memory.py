"""In-memory repositories and unit of work.

Hey future me - this is the TEST DOUBLE for the SQL repositories, but it honours the same
contract: conditional writes are real compare-and-set, a failing unit of work restores
the snapshot taken on entry (no partial writes), and every read returns a deep copy so
callers can't mutate stored state behind the repository's back.

Units of work are serialised through ONE asyncio.Lock on the store. That makes every
unit of work effectively SERIALIZABLE. Never open a unit of work while holding another
one on the same store - it would deadlock.
"""

import asyncio
import copy
from dataclasses import dataclass, field
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
from docrelay.domain.exceptions import RepositoryError
from docrelay.domain.ports import (
    IScheduledJobRepository,
    IUnitOfWork,
    IWorkflowRepository,
    RecipientQuery,
    SessionQuery,
)
from docrelay.domain.value_objects import AccessToken, RecipientId, SessionId


@dataclass
class InMemoryStore:
    """Shared state behind all in-memory units of work."""

    sessions: dict[SessionId, WorkflowSession] = field(default_factory=dict)
    tokens: dict[str, SessionId] = field(default_factory=dict)
    jobs: dict[str, ScheduledJob] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Test hook: the next commit raises RepositoryError and rolls back
    fail_next_commit: bool = False

    def snapshot(self) -> tuple[Any, Any, Any]:
        return (
            copy.deepcopy(self.sessions),
            dict(self.tokens),
            copy.deepcopy(self.jobs),
        )

    def restore(self, snapshot: tuple[Any, Any, Any]) -> None:
        self.sessions, self.tokens, self.jobs = snapshot


class InMemoryWorkflowRepository(IWorkflowRepository):
    """Dictionary-backed workflow repository."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    async def add(self, session: WorkflowSession) -> None:
        if session.id in self._store.sessions:
            raise RepositoryError(f"Workflow session {session.id} already exists")
        for recipient in session.recipients:
            if recipient.access_token.value in self._store.tokens:
                raise RepositoryError("Duplicate access token")
        self._store.sessions[session.id] = copy.deepcopy(session)
        for recipient in session.recipients:
            self._store.tokens[recipient.access_token.value] = session.id

    async def get_by_id(self, session_id: SessionId) -> WorkflowSession | None:
        session = self._store.sessions.get(session_id)
        return copy.deepcopy(session) if session else None

    async def get_by_token(self, token: AccessToken) -> WorkflowSession | None:
        session_id = self._store.tokens.get(token.value)
        if session_id is None:
            return None
        return await self.get_by_id(session_id)

    def _find_stored(self, recipient_id: RecipientId) -> Recipient | None:
        for session in self._store.sessions.values():
            found = session.find_recipient(recipient_id)
            if found is not None:
                return found
        return None

    async def update_recipient(
        self,
        recipient: Recipient,
        expected_statuses: frozenset[RecipientStatus],
        expected_reminder_count: int | None = None,
    ) -> bool:
        stored = self._find_stored(recipient.id)
        if stored is None or stored.status not in expected_statuses:
            return False
        if (
            expected_reminder_count is not None
            and stored.reminder_count != expected_reminder_count
        ):
            return False

        stored.status = recipient.status
        stored.form_data = (
            dict(recipient.form_data) if recipient.form_data is not None else None
        )
        stored.accessed_at = recipient.accessed_at
        stored.completed_at = recipient.completed_at
        stored.activated_at = recipient.activated_at
        stored.last_notified_at = recipient.last_notified_at
        stored.reminder_count = recipient.reminder_count
        stored.updated_at = recipient.updated_at
        return True

    async def update_session_status(
        self,
        session_id: SessionId,
        status: SessionStatus,
        expected_statuses: frozenset[SessionStatus],
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        stored = self._store.sessions.get(session_id)
        if stored is None or stored.status not in expected_statuses:
            return False
        stored.status = status
        stored.updated_at = now
        if metadata is not None:
            stored.metadata = copy.deepcopy(metadata)
        return True

    async def touch_last_notified(self, recipient_id: RecipientId, at: datetime) -> None:
        stored = self._find_stored(recipient_id)
        if stored is not None:
            stored.last_notified_at = at

    @staticmethod
    def _session_matches(session: WorkflowSession, query: SessionQuery) -> bool:
        if query.statuses is not None and session.status not in query.statuses:
            return False
        if query.expires_before is not None and session.expires_at > query.expires_before:
            return False
        return not (
            query.updated_before is not None and session.updated_at > query.updated_before
        )

    async def scan_sessions(
        self,
        query: SessionQuery,
        limit: int,
        offset: int = 0,
        newest_first: bool = False,
    ) -> list[WorkflowSession]:
        matches = sorted(
            (s for s in self._store.sessions.values() if self._session_matches(s, query)),
            key=lambda s: (s.created_at, str(s.id)),
            reverse=newest_first,
        )
        return [copy.deepcopy(s) for s in matches[offset : offset + limit]]

    async def count_sessions(self, query: SessionQuery) -> int:
        return sum(1 for s in self._store.sessions.values() if self._session_matches(s, query))

    @staticmethod
    def _recipient_matches(
        session: WorkflowSession, recipient: Recipient, query: RecipientQuery
    ) -> bool:
        if session.status != SessionStatus.ACTIVE:
            return False
        if recipient.status not in query.statuses or recipient.activated_at is None:
            return False
        if (
            query.last_notified_before is not None
            and recipient.last_notified_at is not None
            and recipient.last_notified_at > query.last_notified_before
        ):
            return False
        return not (
            query.max_reminders is not None
            and recipient.reminder_count >= query.max_reminders
        )

    def _matching_recipients(
        self, query: RecipientQuery
    ) -> list[tuple[WorkflowSession, Recipient]]:
        pairs = [
            (session, recipient)
            for session in self._store.sessions.values()
            for recipient in session.recipients
            if self._recipient_matches(session, recipient, query)
        ]
        pairs.sort(key=lambda p: (p[1].activated_at, str(p[1].id)))
        return pairs

    async def scan_recipients(
        self, query: RecipientQuery, limit: int
    ) -> list[tuple[WorkflowSession, Recipient]]:
        result: list[tuple[WorkflowSession, Recipient]] = []
        for session, recipient in self._matching_recipients(query)[:limit]:
            session_copy = copy.deepcopy(session)
            recipient_copy = session_copy.find_recipient(recipient.id)
            if recipient_copy is not None:
                result.append((session_copy, recipient_copy))
        return result

    async def count_recipients(self, query: RecipientQuery) -> int:
        return len(self._matching_recipients(query))


class InMemoryScheduledJobRepository(IScheduledJobRepository):
    """Dictionary-backed scheduling side table."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    async def add(self, job: ScheduledJob) -> None:
        self._store.jobs[job.id] = job

    async def delete_due(self, now: datetime, limit: int) -> int:
        due = sorted(
            (j for j in self._store.jobs.values() if j.execute_at <= now),
            key=lambda j: j.execute_at,
        )[:limit]
        for job in due:
            del self._store.jobs[job.id]
        return len(due)

    async def count_pending(self, now: datetime) -> int:
        return sum(1 for j in self._store.jobs.values() if j.execute_at > now)

    async def list_for_session(self, session_id: SessionId) -> list[ScheduledJob]:
        return sorted(
            (j for j in self._store.jobs.values() if j.session_id == session_id),
            key=lambda j: j.execute_at,
        )


class InMemoryUnitOfWork(IUnitOfWork):
    """Serialised unit of work with snapshot rollback."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store
        self._snapshot: tuple[Any, Any, Any] | None = None
        self.workflows = InMemoryWorkflowRepository(store)
        self.jobs = InMemoryScheduledJobRepository(store)

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        await self._store.lock.acquire()
        self._snapshot = self._store.snapshot()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            if exc is not None:
                self._rollback()
            elif self._store.fail_next_commit:
                self._store.fail_next_commit = False
                self._rollback()
                raise RepositoryError("Simulated commit failure")
        finally:
            self._snapshot = None
            self._store.lock.release()

    def _rollback(self) -> None:
        if self._snapshot is not None:
            self._store.restore(self._snapshot)


def in_memory_uow_factory(store: InMemoryStore | None = None) -> "InMemoryUowFactory":
    """Build a unit-of-work factory over a (new or given) store."""
    return InMemoryUowFactory(store or InMemoryStore())


class InMemoryUowFactory:
    """Callable factory that also exposes its store for assertions."""

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def __call__(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self.store)
