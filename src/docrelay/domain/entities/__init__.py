"""Domain entities."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from docrelay.domain.value_objects import (
    AccessToken,
    FormData,
    RecipientId,
    SessionId,
)

MAX_RECIPIENTS = 10


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me, SessionStatus has exactly ONE non-terminal value. Once a session leaves
# ACTIVE it never comes back (COMPLETED/EXPIRED/CANCELLED are all final). The enum is stored
# as its string value in the DB, not as an int.
class SessionStatus(str, Enum):
    """Lifecycle status of a workflow session."""

    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


TERMINAL_SESSION_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.EXPIRED, SessionStatus.CANCELLED}
)


# Yo, recipient status flow:
#   PENDING -> NOTIFIED (hand-off reached this slot) -> ACCESSED (opened the link)
#   -> COMPLETED (submitted)    or    any open status -> EXPIRED (session expired/cancelled)
# IN_PROGRESS is kept for rows written by older clients; the engine treats it like ACCESSED.
class RecipientStatus(str, Enum):
    """Status of one recipient slot in the chain."""

    PENDING = "PENDING"
    NOTIFIED = "NOTIFIED"
    ACCESSED = "ACCESSED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


OPEN_RECIPIENT_STATUSES = frozenset(
    {
        RecipientStatus.PENDING,
        RecipientStatus.NOTIFIED,
        RecipientStatus.ACCESSED,
        RecipientStatus.IN_PROGRESS,
    }
)
# Statuses the Access Gate moves to ACCESSED on first resolution
UNOPENED_RECIPIENT_STATUSES = frozenset(
    {RecipientStatus.PENDING, RecipientStatus.NOTIFIED}
)


class RecipientType(str, Enum):
    """Role of a party in the chain. Only used for routing and message wording."""

    PRESCRIBER = "PRESCRIBER"
    PATIENT = "PATIENT"
    PHARMACY = "PHARMACY"
    INSURANCE = "INSURANCE"
    CUSTOM = "CUSTOM"


class JobType(str, Enum):
    """Kinds of rows in the scheduling side table."""

    REMINDER = "reminder"
    EXPIRATION = "expiration"


@dataclass(frozen=True)
class RecipientSpec:
    """One entry of a create request, before validation."""

    type: str
    email: str | None = None
    mobile: str | None = None
    name: str | None = None
    npi: str | None = None


# Hey future me, Recipient is the DOMAIN ENTITY (not the DB model)! Plain dataclass, no
# pydantic, no SQLAlchemy. session_id is a back-reference only - the session owns its
# recipients. access_token is issued ONCE at creation and never regenerated.
# last_notified_at is only stamped when a notification actually went out; activated_at is
# stamped when the hand-off reached this slot. The reminder sweep looks at both.
@dataclass
class Recipient:
    """One party's slot in the ordered chain."""

    id: RecipientId
    session_id: SessionId
    order_index: int
    type: RecipientType
    access_token: AccessToken
    email: str | None = None
    mobile: str | None = None
    name: str | None = None
    npi: str | None = None
    status: RecipientStatus = RecipientStatus.PENDING
    form_data: FormData | None = None
    accessed_at: datetime | None = None
    completed_at: datetime | None = None
    activated_at: datetime | None = None
    last_notified_at: datetime | None = None
    reminder_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        """Validate recipient data."""
        if not self.has_contact:
            raise ValueError("Recipient needs an email or a mobile number")
        if self.order_index < 0:
            raise ValueError("order_index cannot be negative")
        if self.reminder_count < 0:
            raise ValueError("reminder_count cannot be negative")

    @property
    def has_contact(self) -> bool:
        return bool(self.email or self.mobile)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_RECIPIENT_STATUSES

    @property
    def is_completed(self) -> bool:
        return self.status == RecipientStatus.COMPLETED

    # Listen, these transition methods mutate the in-memory entity only. Persisting them is
    # the repository's job and it ALWAYS does a compare-and-set on the previous status, so
    # an entity that went stale in memory can never overwrite a newer row.
    def mark_notified(self, now: datetime) -> None:
        """Hand-off reached this slot."""
        if self.status != RecipientStatus.PENDING:
            raise ValueError(f"Cannot notify recipient in status {self.status.value}")
        self.status = RecipientStatus.NOTIFIED
        self.activated_at = now
        self.updated_at = now

    def mark_accessed(self, now: datetime) -> None:
        """First resolution of the access token by the active recipient."""
        if self.status not in UNOPENED_RECIPIENT_STATUSES:
            raise ValueError(f"Cannot access recipient in status {self.status.value}")
        self.status = RecipientStatus.ACCESSED
        # Keeps the time of an earlier look from before the slot was reached
        self.accessed_at = self.accessed_at or now
        self.updated_at = now

    def record_first_access(self, now: datetime) -> bool:
        """Stamp accessed_at for a look before the slot is active. Status stays put."""
        if self.accessed_at is not None:
            return False
        self.accessed_at = now
        self.updated_at = now
        return True

    def complete(self, form_data: FormData, now: datetime) -> None:
        """Record the submission."""
        if not self.is_open:
            raise ValueError(f"Cannot complete recipient in status {self.status.value}")
        self.status = RecipientStatus.COMPLETED
        self.form_data = dict(form_data)
        self.completed_at = now
        self.updated_at = now

    def expire(self, now: datetime) -> None:
        """Close an open slot because its session ended."""
        if not self.is_open:
            raise ValueError(f"Cannot expire recipient in status {self.status.value}")
        self.status = RecipientStatus.EXPIRED
        self.updated_at = now


# Yo, WorkflowSession enforces the ordering invariant on construction: order indexes must be
# exactly 0..N-1 with 1 <= N <= 10. Recipients are always kept sorted by order_index, so
# recipients[i].order_index == i holds everywhere in the code.
@dataclass
class WorkflowSession:
    """One document's end-to-end multi-party completion process."""

    id: SessionId
    document_ref: str
    expires_at: datetime
    recipients: list[Recipient] = field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        """Validate recipient ordering."""
        self.recipients.sort(key=lambda r: r.order_index)
        count = len(self.recipients)
        if not 1 <= count <= MAX_RECIPIENTS:
            raise ValueError(f"A session needs 1-{MAX_RECIPIENTS} recipients, got {count}")
        if [r.order_index for r in self.recipients] != list(range(count)):
            raise ValueError("Recipient order indexes must be contiguous from 0")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def is_past_expiry(self, now: datetime) -> bool:
        """True once the expiration window has elapsed."""
        return now >= self.expires_at

    def recipient_at(self, order_index: int) -> Recipient | None:
        """Recipient at a given position, or None past the end of the chain."""
        if 0 <= order_index < len(self.recipients):
            return self.recipients[order_index]
        return None

    def find_recipient(self, recipient_id: RecipientId) -> Recipient | None:
        """Look up a recipient of this session by id."""
        return next((r for r in self.recipients if r.id == recipient_id), None)

    def active_recipient(self) -> Recipient | None:
        """Lowest-order recipient that is neither completed nor expired."""
        if self.status != SessionStatus.ACTIVE:
            return None
        return next((r for r in self.recipients if r.is_open), None)

    def completed_recipients(self) -> list[Recipient]:
        return [r for r in self.recipients if r.status == RecipientStatus.COMPLETED]

    def pending_recipients(self) -> list[Recipient]:
        return [r for r in self.recipients if r.status in UNOPENED_RECIPIENT_STATUSES]

    # Hey future me - while ACTIVE, every recipient before the active one must be COMPLETED
    # and nothing after it may have been opened yet. Handy in tests after a concurrent burst.
    def check_ordering(self) -> bool:
        """Verify the single-active-recipient invariant."""
        if self.status != SessionStatus.ACTIVE:
            return all(not r.is_open for r in self.recipients)
        active = self.active_recipient()
        if active is None:
            return False
        for recipient in self.recipients:
            if recipient.order_index < active.order_index and not recipient.is_completed:
                return False
            if (
                recipient.order_index > active.order_index
                and recipient.status != RecipientStatus.PENDING
            ):
                return False
        return True


@dataclass(frozen=True)
class SessionView:
    """What a recipient sees after resolving or submitting."""

    session: WorkflowSession
    current_recipient: Recipient | None
    completed_recipients: list[Recipient]
    pending_recipients: list[Recipient]

    @classmethod
    def build(
        cls, session: WorkflowSession, current: Recipient | None = None
    ) -> "SessionView":
        """Assemble a view from a freshly loaded session."""
        return cls(
            session=session,
            current_recipient=current,
            completed_recipients=session.completed_recipients(),
            pending_recipients=session.pending_recipients(),
        )


@dataclass(frozen=True)
class SessionStats:
    """Progress summary of a session."""

    total_recipients: int
    completed_recipients: int
    pending_recipients: int
    current_step: int
    completion_rate: float

    @classmethod
    def from_session(cls, session: WorkflowSession) -> "SessionStats":
        total = len(session.recipients)
        completed = len(session.completed_recipients())
        rate = (completed / total) * 100 if total else 0.0
        return cls(
            total_recipients=total,
            completed_recipients=completed,
            pending_recipients=total - completed,
            current_step=min(completed + 1, total),
            completion_rate=round(rate, 2),
        )


@dataclass(frozen=True)
class SessionPage:
    """One page of a session listing."""

    items: list[WorkflowSession]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


@dataclass(frozen=True)
class ScheduledJob:
    """Row of the scheduling side table (informational, garbage-collected)."""

    id: str
    job_type: JobType
    session_id: SessionId
    execute_at: datetime
    recipient_id: RecipientId | None = None
    created_at: datetime = field(default_factory=utc_now)


__all__ = [
    "JobType",
    "MAX_RECIPIENTS",
    "OPEN_RECIPIENT_STATUSES",
    "Recipient",
    "RecipientSpec",
    "RecipientStatus",
    "RecipientType",
    "ScheduledJob",
    "SessionPage",
    "SessionStats",
    "SessionStatus",
    "SessionView",
    "TERMINAL_SESSION_STATUSES",
    "UNOPENED_RECIPIENT_STATUSES",
    "WorkflowSession",
    "utc_now",
]
