"""API schemas for workflow sessions.

Hey future me - the wire format is camelCase (documentRef, formData, orderIndex...) while
the Python side stays snake_case. CamelModel's alias generator handles the mapping both
ways; FastAPI serializes response models by alias.

Access tokens are bearer credentials. They only show up in the CREATE response (the
caller needs the links to hand out); every other response leaves them out.
"""

from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from docrelay.domain.entities import (
    Recipient,
    RecipientSpec,
    SessionPage,
    SessionStats,
    SessionView,
    WorkflowSession,
)

T = TypeVar("T")


class CamelModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# REQUESTS
# =============================================================================


class RecipientRequest(CamelModel):
    """One recipient of a create request. Field rules are enforced by the engine."""

    type: str | None = Field(default=None, description="PRESCRIBER, PATIENT, PHARMACY, ...")
    name: str | None = Field(default=None, description="Party name")
    email: str | None = Field(default=None, description="Email address")
    mobile: str | None = Field(default=None, description="Mobile number (E.164)")
    npi: str | None = Field(default=None, description="10-digit NPI")

    def to_spec(self) -> RecipientSpec:
        return RecipientSpec(
            type=self.type or "",
            email=self.email,
            mobile=self.mobile,
            name=self.name,
            npi=self.npi,
        )


class CreateWorkflowRequest(CamelModel):
    """Request schema for creating a workflow session."""

    recipients: list[RecipientRequest] = Field(..., description="Ordered recipient chain")
    metadata: dict[str, Any] | None = Field(default=None, description="Opaque metadata")
    document_ref: str | None = Field(default=None, description="Document reference")


class SubmitWorkflowRequest(CamelModel):
    """Request schema for submitting a workflow step.

    Values must be strings, numbers or booleans - checked by the engine so the error
    message names the offending field.
    """

    form_data: dict[str, Any] = Field(..., description="Flat map of form values")


class CancelWorkflowRequest(CamelModel):
    """Request schema for cancelling a workflow session."""

    reason: str | None = Field(default=None, max_length=500)
    cancelled_by: str | None = Field(default=None, max_length=200)


# =============================================================================
# RESPONSES
# =============================================================================


class RecipientResponse(CamelModel):
    """Recipient without its access token."""

    id: str
    order_index: int
    type: str
    name: str | None = None
    email: str | None = None
    mobile: str | None = None
    npi: str | None = None
    status: str
    form_data: dict[str, Any] | None = None
    accessed_at: datetime | None = None
    completed_at: datetime | None = None
    activated_at: datetime | None = None
    last_notified_at: datetime | None = None
    reminder_count: int = 0
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, recipient: Recipient) -> "RecipientResponse":
        return cls(
            id=str(recipient.id),
            order_index=recipient.order_index,
            type=recipient.type.value,
            name=recipient.name,
            email=recipient.email,
            mobile=recipient.mobile,
            npi=recipient.npi,
            status=recipient.status.value,
            form_data=dict(recipient.form_data) if recipient.form_data is not None else None,
            accessed_at=recipient.accessed_at,
            completed_at=recipient.completed_at,
            activated_at=recipient.activated_at,
            last_notified_at=recipient.last_notified_at,
            reminder_count=recipient.reminder_count,
            created_at=recipient.created_at,
            updated_at=recipient.updated_at,
        )


class CreatedRecipientResponse(RecipientResponse):
    """Recipient as returned by create - includes the link to hand out."""

    access_token: str
    access_url: str

    @classmethod
    def from_created(cls, recipient: Recipient, base_url: str) -> "CreatedRecipientResponse":
        base = RecipientResponse.from_entity(recipient).model_dump()
        return cls(
            **base,
            access_token=recipient.access_token.value,
            access_url=f"{base_url.rstrip('/')}/{recipient.access_token.value}",
        )


class SessionResponse(CamelModel):
    """Workflow session with its recipients."""

    id: str
    document_ref: str
    status: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    recipients: list[RecipientResponse]

    @classmethod
    def from_entity(cls, session: WorkflowSession) -> "SessionResponse":
        return cls(
            id=str(session.id),
            document_ref=session.document_ref,
            status=session.status.value,
            metadata=dict(session.metadata),
            expires_at=session.expires_at,
            created_at=session.created_at,
            updated_at=session.updated_at,
            recipients=[RecipientResponse.from_entity(r) for r in session.recipients],
        )


class CreatedSessionResponse(SessionResponse):
    """Create response - recipients carry their access links."""

    recipients: list[CreatedRecipientResponse]  # type: ignore[assignment]

    @classmethod
    def from_created(
        cls, session: WorkflowSession, base_url: str
    ) -> "CreatedSessionResponse":
        base = SessionResponse.from_entity(session)
        return cls(
            id=base.id,
            document_ref=base.document_ref,
            status=base.status,
            metadata=base.metadata,
            expires_at=base.expires_at,
            created_at=base.created_at,
            updated_at=base.updated_at,
            recipients=[
                CreatedRecipientResponse.from_created(r, base_url)
                for r in session.recipients
            ],
        )


class SessionViewResponse(CamelModel):
    """What a recipient sees after resolving or submitting their link."""

    session: SessionResponse
    current_recipient: RecipientResponse | None = None
    completed_recipients: list[RecipientResponse]
    pending_recipients: list[RecipientResponse]

    @classmethod
    def from_view(cls, view: SessionView) -> "SessionViewResponse":
        return cls(
            session=SessionResponse.from_entity(view.session),
            current_recipient=(
                RecipientResponse.from_entity(view.current_recipient)
                if view.current_recipient is not None
                else None
            ),
            completed_recipients=[
                RecipientResponse.from_entity(r) for r in view.completed_recipients
            ],
            pending_recipients=[
                RecipientResponse.from_entity(r) for r in view.pending_recipients
            ],
        )


class SessionStatsResponse(CamelModel):
    """Progress summary."""

    total_recipients: int
    completed_recipients: int
    pending_recipients: int
    current_step: int
    completion_rate: float

    @classmethod
    def from_stats(cls, stats: SessionStats) -> "SessionStatsResponse":
        return cls(
            total_recipients=stats.total_recipients,
            completed_recipients=stats.completed_recipients,
            pending_recipients=stats.pending_recipients,
            current_step=stats.current_step,
            completion_rate=stats.completion_rate,
        )


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class SessionListResponse(CamelModel):
    """One page of sessions, newest first."""

    workflows: list[SessionResponse]
    pagination: Pagination

    @classmethod
    def from_page(cls, page: SessionPage) -> "SessionListResponse":
        return cls(
            workflows=[SessionResponse.from_entity(s) for s in page.items],
            pagination=Pagination(
                page=page.page,
                limit=page.limit,
                total=page.total,
                total_pages=page.total_pages,
            ),
        )


class ApiResponse(CamelModel, Generic[T]):
    """Envelope shared by every successful response."""

    success: bool = True
    data: T | None = None
    message: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
