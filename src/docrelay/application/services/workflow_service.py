"""Workflow session engine.

Hey future me - this is THE state machine. Every session/recipient mutation in the whole
app goes through here (API handlers AND the background sweeps). Rules of the road:

1. Every write happens inside ONE unit of work and uses compare-and-set on the stored
   status. A naive read-then-write would let two concurrent submissions both win.
2. Expected failures come back as Err(...), never raised. Only RepositoryError (and real
   bugs) propagate as exceptions.
3. Notifications go out AFTER the commit and can never roll a transition back. A failed
   delivery just leaves last_notified_at unset, so the reminder sweep retries it.
4. The cache is only read by get_session(). Write paths always re-read the repository
   and invalidate the cache after committing.
"""

import logging
import re
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from email_validator import EmailNotValidError, validate_email

from docrelay.application.cache.session_cache import SessionCache
from docrelay.application.services.token_generator import TokenGenerator
from docrelay.config.settings import WorkflowSettings
from docrelay.domain.entities import (
    OPEN_RECIPIENT_STATUSES,
    UNOPENED_RECIPIENT_STATUSES,
    JobType,
    Recipient,
    RecipientSpec,
    RecipientStatus,
    RecipientType,
    ScheduledJob,
    SessionPage,
    SessionStats,
    SessionStatus,
    SessionView,
    WorkflowSession,
    utc_now,
)
from docrelay.domain.exceptions import (
    ConflictError,
    EntityNotFoundError,
    ExpiredError,
    RepositoryError,
    ValidationError,
)
from docrelay.domain.ports import (
    INotificationDispatcher,
    IUnitOfWork,
    NotificationKind,
    SessionQuery,
)
from docrelay.domain.result import Err, Ok, Result
from docrelay.domain.value_objects import (
    AccessToken,
    RecipientId,
    SessionId,
    is_well_formed_token,
    validate_form_data,
)

logger = logging.getLogger(__name__)

MOBILE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
NPI_PATTERN = re.compile(r"^\d{10}$")
MAX_NAME_LENGTH = 200
MAX_PAGE_SIZE = 100

ALREADY_COMPLETED_MESSAGE = "This workflow step has already been completed"
NOT_ACTIVE_MESSAGE = "This workflow session is no longer active"
NOT_YOUR_TURN_MESSAGE = "This workflow step is not available yet"
CANCELLED_MESSAGE = "Workflow session has been cancelled"

UnitOfWorkFactory = Callable[[], IUnitOfWork]


class WorkflowService:
    """Session engine: create, resolve, submit, expire, cancel and read workflow sessions.

    All collaborators are injected - the service holds no global state and can be built
    as many times as needed (tests build one per test).
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        dispatcher: INotificationDispatcher,
        cache: SessionCache | None = None,
        token_generator: TokenGenerator | None = None,
        settings: WorkflowSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self._dispatcher = dispatcher
        self._settings = settings or WorkflowSettings()
        self._cache = cache or SessionCache(ttl_seconds=self._settings.cache_ttl_seconds)
        self._tokens = token_generator or TokenGenerator()
        self._clock = clock

    @property
    def settings(self) -> WorkflowSettings:
        return self._settings

    @property
    def cache(self) -> SessionCache:
        return self._cache

    @property
    def uow_factory(self) -> UnitOfWorkFactory:
        return self._uow_factory

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_session(
        self,
        recipients: list[RecipientSpec],
        metadata: dict[str, Any] | None = None,
        document_ref: str | None = None,
    ) -> Result[WorkflowSession]:
        """Create a session and notify its first recipient.

        The session and all recipients are written in a single unit of work, so a storage
        failure leaves nothing behind. Recipient 0 starts NOTIFIED, everyone else PENDING.
        """
        try:
            validated = self.validate_recipients(recipients)
            if metadata is not None and not isinstance(metadata, dict):
                raise ValidationError("Metadata must be an object")
        except ValidationError as e:
            return Err(e)

        now = self._clock()
        session_id = SessionId.generate()
        tokens = self._tokens.generate_many(len(validated))

        session_recipients: list[Recipient] = []
        for index, (spec, recipient_type) in enumerate(validated):
            session_recipients.append(
                Recipient(
                    id=RecipientId.generate(),
                    session_id=session_id,
                    order_index=index,
                    type=recipient_type,
                    access_token=AccessToken(tokens[index]),
                    email=spec.email,
                    mobile=spec.mobile,
                    name=spec.name,
                    npi=spec.npi,
                    created_at=now,
                    updated_at=now,
                )
            )

        session = WorkflowSession(
            id=session_id,
            document_ref=document_ref or self._settings.document_url,
            expires_at=now + self._settings.expiration_window,
            recipients=session_recipients,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        first = session.recipients[0]
        first.mark_notified(now)

        async with self._uow_factory() as uow:
            await uow.workflows.add(session)
            await uow.jobs.add(self._job(JobType.EXPIRATION, session, session.expires_at))
            await uow.jobs.add(
                self._job(
                    JobType.REMINDER, session, now + self._settings.reminder_delay, first
                )
            )

        logger.info(
            "Created workflow session %s with %d recipients (expires %s)",
            session.id,
            len(session.recipients),
            session.expires_at.isoformat(),
        )
        await self._notify_and_record(first, session, NotificationKind.CREATED)
        return Ok(session)

    def validate_recipients(
        self, recipients: list[RecipientSpec]
    ) -> list[tuple[RecipientSpec, RecipientType]]:
        """Validate and normalize a recipient list.

        Raises:
            ValidationError: On the first invalid entry
        """
        if not recipients:
            raise ValidationError("At least one recipient is required")
        if len(recipients) > self._settings.max_recipients:
            raise ValidationError(
                f"Maximum {self._settings.max_recipients} recipients allowed"
            )

        validated: list[tuple[RecipientSpec, RecipientType]] = []
        for index, spec in enumerate(recipients, start=1):
            validated.append(self._validate_recipient(index, spec))
        return validated

    def _validate_recipient(
        self, index: int, spec: RecipientSpec
    ) -> tuple[RecipientSpec, RecipientType]:
        label = f"Recipient {index}"
        if not spec.type:
            raise ValidationError(f"{label}: Type is required")
        try:
            recipient_type = RecipientType(spec.type.strip().upper())
        except ValueError:
            raise ValidationError(f"{label}: Invalid type '{spec.type}'") from None

        email = (spec.email or "").strip() or None
        mobile = (spec.mobile or "").strip() or None
        if email is None and mobile is None:
            raise ValidationError(f"{label}: Either email or mobile is required")

        if email is not None:
            try:
                email = validate_email(email, check_deliverability=False).normalized
            except EmailNotValidError as e:
                raise ValidationError(f"{label}: Invalid email address ({e})") from None

        if mobile is not None:
            mobile = re.sub(r"[\s\-().]", "", mobile)
            if not MOBILE_PATTERN.match(mobile):
                raise ValidationError(f"{label}: Invalid mobile number format")

        npi = (spec.npi or "").strip() or None
        if npi is not None and not NPI_PATTERN.match(npi):
            raise ValidationError(f"{label}: NPI must be exactly 10 digits")

        name = (spec.name or "").strip() or None
        if name is not None and len(name) > MAX_NAME_LENGTH:
            raise ValidationError(
                f"{label}: Name must be at most {MAX_NAME_LENGTH} characters"
            )

        normalized = RecipientSpec(
            type=recipient_type.value, email=email, mobile=mobile, name=name, npi=npi
        )
        return normalized, recipient_type

    # =========================================================================
    # ACCESS GATE
    # =========================================================================

    async def resolve(self, token: str) -> Result[SessionView]:
        """Resolve an access token to the session view of its recipient.

        First resolution by the active recipient moves it to ACCESSED. A recipient whose turn
        has not come yet only gets accessed_at stamped on its first look. Any later call is
        read-only. A session found ACTIVE past its deadline is expired right here before
        answering Expired.
        """
        access_token = self._parse_token(token)
        if access_token is None:
            return Err(EntityNotFoundError("Workflow step", _mask(token)))

        now = self._clock()
        changed = False
        async with self._uow_factory() as uow:
            session = await uow.workflows.get_by_token(access_token)
            if session is None:
                return Err(EntityNotFoundError("Workflow step", access_token.masked()))

            if session.status == SessionStatus.CANCELLED:
                return Err(ExpiredError(CANCELLED_MESSAGE))
            if session.status == SessionStatus.EXPIRED:
                return Err(ExpiredError())

            past_expiry = session.status == SessionStatus.ACTIVE and session.is_past_expiry(now)
            recipient = _recipient_for(session, access_token)
            active = session.active_recipient()

            if (
                not past_expiry
                and active is not None
                and active.id == recipient.id
                and recipient.status in UNOPENED_RECIPIENT_STATUSES
            ):
                recipient.mark_accessed(now)
                changed = await uow.workflows.update_recipient(
                    recipient, UNOPENED_RECIPIENT_STATUSES
                )
                if not changed:
                    # Someone else moved it first, show them what is stored now
                    reloaded = await uow.workflows.get_by_token(access_token)
                    if reloaded is None:
                        raise RepositoryError("Workflow session vanished during access")
                    session = reloaded
                    recipient = _recipient_for(session, access_token)
            elif (
                not past_expiry
                and recipient.status in UNOPENED_RECIPIENT_STATUSES
                and recipient.record_first_access(now)
            ):
                # Not their turn yet: remember the first look, leave the status alone
                changed = await uow.workflows.update_recipient(
                    recipient, frozenset({recipient.status})
                )
                if not changed:
                    reloaded = await uow.workflows.get_by_token(access_token)
                    if reloaded is None:
                        raise RepositoryError("Workflow session vanished during access")
                    session = reloaded
                    recipient = _recipient_for(session, access_token)

        if past_expiry:
            logger.info("Session %s accessed after its deadline, expiring", session.id)
            await self.expire_session(session.id)
            return Err(ExpiredError())

        if changed:
            logger.info(
                "Recipient %s (order %d) of session %s accessed via %s",
                recipient.id,
                recipient.order_index,
                session.id,
                access_token.masked(),
            )
            await self._cache.invalidate(session.id)

        return Ok(SessionView.build(session, current=recipient))

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    async def submit(self, token: str, form_data: Any) -> Result[SessionView]:
        """Complete the recipient's step and hand off to the next recipient.

        Preconditions, first failing one wins:
        1. token resolves (else NotFound)
        2. recipient not COMPLETED (else Validation, the at-most-once guard)
        3. session ACTIVE (else Validation)
        Then: past the deadline -> expire + Expired, not the active recipient -> Validation.
        """
        access_token = self._parse_token(token)
        if access_token is None:
            return Err(EntityNotFoundError("Workflow step", _mask(token)))

        try:
            payload = validate_form_data(form_data)
        except ValueError as e:
            return Err(ValidationError(str(e)))

        now = self._clock()
        next_recipient: Recipient | None = None
        past_expiry = False

        try:
            async with self._uow_factory() as uow:
                session = await uow.workflows.get_by_token(access_token)
                if session is None:
                    return Err(EntityNotFoundError("Workflow step", access_token.masked()))

                recipient = _recipient_for(session, access_token)
                precheck = _check_submittable(session, recipient)
                if precheck is not None:
                    return precheck

                if session.is_past_expiry(now):
                    past_expiry = True
                else:
                    active = session.active_recipient()
                    if active is None or active.id != recipient.id:
                        return Err(ValidationError(NOT_YOUR_TURN_MESSAGE))

                    recipient.complete(payload, now)
                    if not await uow.workflows.update_recipient(
                        recipient, OPEN_RECIPIENT_STATUSES
                    ):
                        return await self._classify_lost_submit(uow, access_token)

                    next_recipient = session.recipient_at(recipient.order_index + 1)
                    if next_recipient is not None:
                        if next_recipient.status != RecipientStatus.PENDING:
                            raise ConflictError("Next workflow step changed concurrently")
                        next_recipient.mark_notified(now)
                        if not await uow.workflows.update_recipient(
                            next_recipient, frozenset({RecipientStatus.PENDING})
                        ):
                            raise ConflictError("Next workflow step changed concurrently")
                        await uow.jobs.add(
                            self._job(
                                JobType.REMINDER,
                                session,
                                now + self._settings.reminder_delay,
                                next_recipient,
                            )
                        )
                    else:
                        if not await uow.workflows.update_session_status(
                            session.id,
                            SessionStatus.COMPLETED,
                            frozenset({SessionStatus.ACTIVE}),
                            now,
                        ):
                            raise ConflictError("Workflow session changed concurrently")
                        session.status = SessionStatus.COMPLETED
                    session.updated_at = now
        except ConflictError as e:
            # The unit of work rolled back, nothing from this submission was stored
            logger.warning("Submission via %s lost a race: %s", access_token.masked(), e)
            return Err(e)

        if past_expiry:
            logger.info("Submission after deadline for session %s, expiring", session.id)
            await self.expire_session(session.id)
            return Err(ExpiredError())

        await self._cache.invalidate(session.id)
        logger.info(
            "Recipient %s (order %d) of session %s completed their step",
            recipient.id,
            recipient.order_index,
            session.id,
        )

        if next_recipient is not None:
            logger.info(
                "Session %s handed off to recipient %s (order %d)",
                session.id,
                next_recipient.id,
                next_recipient.order_index,
            )
            await self._notify_and_record(next_recipient, session, NotificationKind.CREATED)
        else:
            logger.info("Workflow session %s completed", session.id)
            if self._settings.notify_on_completion:
                for party in session.recipients:
                    await self._dispatcher.notify(party, session, NotificationKind.COMPLETED)

        return Ok(SessionView.build(session, current=recipient))

    async def _classify_lost_submit(
        self, uow: IUnitOfWork, access_token: AccessToken
    ) -> Err:
        """Work out why the compare-and-set on a submission failed."""
        session = await uow.workflows.get_by_token(access_token)
        if session is None:
            raise RepositoryError("Workflow session vanished during submission")
        recipient = _recipient_for(session, access_token)
        if recipient.is_completed:
            return Err(ConflictError(ALREADY_COMPLETED_MESSAGE))
        if session.status != SessionStatus.ACTIVE:
            return Err(ValidationError(NOT_ACTIVE_MESSAGE))
        return Err(ConflictError("Workflow step changed concurrently"))

    # =========================================================================
    # EXPIRATION / CANCELLATION
    # =========================================================================

    async def expire_session(self, session_id: SessionId) -> Result[WorkflowSession]:
        """Expire an ACTIVE session and all of its open recipients.

        Idempotent: a terminal session is returned untouched and nobody is re-notified.
        Each recipient that actually moved to EXPIRED gets one expiration notice.
        """
        now = self._clock()
        expired_recipients: list[Recipient] = []

        async with self._uow_factory() as uow:
            session = await uow.workflows.get_by_id(session_id)
            if session is None:
                return Err(EntityNotFoundError("Workflow session", str(session_id)))
            if session.is_terminal:
                return Ok(session)

            if not await uow.workflows.update_session_status(
                session.id,
                SessionStatus.EXPIRED,
                frozenset({SessionStatus.ACTIVE}),
                now,
            ):
                reloaded = await uow.workflows.get_by_id(session_id)
                return Ok(reloaded if reloaded is not None else session)

            session.status = SessionStatus.EXPIRED
            session.updated_at = now
            expired_recipients = await self._close_open_recipients(uow, session, now)

        await self._cache.invalidate(session.id)
        logger.info(
            "Expired workflow session %s (%d open recipients closed)",
            session.id,
            len(expired_recipients),
        )

        for recipient in expired_recipients:
            if recipient.has_contact:
                await self._dispatcher.notify(recipient, session, NotificationKind.EXPIRED)

        return Ok(session)

    async def cancel_session(
        self,
        session_id: SessionId,
        reason: str | None = None,
        cancelled_by: str | None = None,
    ) -> Result[WorkflowSession]:
        """Cancel an ACTIVE session. Open recipients are closed, nobody is notified."""
        now = self._clock()

        async with self._uow_factory() as uow:
            session = await uow.workflows.get_by_id(session_id)
            if session is None:
                return Err(EntityNotFoundError("Workflow session", str(session_id)))
            if session.status != SessionStatus.ACTIVE:
                return Err(ValidationError("Only active workflow sessions can be cancelled"))

            metadata = {
                **session.metadata,
                "cancelledAt": now.isoformat(),
                "reason": reason or "Cancelled by administrator",
            }
            if cancelled_by:
                metadata["cancelledBy"] = cancelled_by

            if not await uow.workflows.update_session_status(
                session.id,
                SessionStatus.CANCELLED,
                frozenset({SessionStatus.ACTIVE}),
                now,
                metadata=metadata,
            ):
                return Err(ValidationError("Only active workflow sessions can be cancelled"))

            session.status = SessionStatus.CANCELLED
            session.metadata = metadata
            session.updated_at = now
            await self._close_open_recipients(uow, session, now)

        await self._cache.invalidate(session.id)
        logger.info("Cancelled workflow session %s (reason: %s)", session.id, metadata["reason"])
        return Ok(session)

    async def _close_open_recipients(
        self, uow: IUnitOfWork, session: WorkflowSession, now: datetime
    ) -> list[Recipient]:
        closed: list[Recipient] = []
        for recipient in session.recipients:
            if not recipient.is_open:
                continue
            recipient.expire(now)
            if await uow.workflows.update_recipient(recipient, OPEN_RECIPIENT_STATUSES):
                closed.append(recipient)
        return closed

    # =========================================================================
    # READS
    # =========================================================================

    async def get_session(self, session_id: SessionId) -> Result[WorkflowSession]:
        """Read-through cached lookup by id."""
        cached = await self._cache.get(session_id)
        if cached is not None:
            return Ok(cached)

        # Taken before the read so a write committing meanwhile voids our fill
        generation = self._cache.generation(session_id)
        async with self._uow_factory() as uow:
            session = await uow.workflows.get_by_id(session_id)

        if session is None:
            return Err(EntityNotFoundError("Workflow session", str(session_id)))
        await self._cache.set(session, generation)
        return Ok(session)

    async def get_stats(self, session_id: SessionId) -> Result[SessionStats]:
        """Progress summary for a session."""
        result = await self.get_session(session_id)
        if isinstance(result, Err):
            return result
        return Ok(SessionStats.from_session(result.value))

    async def list_sessions(
        self,
        status: SessionStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> SessionPage:
        """Paginated listing, newest first. limit is clamped to 1..100."""
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        query = SessionQuery(statuses=frozenset({status}) if status else None)

        async with self._uow_factory() as uow:
            total = await uow.workflows.count_sessions(query)
            items = await uow.workflows.scan_sessions(
                query, limit=limit, offset=(page - 1) * limit, newest_first=True
            )

        return SessionPage(items=items, total=total, page=page, limit=limit)

    # =========================================================================
    # NOTIFICATION HELPERS
    # =========================================================================

    async def notify_recipient(
        self, recipient: Recipient, session: WorkflowSession, kind: NotificationKind
    ) -> bool:
        """Notify one recipient and record the delivery on success (used by the sweeps)."""
        return await self._notify_and_record(recipient, session, kind)

    # Hey future me - this is where the "failed initial notification" gap is closed:
    # last_notified_at is ONLY stamped after a successful delivery. The reminder sweep treats
    # an activated recipient with no last_notified_at as due immediately.
    async def _notify_and_record(
        self, recipient: Recipient, session: WorkflowSession, kind: NotificationKind
    ) -> bool:
        delivered = await self._dispatcher.notify(recipient, session, kind)
        if not delivered:
            logger.warning(
                "Notification (%s) to recipient %s of session %s failed, "
                "the reminder sweep will retry",
                kind.value,
                recipient.id,
                session.id,
            )
            return False

        at = self._clock()
        try:
            async with self._uow_factory() as uow:
                await uow.workflows.touch_last_notified(recipient.id, at)
        except RepositoryError as e:
            # The transition already committed; worst case the sweep sends one extra reminder
            logger.warning(
                "Could not record notification time for recipient %s: %s", recipient.id, e
            )
            return True
        recipient.last_notified_at = at
        await self._cache.invalidate(session.id)
        return True

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _job(
        self,
        job_type: JobType,
        session: WorkflowSession,
        execute_at: datetime,
        recipient: Recipient | None = None,
    ) -> ScheduledJob:
        return ScheduledJob(
            id=str(uuid.uuid4()),
            job_type=job_type,
            session_id=session.id,
            execute_at=execute_at,
            recipient_id=recipient.id if recipient else None,
            created_at=self._clock(),
        )

    @staticmethod
    def _parse_token(token: str) -> AccessToken | None:
        if not is_well_formed_token(token):
            return None
        return AccessToken(token)


def _recipient_for(session: WorkflowSession, token: AccessToken) -> Recipient:
    for recipient in session.recipients:
        if recipient.access_token == token:
            return recipient
    raise RepositoryError("Repository returned a session without the requested token")


def _check_submittable(session: WorkflowSession, recipient: Recipient) -> Err | None:
    if recipient.is_completed:
        return Err(ValidationError(ALREADY_COMPLETED_MESSAGE))
    if session.status != SessionStatus.ACTIVE:
        return Err(ValidationError(NOT_ACTIVE_MESSAGE))
    return None


def _mask(token: Any) -> str:
    return f"{str(token)[:6]}..."
