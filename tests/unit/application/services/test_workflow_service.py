"""Unit tests for the workflow session engine.

Hey future me - these run the real WorkflowService against the in-memory unit of work,
a FakeClock and a RecordingDispatcher (see tests/conftest.py). No mocks of the engine
internals, so the tests exercise the actual compare-and-set paths.
"""

import asyncio
import copy
from datetime import timedelta

import pytest

from docrelay.application.cache import InMemoryCache, SessionCache
from docrelay.application.services import TokenGenerator, WorkflowService
from docrelay.application.services.workflow_service import (
    ALREADY_COMPLETED_MESSAGE,
    CANCELLED_MESSAGE,
    NOT_ACTIVE_MESSAGE,
    NOT_YOUR_TURN_MESSAGE,
)
from docrelay.config import WorkflowSettings
from docrelay.domain.entities import (
    JobType,
    RecipientSpec,
    RecipientStatus,
    SessionStatus,
    WorkflowSession,
)
from docrelay.domain.exceptions import RepositoryError
from docrelay.domain.ports import NotificationKind
from docrelay.domain.result import Err, ErrorKind, Ok
from docrelay.domain.value_objects import SessionId
from docrelay.infrastructure.persistence.memory import InMemoryWorkflowRepository


async def _create(service: WorkflowService, specs, count: int = 3) -> WorkflowSession:
    result = await service.create_session(specs(count), metadata={"rx": "RX-1"})
    assert isinstance(result, Ok)
    return result.value


def _token(session: WorkflowSession, index: int) -> str:
    return session.recipients[index].access_token.value


async def _stored(uow_factory, session_id: SessionId) -> WorkflowSession:
    async with uow_factory() as uow:
        session = await uow.workflows.get_by_id(session_id)
    assert session is not None
    return session


# Hey future me - the in-memory unit of work runs one at a time, so two real tasks can never
# interleave inside it. To land in the lost compare-and-set branches, the NEXT read of
# `method` hands back `stale` (what a reader saw just before another writer committed);
# every later read is real.
def _serve_stale_read(monkeypatch, method: str, stale: WorkflowSession) -> None:
    original = getattr(InMemoryWorkflowRepository, method)
    pending = [stale]

    async def read(self, key):
        if pending:
            return copy.deepcopy(pending.pop())
        return await original(self, key)

    monkeypatch.setattr(InMemoryWorkflowRepository, method, read)


class GatedCache(InMemoryCache):
    """Cache backend whose writes wait until `release` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()
        self.writing = asyncio.Event()

    async def set(self, key, value, ttl_seconds: int = 3600) -> None:
        self.writing.set()
        await self.release.wait()
        await super().set(key, value, ttl_seconds)


class TestCreateSession:
    """Session factory."""

    async def test_creates_active_session_and_notifies_first_recipient(
        self, service, uow_factory, dispatcher, clock, specs
    ) -> None:
        session = await _create(service, specs)

        stored = await _stored(uow_factory, session.id)
        assert stored.status == SessionStatus.ACTIVE
        assert stored.expires_at == clock() + timedelta(hours=48)
        assert stored.document_ref == "/documents/default.pdf"
        assert stored.metadata == {"rx": "RX-1"}
        assert [r.order_index for r in stored.recipients] == [0, 1, 2]

        first, *rest = stored.recipients
        assert first.status == RecipientStatus.NOTIFIED
        assert first.activated_at == clock()
        assert first.last_notified_at == clock()
        assert all(r.status == RecipientStatus.PENDING for r in rest)
        assert all(r.activated_at is None for r in rest)

        assert dispatcher.sent == [(str(session.id), 0, NotificationKind.CREATED)]

    async def test_tokens_are_unique_and_opaque(self, service, specs) -> None:
        session = await _create(service, specs, count=10)
        tokens = [r.access_token.value for r in session.recipients]

        assert len(set(tokens)) == 10
        for token in tokens:
            assert str(session.id) not in token
            assert len(token) == 32

    async def test_records_expiration_and_reminder_jobs(
        self, service, uow_factory, clock, specs
    ) -> None:
        session = await _create(service, specs)
        await _create(service, specs)

        async with uow_factory() as uow:
            jobs = await uow.jobs.list_for_session(session.id)

        assert len(uow_factory.store.jobs) == 4
        assert all(j.session_id == session.id for j in jobs)
        assert [j.job_type for j in jobs] == [JobType.REMINDER, JobType.EXPIRATION]
        assert jobs[0].execute_at == clock() + timedelta(hours=24)
        assert jobs[0].recipient_id == session.recipients[0].id
        assert jobs[1].execute_at == session.expires_at

    async def test_custom_document_ref(self, service, specs) -> None:
        result = await service.create_session(specs(1), document_ref="s3://bucket/rx.pdf")
        assert result.unwrap().document_ref == "s3://bucket/rx.pdf"

    async def test_normalizes_type_and_mobile(self, service) -> None:
        result = await service.create_session(
            [RecipientSpec(type=" patient ", mobile="+1 (555) 123-4567")]
        )
        recipient = result.unwrap().recipients[0]
        assert recipient.type.value == "PATIENT"
        assert recipient.mobile == "+15551234567"

    @pytest.mark.parametrize(
        ("recipients", "message"),
        [
            ([], "At least one recipient is required"),
            ([RecipientSpec(type="", email="a@example.com")], "Recipient 1: Type is required"),
            ([RecipientSpec(type="DOCTOR", email="a@example.com")], "Invalid type"),
            ([RecipientSpec(type="PATIENT")], "Either email or mobile is required"),
            ([RecipientSpec(type="PATIENT", email="not-an-email")], "Invalid email address"),
            ([RecipientSpec(type="PATIENT", mobile="0123")], "Invalid mobile number format"),
            (
                [RecipientSpec(type="PRESCRIBER", email="a@example.com", npi="123")],
                "NPI must be exactly 10 digits",
            ),
        ],
    )
    async def test_rejects_invalid_recipients(
        self, service, uow_factory, dispatcher, recipients, message
    ) -> None:
        result = await service.create_session(recipients)

        assert isinstance(result, Err)
        assert result.kind is ErrorKind.VALIDATION
        assert message in result.message
        assert uow_factory.store.sessions == {}
        assert dispatcher.sent == []

    async def test_error_names_the_offending_recipient(self, service, specs) -> None:
        recipients = specs(2) + [RecipientSpec(type="PHARMACY", email="broken@")]
        result = await service.create_session(recipients)
        assert result.message.startswith("Recipient 3:")

    async def test_rejects_more_than_max_recipients(self, service, specs) -> None:
        result = await service.create_session(specs(10) + specs(1))
        assert isinstance(result, Err)
        assert "Maximum 10 recipients" in result.message

    async def test_failed_first_notification_still_creates_session(
        self, service, uow_factory, dispatcher, specs
    ) -> None:
        dispatcher.fail = True

        session = await _create(service, specs)

        stored = await _stored(uow_factory, session.id)
        assert stored.status == SessionStatus.ACTIVE
        assert stored.recipients[0].status == RecipientStatus.NOTIFIED
        assert stored.recipients[0].last_notified_at is None

    async def test_storage_failure_leaves_nothing_behind(
        self, service, uow_factory, dispatcher, specs
    ) -> None:
        uow_factory.store.fail_next_commit = True

        with pytest.raises(RepositoryError):
            await service.create_session(specs(3))

        assert uow_factory.store.sessions == {}
        assert uow_factory.store.tokens == {}
        assert uow_factory.store.jobs == {}
        assert dispatcher.sent == []


class TestResolve:
    """Access gate."""

    async def test_first_resolution_marks_accessed(
        self, service, uow_factory, clock, specs
    ) -> None:
        session = await _create(service, specs)
        clock.advance(minutes=10)

        view = (await service.resolve(_token(session, 0))).unwrap()

        assert view.current_recipient.status == RecipientStatus.ACCESSED
        assert view.current_recipient.accessed_at == clock()
        stored = await _stored(uow_factory, session.id)
        assert stored.recipients[0].status == RecipientStatus.ACCESSED

    async def test_second_resolution_is_read_only(
        self, service, uow_factory, clock, specs
    ) -> None:
        session = await _create(service, specs)
        await service.resolve(_token(session, 0))
        first_access = clock()
        clock.advance(minutes=30)

        view = (await service.resolve(_token(session, 0))).unwrap()

        assert view.current_recipient.accessed_at == first_access
        stored = await _stored(uow_factory, session.id)
        assert stored.recipients[0].accessed_at == first_access

    async def test_future_recipient_can_look_but_is_not_opened(
        self, service, uow_factory, clock, specs
    ) -> None:
        session = await _create(service, specs)
        clock.advance(minutes=3)

        view = (await service.resolve(_token(session, 2))).unwrap()

        assert view.current_recipient.order_index == 2
        assert view.current_recipient.status == RecipientStatus.PENDING
        stored = await _stored(uow_factory, session.id)
        assert stored.check_ordering()
        assert stored.recipients[2].status == RecipientStatus.PENDING
        assert stored.recipients[2].accessed_at == clock()

    async def test_early_look_is_kept_once_the_turn_comes(
        self, service, uow_factory, clock, specs
    ) -> None:
        session = await _create(service, specs, count=2)
        clock.advance(minutes=3)
        early = clock()
        await service.resolve(_token(session, 1))
        clock.advance(minutes=3)
        await service.resolve(_token(session, 1))
        await service.submit(_token(session, 0), {"ok": True})
        clock.advance(hours=1)

        view = (await service.resolve(_token(session, 1))).unwrap()

        assert view.current_recipient.status == RecipientStatus.ACCESSED
        assert view.current_recipient.accessed_at == early
        stored = await _stored(uow_factory, session.id)
        assert stored.recipients[1].accessed_at == early

    async def test_view_lists_completed_and_pending(self, service, specs) -> None:
        session = await _create(service, specs)
        await service.submit(_token(session, 0), {"approved": True})

        view = (await service.resolve(_token(session, 1))).unwrap()

        assert [r.order_index for r in view.completed_recipients] == [0]
        assert [r.order_index for r in view.pending_recipients] == [2]

    @pytest.mark.parametrize(
        "token", ["abcdefghijklmnopqrstuvwxyz234567", "short", "UPPERCASE-TOKEN!", ""]
    )
    async def test_unknown_or_malformed_token_is_not_found(self, service, token) -> None:
        result = await service.resolve(token)
        assert isinstance(result, Err)
        assert result.kind is ErrorKind.NOT_FOUND

    async def test_past_deadline_expires_and_reports_expired(
        self, service, uow_factory, dispatcher, clock, specs
    ) -> None:
        session = await _create(service, specs)
        dispatcher.clear()
        clock.advance(hours=49)

        result = await service.resolve(_token(session, 0))

        assert isinstance(result, Err)
        assert result.kind is ErrorKind.EXPIRED
        stored = await _stored(uow_factory, session.id)
        assert stored.status == SessionStatus.EXPIRED
        assert all(r.status == RecipientStatus.EXPIRED for r in stored.recipients)
        assert sorted(i for _, i, _ in dispatcher.sent) == [0, 1, 2]
        assert {k for _, _, k in dispatcher.sent} == {NotificationKind.EXPIRED}

    async def test_exactly_at_deadline_is_expired(self, service, clock, specs) -> None:
        session = await _create(service, specs)
        clock.advance(hours=48)

        result = await service.resolve(_token(session, 0))
        assert result.kind is ErrorKind.EXPIRED

    async def test_completed_session_still_resolves(self, service, specs) -> None:
        session = await _create(service, specs, count=1)
        await service.submit(_token(session, 0), {"done": True})

        view = (await service.resolve(_token(session, 0))).unwrap()

        assert view.session.status == SessionStatus.COMPLETED
        assert view.current_recipient.form_data == {"done": True}


class TestSubmit:
    """Submission processor."""

    async def test_full_chain_completes_in_order(
        self, service, uow_factory, dispatcher, specs
    ) -> None:
        session = await _create(service, specs)

        for index in range(3):
            stored = await _stored(uow_factory, session.id)
            assert stored.check_ordering()
            assert stored.active_recipient().order_index == index

            view = (await service.submit(_token(session, index), {"step": index})).unwrap()
            assert view.current_recipient.status == RecipientStatus.COMPLETED

        stored = await _stored(uow_factory, session.id)
        assert stored.status == SessionStatus.COMPLETED
        assert [r.form_data for r in stored.recipients] == [
            {"step": 0},
            {"step": 1},
            {"step": 2},
        ]
        assert [(i, k) for _, i, k in dispatcher.sent] == [
            (0, NotificationKind.CREATED),
            (1, NotificationKind.CREATED),
            (2, NotificationKind.CREATED),
        ]

    async def test_hand_off_activates_next_recipient(
        self, service, uow_factory, clock, specs
    ) -> None:
        session = await _create(service, specs)
        clock.advance(hours=2)

        await service.submit(_token(session, 0), {"ok": True})

        stored = await _stored(uow_factory, session.id)
        nxt = stored.recipients[1]
        assert nxt.status == RecipientStatus.NOTIFIED
        assert nxt.activated_at == clock()
        assert nxt.last_notified_at == clock()
        assert stored.recipients[2].status == RecipientStatus.PENDING
        reminder_jobs = [
            j for j in uow_factory.store.jobs.values() if j.recipient_id == nxt.id
        ]
        assert len(reminder_jobs) == 1
        assert reminder_jobs[0].execute_at == clock() + timedelta(hours=24)

    async def test_resubmit_is_rejected(self, service, uow_factory, dispatcher, specs) -> None:
        session = await _create(service, specs)
        await service.submit(_token(session, 0), {"v": 1})
        notifications_before = list(dispatcher.sent)

        result = await service.submit(_token(session, 0), {"v": 2})

        assert isinstance(result, Err)
        assert result.kind is ErrorKind.VALIDATION
        assert result.message == ALREADY_COMPLETED_MESSAGE
        stored = await _stored(uow_factory, session.id)
        assert stored.recipients[0].form_data == {"v": 1}
        assert dispatcher.sent == notifications_before

    async def test_out_of_turn_submission_is_rejected(
        self, service, uow_factory, specs
    ) -> None:
        session = await _create(service, specs)

        result = await service.submit(_token(session, 1), {"early": True})

        assert result.kind is ErrorKind.VALIDATION
        assert result.message == NOT_YOUR_TURN_MESSAGE
        stored = await _stored(uow_factory, session.id)
        assert stored.recipients[1].status == RecipientStatus.PENDING

    async def test_non_primitive_form_value_is_rejected(
        self, service, uow_factory, specs
    ) -> None:
        session = await _create(service, specs)

        result = await service.submit(_token(session, 0), {"nested": {"a": 1}})

        assert result.kind is ErrorKind.VALIDATION
        stored = await _stored(uow_factory, session.id)
        assert stored.recipients[0].status == RecipientStatus.NOTIFIED

    async def test_empty_form_is_accepted(self, service, specs) -> None:
        session = await _create(service, specs, count=1)
        assert isinstance(await service.submit(_token(session, 0), {}), Ok)

    async def test_unknown_token(self, service) -> None:
        result = await service.submit("abcdefghijklmnopqrstuvwxyz234567", {})
        assert result.kind is ErrorKind.NOT_FOUND

    async def test_submit_after_deadline_expires_session(
        self, service, uow_factory, clock, specs
    ) -> None:
        session = await _create(service, specs)
        clock.advance(hours=48, seconds=1)

        result = await service.submit(_token(session, 0), {"late": True})

        assert result.kind is ErrorKind.EXPIRED
        stored = await _stored(uow_factory, session.id)
        assert stored.status == SessionStatus.EXPIRED
        assert stored.recipients[0].form_data is None

    async def test_submit_into_expired_session(self, service, specs) -> None:
        session = await _create(service, specs)
        await service.expire_session(session.id)

        result = await service.submit(_token(session, 0), {})

        assert result.kind is ErrorKind.VALIDATION
        assert result.message == NOT_ACTIVE_MESSAGE

    async def test_concurrent_submissions_only_one_wins(
        self, service, uow_factory, dispatcher, specs
    ) -> None:
        session = await _create(service, specs)
        dispatcher.clear()

        results = await asyncio.gather(
            service.submit(_token(session, 0), {"who": "first"}),
            service.submit(_token(session, 0), {"who": "second"}),
        )

        wins = [r for r in results if isinstance(r, Ok)]
        losses = [r for r in results if isinstance(r, Err)]
        assert len(wins) == 1
        assert len(losses) == 1
        assert losses[0].kind in (ErrorKind.VALIDATION, ErrorKind.CONFLICT)
        # Next recipient notified exactly once
        assert dispatcher.kinds_for(1) == [NotificationKind.CREATED]
        stored = await _stored(uow_factory, session.id)
        assert stored.check_ordering()

    async def test_completion_notices_are_opt_in(
        self, uow_factory, dispatcher, clock, specs
    ) -> None:
        service = WorkflowService(
            uow_factory=uow_factory,
            dispatcher=dispatcher,
            cache=SessionCache(),
            token_generator=TokenGenerator(),
            settings=WorkflowSettings(notify_on_completion=True),
            clock=clock,
        )
        session = await _create(service, specs, count=2)
        await service.submit(_token(session, 0), {})
        dispatcher.clear()

        await service.submit(_token(session, 1), {})

        assert sorted(i for _, i, _ in dispatcher.sent) == [0, 1]
        assert {k for _, _, k in dispatcher.sent} == {NotificationKind.COMPLETED}

    async def test_last_submission_notifies_nobody_by_default(
        self, service, dispatcher, specs
    ) -> None:
        session = await _create(service, specs, count=1)
        dispatcher.clear()

        await service.submit(_token(session, 0), {})

        assert dispatcher.sent == []


class TestExpireSession:
    """Expiration transition."""

    async def test_expire_is_idempotent(self, service, uow_factory, dispatcher, specs) -> None:
        session = await _create(service, specs)
        dispatcher.clear()

        first = await service.expire_session(session.id)
        notified = len(dispatcher.sent)
        second = await service.expire_session(session.id)

        assert first.unwrap().status == SessionStatus.EXPIRED
        assert second.unwrap().status == SessionStatus.EXPIRED
        assert notified == 3
        assert len(dispatcher.sent) == 3

    async def test_completed_recipients_stay_completed(
        self, service, uow_factory, specs
    ) -> None:
        session = await _create(service, specs)
        await service.submit(_token(session, 0), {"ok": True})

        await service.expire_session(session.id)

        stored = await _stored(uow_factory, session.id)
        assert [r.status for r in stored.recipients] == [
            RecipientStatus.COMPLETED,
            RecipientStatus.EXPIRED,
            RecipientStatus.EXPIRED,
        ]
        assert stored.recipients[0].form_data == {"ok": True}

    async def test_expiring_completed_session_is_a_no_op(
        self, service, uow_factory, dispatcher, specs
    ) -> None:
        session = await _create(service, specs, count=1)
        await service.submit(_token(session, 0), {})
        dispatcher.clear()

        result = await service.expire_session(session.id)

        assert result.unwrap().status == SessionStatus.COMPLETED
        assert dispatcher.sent == []

    async def test_unknown_session(self, service) -> None:
        result = await service.expire_session(SessionId.generate())
        assert result.kind is ErrorKind.NOT_FOUND


class TestCancelSession:
    """Admin cancellation."""

    async def test_cancel_active_session(
        self, service, uow_factory, dispatcher, clock, specs
    ) -> None:
        session = await _create(service, specs)
        dispatcher.clear()

        result = await service.cancel_session(
            session.id, reason="Duplicate request", cancelled_by="admin@example.com"
        )

        cancelled = result.unwrap()
        assert cancelled.status == SessionStatus.CANCELLED
        stored = await _stored(uow_factory, session.id)
        assert stored.status == SessionStatus.CANCELLED
        assert stored.metadata["rx"] == "RX-1"
        assert stored.metadata["reason"] == "Duplicate request"
        assert stored.metadata["cancelledBy"] == "admin@example.com"
        assert stored.metadata["cancelledAt"] == clock().isoformat()
        assert all(r.status == RecipientStatus.EXPIRED for r in stored.recipients)
        assert dispatcher.sent == []

    async def test_default_reason(self, service, uow_factory, specs) -> None:
        session = await _create(service, specs)
        await service.cancel_session(session.id)
        stored = await _stored(uow_factory, session.id)
        assert stored.metadata["reason"] == "Cancelled by administrator"

    async def test_cancelled_link_reports_cancellation(self, service, specs) -> None:
        session = await _create(service, specs)
        await service.cancel_session(session.id)

        result = await service.resolve(_token(session, 0))

        assert result.kind is ErrorKind.EXPIRED
        assert result.message == CANCELLED_MESSAGE

    async def test_only_active_sessions_can_be_cancelled(self, service, specs) -> None:
        session = await _create(service, specs)
        await service.expire_session(session.id)

        result = await service.cancel_session(session.id)

        assert result.kind is ErrorKind.VALIDATION


class TestReads:
    """GetById, stats and listing."""

    async def test_get_session_is_cached(self, service, uow_factory, specs) -> None:
        session = await _create(service, specs)

        first = (await service.get_session(session.id)).unwrap()
        # Remove the row behind the cache's back - a cache hit still answers
        uow_factory.store.sessions.clear()
        second = (await service.get_session(session.id)).unwrap()

        assert first.id == second.id == session.id

    async def test_writes_invalidate_cache(self, service, specs) -> None:
        session = await _create(service, specs)
        await service.get_session(session.id)

        await service.submit(_token(session, 0), {"ok": True})
        refreshed = (await service.get_session(session.id)).unwrap()

        assert refreshed.recipients[0].status == RecipientStatus.COMPLETED

    async def test_fill_racing_a_write_is_not_kept(
        self, uow_factory, dispatcher, clock, specs
    ) -> None:
        backend = GatedCache()
        service = WorkflowService(
            uow_factory=uow_factory,
            dispatcher=dispatcher,
            cache=SessionCache(backend=backend),
            settings=WorkflowSettings(),
            clock=clock,
        )
        session = await _create(service, specs, count=1)

        # Reader loaded ACTIVE and is stuck writing it to the cache while the submit lands
        read = asyncio.create_task(service.get_session(session.id))
        await backend.writing.wait()
        (await service.submit(_token(session, 0), {"ok": True})).unwrap()
        backend.release.set()
        assert (await read).unwrap().status == SessionStatus.ACTIVE

        refreshed = (await service.get_session(session.id)).unwrap()

        assert refreshed.status == SessionStatus.COMPLETED
        assert refreshed.recipients[0].form_data == {"ok": True}

    async def test_get_unknown_session(self, service) -> None:
        result = await service.get_session(SessionId.generate())
        assert result.kind is ErrorKind.NOT_FOUND

    async def test_stats(self, service, specs) -> None:
        session = await _create(service, specs)
        await service.submit(_token(session, 0), {})

        stats = (await service.get_stats(session.id)).unwrap()

        assert stats.total_recipients == 3
        assert stats.completed_recipients == 1
        assert stats.current_step == 2
        assert stats.completion_rate == 33.33

    async def test_list_newest_first_with_paging(self, service, clock, specs) -> None:
        created = []
        for _ in range(5):
            created.append(await _create(service, specs, count=1))
            clock.advance(minutes=1)

        page = await service.list_sessions(page=1, limit=2)

        assert page.total == 5
        assert page.total_pages == 3
        assert [s.id for s in page.items] == [created[4].id, created[3].id]

        last = await service.list_sessions(page=3, limit=2)
        assert [s.id for s in last.items] == [created[0].id]

    async def test_list_filters_by_status(self, service, specs) -> None:
        keep = await _create(service, specs, count=1)
        gone = await _create(service, specs, count=1)
        await service.expire_session(gone.id)

        page = await service.list_sessions(status=SessionStatus.ACTIVE)

        assert [s.id for s in page.items] == [keep.id]

    async def test_list_clamps_limit(self, service) -> None:
        assert (await service.list_sessions(limit=1000)).limit == 100
        assert (await service.list_sessions(limit=0)).limit == 1
        assert (await service.list_sessions(page=-3)).page == 1


class TestNotificationBookkeeping:
    """last_notified_at stamping after delivery."""

    async def test_failed_stamp_is_logged_not_raised(
        self, service, uow_factory, dispatcher, specs
    ) -> None:
        original_notify = dispatcher.notify

        async def notify_then_break_storage(recipient, session, kind):
            uow_factory.store.fail_next_commit = True
            return await original_notify(recipient, session, kind)

        dispatcher.notify = notify_then_break_storage

        session = await _create(service, specs)

        stored = await _stored(uow_factory, session.id)
        assert stored.status == SessionStatus.ACTIVE
        assert stored.recipients[0].last_notified_at is None


class TestLostRaces:
    """A writer committed between our read and our compare-and-set."""

    async def test_submit_after_an_earlier_submission_committed(
        self, service, uow_factory, dispatcher, monkeypatch, specs
    ) -> None:
        session = await _create(service, specs)
        before = await _stored(uow_factory, session.id)
        (await service.submit(_token(session, 0), {"v": 1})).unwrap()
        dispatcher.clear()
        _serve_stale_read(monkeypatch, "get_by_token", before)

        result = await service.submit(_token(session, 0), {"v": 2})

        assert result.kind is ErrorKind.CONFLICT
        assert result.message == ALREADY_COMPLETED_MESSAGE
        stored = await _stored(uow_factory, session.id)
        assert stored.recipients[0].form_data == {"v": 1}
        assert stored.recipients[1].status == RecipientStatus.NOTIFIED
        assert dispatcher.sent == []

    async def test_submit_after_expiry_committed(
        self, service, uow_factory, dispatcher, monkeypatch, specs
    ) -> None:
        session = await _create(service, specs)
        before = await _stored(uow_factory, session.id)
        await service.expire_session(session.id)
        dispatcher.clear()
        _serve_stale_read(monkeypatch, "get_by_token", before)

        result = await service.submit(_token(session, 0), {"v": 1})

        assert result.kind is ErrorKind.VALIDATION
        assert result.message == NOT_ACTIVE_MESSAGE
        stored = await _stored(uow_factory, session.id)
        assert stored.status == SessionStatus.EXPIRED
        assert all(r.status == RecipientStatus.EXPIRED for r in stored.recipients)
        assert stored.recipients[0].form_data is None
        assert dispatcher.sent == []

    @pytest.mark.parametrize("stale_read", [True, False])
    async def test_next_slot_already_opened_rolls_back(
        self, service, uow_factory, dispatcher, monkeypatch, specs, stale_read: bool
    ) -> None:
        session = await _create(service, specs)
        before = await _stored(uow_factory, session.id)
        # Another writer opened slot 1 behind the engine's back
        uow_factory.store.sessions[session.id].recipients[1].status = RecipientStatus.NOTIFIED
        if stale_read:
            _serve_stale_read(monkeypatch, "get_by_token", before)
        dispatcher.clear()

        result = await service.submit(_token(session, 0), {"v": 1})

        assert result.kind is ErrorKind.CONFLICT
        stored = await _stored(uow_factory, session.id)
        assert stored.recipients[0].status == RecipientStatus.NOTIFIED
        assert stored.recipients[0].form_data is None
        assert dispatcher.sent == []

    async def test_last_submission_after_session_closed_rolls_back(
        self, service, uow_factory, dispatcher, monkeypatch, specs
    ) -> None:
        session = await _create(service, specs, count=1)
        before = await _stored(uow_factory, session.id)
        # Session closed while its last recipient still looked open
        uow_factory.store.sessions[session.id].status = SessionStatus.CANCELLED
        _serve_stale_read(monkeypatch, "get_by_token", before)
        dispatcher.clear()

        result = await service.submit(_token(session, 0), {"v": 1})

        assert result.kind is ErrorKind.CONFLICT
        stored = await _stored(uow_factory, session.id)
        assert stored.status == SessionStatus.CANCELLED
        assert stored.recipients[0].status == RecipientStatus.NOTIFIED
        assert stored.recipients[0].form_data is None

    async def test_expire_after_completion_committed(
        self, service, uow_factory, dispatcher, monkeypatch, specs
    ) -> None:
        session = await _create(service, specs, count=1)
        before = await _stored(uow_factory, session.id)
        await service.submit(_token(session, 0), {"done": True})
        dispatcher.clear()
        _serve_stale_read(monkeypatch, "get_by_id", before)

        result = await service.expire_session(session.id)

        assert result.unwrap().status == SessionStatus.COMPLETED
        stored = await _stored(uow_factory, session.id)
        assert stored.recipients[0].status == RecipientStatus.COMPLETED
        assert dispatcher.sent == []

    async def test_resolve_after_another_resolution_committed(
        self, service, uow_factory, clock, monkeypatch, specs
    ) -> None:
        session = await _create(service, specs)
        before = await _stored(uow_factory, session.id)
        first = (await service.resolve(_token(session, 0))).unwrap()
        clock.advance(minutes=5)
        _serve_stale_read(monkeypatch, "get_by_token", before)

        view = (await service.resolve(_token(session, 0))).unwrap()

        assert view.current_recipient.status == RecipientStatus.ACCESSED
        assert view.current_recipient.accessed_at == first.current_recipient.accessed_at
