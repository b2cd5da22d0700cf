"""Shared fixtures.

Hey future me - the engine never reads the wall clock directly, it takes a `clock`
callable. Tests hand it a FakeClock and move time with clock.advance(hours=49) instead of
sleeping. The in-memory unit of work gives real compare-and-set semantics, so concurrency
tests don't need a database.
"""

from datetime import UTC, datetime, timedelta

import pytest

from docrelay.application.cache import SessionCache
from docrelay.application.services import TokenGenerator, WorkflowService
from docrelay.application.workers import WorkflowJobs
from docrelay.config import WorkflowSettings
from docrelay.domain.entities import Recipient, RecipientSpec, WorkflowSession
from docrelay.domain.ports import INotificationDispatcher, NotificationKind
from docrelay.infrastructure.persistence import InMemoryUowFactory, in_memory_uow_factory

START = datetime(2025, 1, 15, 9, 0, tzinfo=UTC)


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class RecordingDispatcher(INotificationDispatcher):
    """Dispatcher double that records every call.

    Set `fail = True` to make every delivery fail, or put order indexes into
    `fail_orders` to fail only for those recipients.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, int, NotificationKind]] = []
        self.fail = False
        self.fail_orders: set[int] = set()

    async def notify(
        self,
        recipient: Recipient,
        session: WorkflowSession,
        kind: NotificationKind,
    ) -> bool:
        self.sent.append((str(session.id), recipient.order_index, kind))
        return not (self.fail or recipient.order_index in self.fail_orders)

    def kinds_for(self, order_index: int) -> list[NotificationKind]:
        return [kind for _, index, kind in self.sent if index == order_index]

    def clear(self) -> None:
        self.sent.clear()


def make_specs(count: int = 3) -> list[RecipientSpec]:
    """A valid recipient chain: prescriber, patient, pharmacy, then custom parties."""
    types = ["PRESCRIBER", "PATIENT", "PHARMACY", "INSURANCE"]
    return [
        RecipientSpec(
            type=types[i] if i < len(types) else "CUSTOM",
            email=f"party{i}@example.com",
            name=f"Party {i}",
        )
        for i in range(count)
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def uow_factory() -> InMemoryUowFactory:
    return in_memory_uow_factory()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def workflow_settings() -> WorkflowSettings:
    return WorkflowSettings(base_url="https://docs.example.com/workflow", batch_size=50)


@pytest.fixture
def service(
    uow_factory: InMemoryUowFactory,
    dispatcher: RecordingDispatcher,
    workflow_settings: WorkflowSettings,
    clock: FakeClock,
) -> WorkflowService:
    return WorkflowService(
        uow_factory=uow_factory,
        dispatcher=dispatcher,
        cache=SessionCache(),
        token_generator=TokenGenerator(),
        settings=workflow_settings,
        clock=clock,
    )


@pytest.fixture
def jobs(service: WorkflowService) -> WorkflowJobs:
    return WorkflowJobs(service)


@pytest.fixture
def specs():
    """Factory fixture for recipient chains: specs(3) -> prescriber, patient, pharmacy."""
    return make_specs
