"""Persistence layer - SQLAlchemy repositories plus an in-memory double."""

from docrelay.infrastructure.persistence.database import Database
from docrelay.infrastructure.persistence.memory import (
    InMemoryStore,
    InMemoryUnitOfWork,
    InMemoryUowFactory,
    in_memory_uow_factory,
)
from docrelay.infrastructure.persistence.repositories import (
    ScheduledJobRepository,
    SqlAlchemyUnitOfWork,
    WorkflowRepository,
    sqlalchemy_uow_factory,
)

__all__ = [
    "Database",
    "InMemoryStore",
    "InMemoryUnitOfWork",
    "InMemoryUowFactory",
    "ScheduledJobRepository",
    "SqlAlchemyUnitOfWork",
    "WorkflowRepository",
    "in_memory_uow_factory",
    "sqlalchemy_uow_factory",
]
