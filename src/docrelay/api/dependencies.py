"""Dependency injection for API endpoints.

Everything is built once in lifecycle.py and parked on app.state. These getters just
hand it out, or answer 503 if startup never got that far.
"""

from typing import cast

from fastapi import HTTPException, Request, status

from docrelay.application.services import WorkflowService
from docrelay.application.workers import PeriodicScheduler, WorkflowJobs


def _from_state(request: Request, name: str) -> object:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not initialized",
        )
    return value


def get_workflow_service(request: Request) -> WorkflowService:
    """Session engine from app state."""
    return cast(WorkflowService, _from_state(request, "workflow_service"))


def get_scheduler(request: Request) -> PeriodicScheduler:
    """Periodic scheduler from app state."""
    return cast(PeriodicScheduler, _from_state(request, "scheduler"))


def get_workflow_jobs(request: Request) -> WorkflowJobs:
    """Workflow sweeps from app state."""
    return cast(WorkflowJobs, _from_state(request, "workflow_jobs"))
