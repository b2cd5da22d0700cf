"""Scheduler admin endpoints - status, manual trigger, health."""

from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from docrelay.api.dependencies import get_scheduler, get_workflow_jobs
from docrelay.api.schemas.workflow import ApiResponse
from docrelay.application.workers import PeriodicScheduler, WorkflowJobs

router = APIRouter()


@router.get("/status", response_model=ApiResponse[dict[str, Any]])
async def get_jobs_status(
    scheduler: PeriodicScheduler = Depends(get_scheduler),
    jobs: WorkflowJobs = Depends(get_workflow_jobs),
) -> ApiResponse[dict[str, Any]]:
    """Status of every periodic job plus cumulative sweep counters."""
    return ApiResponse(
        data={**scheduler.get_status(), "totals": jobs.get_stats()},
        message="Job status retrieved successfully",
    )


@router.post("/{name}/trigger", response_model=ApiResponse[dict[str, Any]])
async def trigger_job(
    name: str,
    scheduler: PeriodicScheduler = Depends(get_scheduler),
) -> ApiResponse[dict[str, Any]]:
    """Run a job right now. 400 for unknown names, 409 if it is already running."""
    job_status = await scheduler.trigger(name)
    return ApiResponse(data=job_status, message=f"Job {name} triggered successfully")


# Hey future me - 503 when unhealthy so an external monitor can alert on the status code
# alone without parsing the body.
@router.get("/health")
async def get_jobs_health(
    scheduler: PeriodicScheduler = Depends(get_scheduler),
) -> JSONResponse:
    """Scheduler health: running, every loop alive, backlog within limits."""
    health = await scheduler.health_check()
    body = ApiResponse[dict[str, Any]](
        success=health["healthy"],
        data=health,
        message="Scheduler healthy" if health["healthy"] else "Scheduler unhealthy",
    )
    return JSONResponse(
        content=body.model_dump(mode="json", by_alias=True),
        status_code=(
            status.HTTP_200_OK if health["healthy"] else status.HTTP_503_SERVICE_UNAVAILABLE
        ),
    )
