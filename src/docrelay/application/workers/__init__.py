"""Background workers - periodic sweeps and the scheduler that drives them."""

from docrelay.application.workers.scheduler import PeriodicScheduler
from docrelay.application.workers.workflow_jobs import (
    JobStatistics,
    SweepResult,
    WorkflowJobs,
)

__all__ = ["JobStatistics", "PeriodicScheduler", "SweepResult", "WorkflowJobs"]
