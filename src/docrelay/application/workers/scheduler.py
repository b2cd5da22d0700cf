"""Periodic scheduler - fixed-interval background jobs with a single-flight guard per job.

Hey future me - this replaces a cron DSL with the simplest thing that works:
ONE asyncio task per registered job, sleeping on an Event with a timeout between runs.

    scheduler = PeriodicScheduler(shutdown_timeout=10)
    scheduler.every("reminders", 3600, jobs.process_reminders)
    await scheduler.start()
    ...
    await scheduler.stop()

SINGLE-FLIGHT: every job has its own asyncio.Lock. If a run of "reminders" is still busy
when the next tick (or a manual trigger) comes in, that run is SKIPPED and counted, never
queued. Different jobs don't share locks, so they run in parallel freely.

A job raising an exception is logged and counted - the loop keeps ticking. stop() sets the
Event so sleeping loops wake up immediately, then waits up to shutdown_timeout for
in-flight runs before cancelling the tasks.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from docrelay.domain.entities import utc_now
from docrelay.domain.exceptions import ConflictError, ValidationError

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[Any]]
HealthProbe = Callable[[], Awaitable[list[str]]]


class SchedulerState(Enum):
    """Scheduler lifecycle states."""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class PeriodicJob:
    """A registered job and its run bookkeeping."""

    name: str
    interval_seconds: float
    fn: JobFn
    run_immediately: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: asyncio.Task[None] | None = None
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_result: Any = None
    last_error: str | None = None
    run_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0

    @property
    def is_running(self) -> bool:
        return self.lock.locked()

    def to_dict(self) -> dict[str, Any]:
        result = self.last_result
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "running": self.is_running,
            "task_alive": self.task is not None and not self.task.done(),
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_finished_at": (
                self.last_finished_at.isoformat() if self.last_finished_at else None
            ),
            "last_result": result,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
            "skipped_count": self.skipped_count,
        }


class PeriodicScheduler:
    """Runs registered jobs on fixed intervals."""

    def __init__(
        self,
        shutdown_timeout: float = 10.0,
        health_probe: HealthProbe | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._jobs: dict[str, PeriodicJob] = {}
        self._shutdown_timeout = shutdown_timeout
        self._health_probe = health_probe
        self._clock = clock
        self._state = SchedulerState.STOPPED
        self._stop_event = asyncio.Event()
        self._started_at: datetime | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def every(
        self,
        name: str,
        interval_seconds: float,
        fn: JobFn,
        run_immediately: bool = False,
    ) -> PeriodicJob:
        """Register a job to run every `interval_seconds`.

        Registering while the scheduler runs starts the job's loop right away.

        Raises:
            ValueError: On a duplicate name or a non-positive interval
        """
        if name in self._jobs:
            raise ValueError(f"Job '{name}' is already registered")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        job = PeriodicJob(
            name=name,
            interval_seconds=interval_seconds,
            fn=fn,
            run_immediately=run_immediately,
        )
        self._jobs[name] = job
        logger.debug("Registered periodic job %s (every %ss)", name, interval_seconds)

        if self._state == SchedulerState.RUNNING:
            job.task = asyncio.create_task(self._loop(job), name=f"periodic:{name}")
        return job

    async def start(self) -> None:
        """Start one loop task per registered job."""
        if self._state == SchedulerState.RUNNING:
            logger.warning("PeriodicScheduler already running")
            return

        self._stop_event = asyncio.Event()
        self._state = SchedulerState.RUNNING
        self._started_at = self._clock()
        for job in self._jobs.values():
            job.task = asyncio.create_task(self._loop(job), name=f"periodic:{job.name}")

        logger.info(
            "PeriodicScheduler started with %d jobs: %s",
            len(self._jobs),
            ", ".join(f"{j.name}={j.interval_seconds}s" for j in self._jobs.values()),
        )

    async def stop(self) -> None:
        """Stop all loops, giving in-flight runs shutdown_timeout seconds to finish."""
        if self._state != SchedulerState.RUNNING:
            return

        self._state = SchedulerState.STOPPING
        self._stop_event.set()
        tasks = [job.task for job in self._jobs.values() if job.task is not None]

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._shutdown_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(
                    "PeriodicScheduler cancelled %d jobs still running after %ss",
                    len(pending),
                    self._shutdown_timeout,
                )
                await asyncio.gather(*pending, return_exceptions=True)

        for job in self._jobs.values():
            job.task = None
        self._state = SchedulerState.STOPPED
        logger.info("PeriodicScheduler stopped")

    async def _loop(self, job: PeriodicJob) -> None:
        if not job.run_immediately and await self._wait(job.interval_seconds):
            return
        while not self._stop_event.is_set():
            await self._run_once(job, trigger="interval")
            if await self._wait(job.interval_seconds):
                return

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`. Returns True if the scheduler is stopping."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def _run_once(self, job: PeriodicJob, trigger: str) -> bool:
        """Run a job unless a run of it is already in flight.

        Returns:
            True if the job ran, False if it was skipped
        """
        if job.lock.locked():
            job.skipped_count += 1
            logger.info("Job %s still running, skipping %s run", job.name, trigger)
            return False

        async with job.lock:
            job.last_started_at = self._clock()
            job.run_count += 1
            try:
                job.last_result = await job.fn()
                job.last_error = None
            except Exception as e:
                job.failure_count += 1
                job.last_error = str(e)
                logger.exception("Periodic job %s failed: %s", job.name, e)
            finally:
                job.last_finished_at = self._clock()
        return True

    async def trigger(self, name: str) -> dict[str, Any]:
        """Run a job right now and return its status afterwards.

        Raises:
            ValidationError: Unknown job name
            ConflictError: The job is already running
        """
        job = self._jobs.get(name)
        if job is None:
            raise ValidationError(
                f"Unknown job: {name}. Available jobs: {', '.join(self._jobs)}"
            )

        logger.info("Manually triggering job %s", name)
        if not await self._run_once(job, trigger="manual"):
            raise ConflictError(f"Job {name} is already running")
        return job.to_dict()

    def get_status(self) -> dict[str, Any]:
        """Status of the scheduler and every job."""
        return {
            "state": self._state.value,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "jobs": {name: job.to_dict() for name, job in self._jobs.items()},
        }

    async def health_check(self) -> dict[str, Any]:
        """Healthy = running, every loop task alive, and the probe reports no issues."""
        issues: list[str] = []
        if self._state != SchedulerState.RUNNING:
            issues.append(f"Scheduler is {self._state.value}")
        else:
            for job in self._jobs.values():
                if job.task is None or job.task.done():
                    issues.append(f"Job {job.name} is not scheduled")

        if self._health_probe is not None:
            try:
                issues.extend(await self._health_probe())
            except Exception as e:
                logger.warning("Scheduler health probe failed: %s", e)
                issues.append(f"Health probe failed: {e}")

        return {
            "healthy": not issues,
            "issues": issues,
            "status": self.get_status(),
        }
