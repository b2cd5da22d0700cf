"""Workflow background jobs - reminders, expirations, stale cleanup, job-table cleanup.

Hey future me - these are the four SWEEPS the PeriodicScheduler runs on fixed intervals.
Each one is independently idempotent and processes a bounded batch per run:

1. Reminder sweep: open recipients that were reached by the hand-off, whose last
   successful notification is older than the reminder delay (or who were never
   successfully notified at all) and who still have reminders left.
2. Expiration sweep: ACTIVE sessions past their deadline -> WorkflowService.expire_session()
3. Stale cleanup: terminal sessions untouched for the retention window get evicted from
   the CACHE. Durable rows are never deleted (audit trail!).
4. Expired-job cleanup: garbage-collects scheduled_jobs rows whose execute_at passed.

CONTINUE-ON-ERROR: one bad session/recipient is logged with logger.exception and the batch
keeps going. Every sweep returns a SweepResult so failure counts are observable.

REMINDER BOUND: a reminder is CLAIMED (reminder_count incremented with compare-and-set on
the old count) in its own unit of work BEFORE it is sent. Two overlapping sweeps, a crash
or a restart can therefore never push a recipient past max_reminders.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from docrelay.application.services.workflow_service import WorkflowService
from docrelay.domain.entities import (
    OPEN_RECIPIENT_STATUSES,
    TERMINAL_SESSION_STATUSES,
    Recipient,
    SessionStatus,
    WorkflowSession,
)
from docrelay.domain.ports import NotificationKind, RecipientQuery, SessionQuery
from docrelay.domain.result import Err

logger = logging.getLogger(__name__)

# Thresholds for the statistics job and the scheduler health check
WARN_PENDING_REMINDERS = 100
WARN_PENDING_EXPIRATIONS = 50
WARN_ACTIVE_SESSIONS = 1000
UNHEALTHY_PENDING_REMINDERS = 500
UNHEALTHY_PENDING_EXPIRATIONS = 100

# Stale cleanup only touches the cache, so it may page further than one batch per run
MAX_STALE_BATCHES = 10
MAX_JOB_CLEANUP_BATCHES = 10


@dataclass
class SweepResult:
    """Outcome of one sweep run."""

    name: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    duration_seconds: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class JobStatistics:
    """Snapshot of how much work the sweeps have in front of them."""

    pending_reminders: int
    pending_expirations: int
    total_active_workflows: int
    expired_workflows: int
    pending_scheduled_jobs: int

    def warnings(self) -> list[str]:
        """Human readable threshold breaches."""
        issues: list[str] = []
        if self.pending_reminders > WARN_PENDING_REMINDERS:
            issues.append(f"High number of pending reminders: {self.pending_reminders}")
        if self.pending_expirations > WARN_PENDING_EXPIRATIONS:
            issues.append(
                f"High number of pending expirations: {self.pending_expirations}"
            )
        if self.total_active_workflows > WARN_ACTIVE_SESSIONS:
            issues.append(
                f"High number of active workflows: {self.total_active_workflows}"
            )
        return issues

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class WorkflowJobs:
    """The periodic sweeps over workflow sessions.

    Lifecycle:
    - Created in lifecycle.py with the already-built WorkflowService
    - Its bound methods are registered on the PeriodicScheduler via every()
    - Can also be triggered by hand through the jobs API
    """

    def __init__(self, workflow_service: WorkflowService) -> None:
        self._service = workflow_service
        self._settings = workflow_service.settings
        self._uow_factory = workflow_service.uow_factory
        self._stats: dict[str, Any] = {
            "reminders_sent": 0,
            "sessions_expired": 0,
            "cache_entries_evicted": 0,
            "jobs_deleted": 0,
            "last_statistics": None,
        }

    def _reminder_query(self, now: datetime) -> RecipientQuery:
        return RecipientQuery(
            statuses=OPEN_RECIPIENT_STATUSES,
            last_notified_before=now - self._settings.reminder_delay,
            max_reminders=self._settings.max_reminders,
        )

    # =========================================================================
    # REMINDERS
    # =========================================================================

    async def process_reminders(self) -> SweepResult:
        """Send one reminder to each due recipient in the next batch."""
        started = time.monotonic()
        result = SweepResult(name="reminders")
        now = self._service.now()

        async with self._uow_factory() as uow:
            candidates = await uow.workflows.scan_recipients(
                self._reminder_query(now), limit=self._settings.batch_size
            )

        if not candidates:
            logger.debug("No pending reminders found")
        else:
            logger.info("Processing %d reminder notifications", len(candidates))

        for session, recipient in candidates:
            result.processed += 1
            try:
                outcome = await self._remind(session, recipient, now)
            except Exception as e:
                result.failed += 1
                logger.exception(
                    "Reminder for recipient %s of session %s failed: %s",
                    recipient.id,
                    session.id,
                    e,
                )
                continue

            if outcome is None:
                result.skipped += 1
            elif outcome:
                result.succeeded += 1
            else:
                result.failed += 1

        self._stats["reminders_sent"] += result.succeeded
        result.duration_seconds = time.monotonic() - started
        if result.processed:
            logger.info(
                "Reminder sweep done: %d sent, %d failed, %d skipped",
                result.succeeded,
                result.failed,
                result.skipped,
            )
        return result

    async def _remind(
        self, session: WorkflowSession, recipient: Recipient, now: datetime
    ) -> bool | None:
        """Claim and send one reminder.

        Returns:
            True if sent, False if the claim held but delivery failed,
            None if the recipient was no longer due (skipped)
        """
        async with self._uow_factory() as uow:
            fresh = await uow.workflows.get_by_id(session.id)
            if fresh is None or fresh.status != SessionStatus.ACTIVE:
                return None
            if fresh.is_past_expiry(now):
                # The expiration sweep owns this one
                return None
            current = fresh.find_recipient(recipient.id)
            active = fresh.active_recipient()
            if current is None or active is None or active.id != current.id:
                return None
            # Another sweep already claimed this one since we scanned it
            if current.reminder_count != recipient.reminder_count:
                return None
            if current.reminder_count >= self._settings.max_reminders:
                return None
            if (
                current.last_notified_at is not None
                and current.last_notified_at > now - self._settings.reminder_delay
            ):
                return None

            # Never notified at all -> resend the hand-off message instead of a reminder
            kind = (
                NotificationKind.CREATED
                if current.last_notified_at is None
                else NotificationKind.REMINDER
            )
            previous_count = current.reminder_count
            current.reminder_count = previous_count + 1
            current.updated_at = now
            claimed = await uow.workflows.update_recipient(
                current,
                OPEN_RECIPIENT_STATUSES,
                expected_reminder_count=previous_count,
            )
            if not claimed:
                return None

        logger.info(
            "Sending %s %d/%d to recipient %s of session %s",
            kind.value,
            current.reminder_count,
            self._settings.max_reminders,
            current.id,
            fresh.id,
        )
        return await self._service.notify_recipient(current, fresh, kind)

    # =========================================================================
    # EXPIRATIONS
    # =========================================================================

    async def process_expirations(self) -> SweepResult:
        """Expire ACTIVE sessions whose deadline has passed."""
        started = time.monotonic()
        result = SweepResult(name="expirations")
        now = self._service.now()

        async with self._uow_factory() as uow:
            sessions = await uow.workflows.scan_sessions(
                SessionQuery(
                    statuses=frozenset({SessionStatus.ACTIVE}), expires_before=now
                ),
                limit=self._settings.batch_size,
            )

        if sessions:
            logger.info("Processing %d workflow expirations", len(sessions))

        for session in sessions:
            result.processed += 1
            try:
                outcome = await self._service.expire_session(session.id)
            except Exception as e:
                result.failed += 1
                logger.exception("Failed to expire session %s: %s", session.id, e)
                continue

            if isinstance(outcome, Err):
                result.skipped += 1
                logger.warning("Skipped expiring session %s: %s", session.id, outcome.message)
            else:
                result.succeeded += 1

        self._stats["sessions_expired"] += result.succeeded
        result.duration_seconds = time.monotonic() - started
        return result

    # =========================================================================
    # STALE CLEANUP
    # =========================================================================

    async def process_stale_sessions(self) -> SweepResult:
        """Evict cache entries of long-finished sessions. Durable rows stay."""
        started = time.monotonic()
        result = SweepResult(name="stale_cleanup")
        cutoff = self._service.now() - self._settings.stale_retention
        query = SessionQuery(statuses=TERMINAL_SESSION_STATUSES, updated_before=cutoff)

        for batch in range(MAX_STALE_BATCHES):
            async with self._uow_factory() as uow:
                sessions = await uow.workflows.scan_sessions(
                    query,
                    limit=self._settings.batch_size,
                    offset=batch * self._settings.batch_size,
                )
            for session in sessions:
                result.processed += 1
                if await self._service.cache.invalidate(session.id):
                    result.succeeded += 1
                else:
                    result.skipped += 1
            if len(sessions) < self._settings.batch_size:
                break

        if result.processed:
            logger.info(
                "Stale cleanup: %d terminal sessions checked, %d cache entries evicted",
                result.processed,
                result.succeeded,
            )
        self._stats["cache_entries_evicted"] += result.succeeded
        result.duration_seconds = time.monotonic() - started
        return result

    # =========================================================================
    # SCHEDULED JOB CLEANUP
    # =========================================================================

    async def cleanup_expired_jobs(self) -> SweepResult:
        """Delete scheduled_jobs rows whose execute_at has passed."""
        started = time.monotonic()
        result = SweepResult(name="job_cleanup")
        now = self._service.now()

        for _ in range(MAX_JOB_CLEANUP_BATCHES):
            async with self._uow_factory() as uow:
                deleted = await uow.jobs.delete_due(now, limit=self._settings.batch_size)
            result.processed += deleted
            result.succeeded += deleted
            if deleted < self._settings.batch_size:
                break

        if result.succeeded:
            logger.info("Cleaned up %d expired scheduled jobs", result.succeeded)
        self._stats["jobs_deleted"] += result.succeeded
        result.duration_seconds = time.monotonic() - started
        return result

    # =========================================================================
    # STATISTICS
    # =========================================================================

    async def get_job_statistics(self) -> JobStatistics:
        """Count the work waiting for each sweep."""
        now = self._service.now()
        async with self._uow_factory() as uow:
            pending_reminders = await uow.workflows.count_recipients(
                self._reminder_query(now)
            )
            pending_expirations = await uow.workflows.count_sessions(
                SessionQuery(
                    statuses=frozenset({SessionStatus.ACTIVE}), expires_before=now
                )
            )
            active = await uow.workflows.count_sessions(
                SessionQuery(statuses=frozenset({SessionStatus.ACTIVE}))
            )
            expired = await uow.workflows.count_sessions(
                SessionQuery(statuses=frozenset({SessionStatus.EXPIRED}))
            )
            pending_jobs = await uow.jobs.count_pending(now)

        return JobStatistics(
            pending_reminders=pending_reminders,
            pending_expirations=pending_expirations,
            total_active_workflows=active,
            expired_workflows=expired,
            pending_scheduled_jobs=pending_jobs,
        )

    async def log_statistics(self) -> SweepResult:
        """Statistics job: log counts and warn on threshold breaches."""
        started = time.monotonic()
        stats = await self.get_job_statistics()
        self._stats["last_statistics"] = stats.to_dict()

        logger.info("Workflow job statistics: %s", stats.to_dict())
        for issue in stats.warnings():
            logger.warning(issue)

        return SweepResult(
            name="statistics",
            processed=1,
            succeeded=1,
            duration_seconds=time.monotonic() - started,
            details=stats.to_dict(),
        )

    async def health_issues(self) -> list[str]:
        """Backlog problems serious enough to call the scheduler unhealthy."""
        stats = await self.get_job_statistics()
        issues: list[str] = []
        if stats.pending_reminders > UNHEALTHY_PENDING_REMINDERS:
            issues.append(f"Too many pending reminders: {stats.pending_reminders}")
        if stats.pending_expirations > UNHEALTHY_PENDING_EXPIRATIONS:
            issues.append(f"Too many pending expirations: {stats.pending_expirations}")
        return issues

    # =========================================================================
    # REGISTRY
    # =========================================================================

    def sweeps(self) -> dict[str, Callable[[], Awaitable[SweepResult]]]:
        """The four sweeps by name, as registered with the scheduler."""
        return {
            "reminders": self.process_reminders,
            "expirations": self.process_expirations,
            "stale_cleanup": self.process_stale_sessions,
            "job_cleanup": self.cleanup_expired_jobs,
        }

    def get_stats(self) -> dict[str, Any]:
        """Cumulative counters since process start."""
        return dict(self._stats)
