"""Application lifecycle management for startup and shutdown tasks.

Startup builds the object graph in dependency order and parks everything on app.state:

    Database -> unit-of-work factory -> SessionCache -> NotificationService (+ webhook)
    -> WorkflowService -> WorkflowJobs -> PeriodicScheduler

Nothing here is a module-level singleton. Tests call create_app(settings) with their own
Settings and get a fully separate graph.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from sqlalchemy.engine import make_url

from docrelay.application.cache import SessionCache
from docrelay.application.services import NotificationService, WorkflowService
from docrelay.application.workers import PeriodicScheduler, WorkflowJobs
from docrelay.config import Settings, get_settings
from docrelay.domain.exceptions import ConfigurationError
from docrelay.domain.ports import INotificationProvider
from docrelay.infrastructure.notifications import WebhookNotificationProvider
from docrelay.infrastructure.persistence import Database, sqlalchemy_uow_factory

logger = logging.getLogger(__name__)


# Hey future me, SQLite won't create missing parent directories for the .db file and the
# resulting "unable to open database file" is cryptic. Make the directory up front and fail
# with a ConfigurationError that says what is wrong. No-op for non-SQLite URLs and :memory:.
def ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-based SQLite database."""
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite") or not url.database:
        return
    if url.database == ":memory:":
        return

    parent = Path(url.database).expanduser().parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to create SQLite database directory '{parent}': {exc}. "
            "Update DATABASE__URL or adjust directory permissions."
        ) from exc


def build_notification_service(settings: Settings) -> NotificationService:
    """Notification dispatcher with every provider the settings enable."""
    providers: list[INotificationProvider] = []
    if settings.notifications.webhook_url:
        providers.append(
            WebhookNotificationProvider(
                url=settings.notifications.webhook_url,
                auth_header=settings.notifications.webhook_auth_header,
                timeout=settings.notifications.webhook_timeout,
                sender_name=settings.notifications.sender_name,
            )
        )
    else:
        logger.warning(
            "No notification gateway configured (NOTIFICATIONS__WEBHOOK_URL), "
            "notifications will only be logged"
        )

    return NotificationService(
        providers,
        base_url=settings.workflow.base_url,
        sender_name=settings.notifications.sender_name,
    )


def build_scheduler(settings: Settings, jobs: WorkflowJobs) -> PeriodicScheduler:
    """Scheduler with the four sweeps plus the statistics job registered."""
    scheduler = PeriodicScheduler(
        shutdown_timeout=settings.scheduler.shutdown_timeout,
        health_probe=jobs.health_issues,
    )
    intervals = {
        "reminders": settings.scheduler.reminder_interval_seconds,
        "expirations": settings.scheduler.expiration_interval_seconds,
        "stale_cleanup": settings.scheduler.stale_cleanup_interval_seconds,
        "job_cleanup": settings.scheduler.job_cleanup_interval_seconds,
    }
    for name, fn in jobs.sweeps().items():
        scheduler.every(name, intervals[name], fn)
    scheduler.every(
        "statistics", settings.scheduler.statistics_interval_seconds, jobs.log_statistics
    )
    return scheduler


# Listen future me, everything before `yield` is STARTUP, everything after is SHUTDOWN.
# The finally block runs even if startup blew up halfway, so each resource is only torn
# down if it actually got created.
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings: Settings = getattr(app.state, "settings", None) or get_settings()
    logger.info("Starting application: %s", settings.app_name)

    db: Database | None = None
    scheduler: PeriodicScheduler | None = None
    try:
        ensure_sqlite_directory(settings.database.url)
        db = Database(settings.database)
        await db.create_tables()
        app.state.db = db
        logger.info("Database initialized: %s", make_url(settings.database.url).drivername)

        cache = SessionCache(ttl_seconds=settings.workflow.cache_ttl_seconds)
        notification_service = build_notification_service(settings)
        workflow_service = WorkflowService(
            uow_factory=sqlalchemy_uow_factory(db.session_factory),
            dispatcher=notification_service,
            cache=cache,
            settings=settings.workflow,
        )
        app.state.notification_service = notification_service
        app.state.workflow_service = workflow_service

        jobs = WorkflowJobs(workflow_service)
        scheduler = build_scheduler(settings, jobs)
        app.state.workflow_jobs = jobs
        app.state.scheduler = scheduler

        if settings.scheduler.enabled:
            await scheduler.start()
        else:
            logger.info("Background scheduler disabled (SCHEDULER__ENABLED=false)")

        yield

    except Exception as e:
        logger.exception("Error during application startup: %s", e)
        raise
    finally:
        logger.info("Shutting down application")

        if scheduler is not None:
            try:
                await scheduler.stop()
            except Exception as e:
                logger.exception("Error stopping scheduler: %s", e)

        if db is not None:
            try:
                await db.close()
                logger.info("Database connection closed")
            except Exception as e:
                logger.exception("Error closing database: %s", e)
