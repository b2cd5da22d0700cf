"""FastAPI application factory."""

from fastapi import FastAPI

from docrelay import __version__
from docrelay.api.exception_handlers import register_exception_handlers
from docrelay.api.routers import health, jobs, workflows
from docrelay.config import Settings, get_settings
from docrelay.infrastructure.lifecycle import lifespan
from docrelay.infrastructure.observability import (
    RequestLoggingMiddleware,
    configure_logging,
)


# Hey future me, tests pass their own Settings (temp SQLite file, scheduler off) - the
# lifespan picks them up from app.state.settings instead of the cached get_settings().
def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application."""
    settings = settings or get_settings()

    configure_logging(
        log_level=settings.log_level,
        json_format=settings.observability.log_json_format,
        app_name=settings.app_name,
    )

    app = FastAPI(
        title="DocRelay",
        description="Multi-party document workflow sessions",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(RequestLoggingMiddleware)
    register_exception_handlers(app)

    app.include_router(workflows.router, prefix="/api/workflow", tags=["workflow"])
    app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])
    app.include_router(health.router, prefix="/health", tags=["health"])

    return app
