"""API routers."""

from docrelay.api.routers import health, jobs, workflows

__all__ = ["health", "jobs", "workflows"]
