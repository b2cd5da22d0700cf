"""API module for DocRelay.

- app.py: create_app() factory
- routers/: workflow, jobs and health endpoints
- schemas/: pydantic request/response models
- dependencies.py: app.state getters
- exception_handlers.py: domain exception -> HTTP status mapping
"""

from docrelay.api.app import create_app

__all__ = ["create_app"]
