"""Application services."""

from docrelay.application.services.notification_service import NotificationService
from docrelay.application.services.token_generator import TokenGenerator
from docrelay.application.services.workflow_service import WorkflowService

__all__ = ["NotificationService", "TokenGenerator", "WorkflowService"]
