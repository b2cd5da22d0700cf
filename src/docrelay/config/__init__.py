"""Configuration package."""

from docrelay.config.settings import (
    DatabaseSettings,
    NotificationSettings,
    ObservabilitySettings,
    SchedulerSettings,
    Settings,
    WorkflowSettings,
    get_settings,
)

__all__ = [
    "DatabaseSettings",
    "NotificationSettings",
    "ObservabilitySettings",
    "SchedulerSettings",
    "Settings",
    "WorkflowSettings",
    "get_settings",
]
