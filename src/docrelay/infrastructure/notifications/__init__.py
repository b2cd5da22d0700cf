"""Notification providers."""

from docrelay.infrastructure.notifications.webhook_provider import WebhookNotificationProvider

__all__ = ["WebhookNotificationProvider"]
