"""Notification interfaces.

Hey future me - this is the PORT for everything that talks to recipients! Two layers:

- INotificationDispatcher: what the Session Engine sees. One call per (recipient, session,
  kind), returns True/False. It NEVER raises - a failed email must not roll back a
  submission or a hand-off.
- INotificationProvider: one delivery channel (webhook gateway, SMTP relay, ...). The
  NotificationService (application layer) implements the dispatcher and fans out to
  every configured provider.

Architecture:
- SessionEngine -> INotificationDispatcher (port) <- NotificationService
- NotificationService -> INotificationProvider (port) <- WebhookNotificationProvider
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from docrelay.domain.entities import Recipient, WorkflowSession


class NotificationKind(str, Enum):
    """Why a recipient is being contacted."""

    CREATED = "created"  # hand-off reached this recipient
    REMINDER = "reminder"
    EXPIRED = "expired"
    COMPLETED = "completed"


class NotificationChannel(str, Enum):
    """Transport the message is meant for. Formatting is the provider's business."""

    EMAIL = "email"
    SMS = "sms"


@dataclass
class Notification:
    """Provider-agnostic payload.

    Example:
        notif = Notification(
            kind=NotificationKind.CREATED,
            channel=NotificationChannel.EMAIL,
            to="doctor@example.com",
            subject="New: Prescription Review Required",
            message="...",
            access_url="https://example.com/workflow/abcd...",
        )
    """

    kind: NotificationKind
    channel: NotificationChannel
    to: str
    subject: str
    message: str
    access_url: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None

    def __post_init__(self) -> None:
        """Set timestamp if not provided."""
        if self.timestamp is None:
            self.timestamp = datetime.now(UTC)


@dataclass
class NotificationResult:
    """Result of sending one notification through one provider."""

    success: bool
    provider_name: str
    kind: NotificationKind
    error: str | None = None
    external_id: str | None = None  # ID from the gateway (message id etc.)


class INotificationProvider(ABC):
    """Interface for notification delivery channels.

    Each provider must:
    1. Have a unique name (for settings/logging)
    2. Declare which notification kinds it handles (empty list = all)
    3. Implement send() to actually deliver the notification
    4. Implement is_configured() to check if credentials/URLs are set
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique name for this provider (e.g., 'webhook')."""
        pass

    @property
    @abstractmethod
    def supported_kinds(self) -> list[NotificationKind]:
        """Kinds this provider can handle. Return empty list to support ALL kinds."""
        pass

    @abstractmethod
    async def send(self, notification: Notification) -> NotificationResult:
        """Send a notification through this provider.

        Args:
            notification: The notification to send

        Returns:
            NotificationResult indicating success/failure
        """
        pass

    @abstractmethod
    async def is_configured(self) -> bool:
        """Check if this provider has everything it needs to deliver."""
        pass

    def supports(self, kind: NotificationKind) -> bool:
        """Check if this provider supports a notification kind."""
        supported = self.supported_kinds
        return len(supported) == 0 or kind in supported


class INotificationDispatcher(ABC):
    """What the Session Engine calls to contact a recipient."""

    @abstractmethod
    async def notify(
        self,
        recipient: "Recipient",
        session: "WorkflowSession",
        kind: NotificationKind,
    ) -> bool:
        """Deliver one notification.

        Returns:
            True on success, False on failure. Never raises.
        """
        pass


__all__ = [
    "INotificationDispatcher",
    "INotificationProvider",
    "Notification",
    "NotificationChannel",
    "NotificationKind",
    "NotificationResult",
]
