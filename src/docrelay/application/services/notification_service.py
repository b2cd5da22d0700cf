"""Notification service for contacting workflow recipients through multiple providers.

Hey future me - this is the Notification Dispatcher the Session Engine talks to!
It builds a provider-agnostic Notification (subject, plain text body, access URL) for one
recipient and sends it to ALL configured providers in parallel.

Architecture:
- SessionEngine -> INotificationDispatcher.notify() (this class)
- NotificationService -> INotificationProvider (webhook gateway, ...)

Usage:
    service = NotificationService([WebhookNotificationProvider(...)], base_url="https://...")
    delivered = await service.notify(recipient, session, NotificationKind.CREATED)

notify() NEVER raises. A failed delivery is logged and reported as False - the engine
decides what to do with that (it leaves last_notified_at unset so the reminder sweep
picks the recipient up again).
"""

import asyncio
import logging

from docrelay.domain.entities import Recipient, RecipientType, WorkflowSession
from docrelay.domain.ports.notification import (
    INotificationDispatcher,
    INotificationProvider,
    Notification,
    NotificationChannel,
    NotificationKind,
    NotificationResult,
)

logger = logging.getLogger(__name__)

_ACTION_BY_TYPE: dict[RecipientType, str] = {
    RecipientType.PRESCRIBER: "Prescription Review Required",
    RecipientType.PATIENT: "Patient Information Required",
    RecipientType.PHARMACY: "Pharmacy Action Required",
    RecipientType.INSURANCE: "Insurance Authorization Required",
}
_DEFAULT_ACTION = "Action Required"


class NotificationService(INotificationDispatcher):
    """Dispatches workflow notifications to every configured provider.

    With no providers (or none configured) the service runs in logging-only mode:
    the message is logged and notify() reports success.
    """

    def __init__(
        self,
        providers: list[INotificationProvider] | None = None,
        base_url: str = "http://localhost:8000/workflow",
        sender_name: str = "DocRelay",
    ) -> None:
        self._all_providers = list(providers or [])
        self._providers: list[INotificationProvider] | None = None
        self._base_url = base_url.rstrip("/")
        self._sender_name = sender_name

    async def _init_providers(self) -> list[INotificationProvider]:
        """Filter to configured providers once, then reuse the list."""
        if self._providers is not None:
            return self._providers

        providers: list[INotificationProvider] = []
        for provider in self._all_providers:
            try:
                if await provider.is_configured():
                    providers.append(provider)
                    logger.debug("[NOTIFICATION] Provider enabled: %s", provider.name)
            except Exception as e:
                logger.warning(
                    "[NOTIFICATION] Failed to check provider %s: %s", provider.name, e
                )

        self._providers = providers
        return providers

    def invalidate_providers(self) -> None:
        """Force the configured-provider check to run again on next send."""
        self._providers = None

    def access_url(self, recipient: Recipient) -> str:
        """Build the recipient's access URL. The token is the only path segment."""
        return f"{self._base_url}/{recipient.access_token}"

    async def notify(
        self,
        recipient: Recipient,
        session: WorkflowSession,
        kind: NotificationKind,
    ) -> bool:
        """Send one notification to a recipient. Never raises."""
        try:
            notification = self.build_notification(recipient, session, kind)
        except ValueError as e:
            logger.warning(
                "[NOTIFICATION] Cannot notify recipient %s of session %s: %s",
                recipient.id,
                session.id,
                e,
            )
            return False

        logger.info(
            "[NOTIFICATION] %s -> recipient %s (order %d) of session %s via %s",
            kind.value,
            recipient.id,
            recipient.order_index,
            session.id,
            notification.channel.value,
        )

        providers = await self._init_providers()
        if not providers:
            logger.debug("[NOTIFICATION] No providers configured, logged only")
            return True

        results = await self._send_to_providers(notification, providers)
        if not results:
            logger.warning(
                "[NOTIFICATION] No provider supports %s notifications", kind.value
            )
            return False

        successes = sum(1 for r in results if r.success)
        if successes < len(results):
            failed = [f"{r.provider_name}: {r.error}" for r in results if not r.success]
            logger.warning(
                "[NOTIFICATION] %d/%d providers succeeded for recipient %s, failed: %s",
                successes,
                len(results),
                recipient.id,
                failed,
            )

        return successes > 0

    # Hey future me - email wins when both contacts exist. SMS only when there is no email.
    # I2 guarantees at least one of them, so the ValueError below means corrupt data.
    def build_notification(
        self,
        recipient: Recipient,
        session: WorkflowSession,
        kind: NotificationKind,
    ) -> Notification:
        """Build the provider-agnostic payload for one recipient."""
        if recipient.email:
            channel, to = NotificationChannel.EMAIL, recipient.email
        elif recipient.mobile:
            channel, to = NotificationChannel.SMS, recipient.mobile
        else:
            raise ValueError("recipient has no contact method")

        url = self.access_url(recipient)
        subject = self._subject(recipient, kind)
        message = self._message(recipient, session, kind, url)

        return Notification(
            kind=kind,
            channel=channel,
            to=to,
            subject=subject,
            message=message,
            access_url=url if kind in (NotificationKind.CREATED, NotificationKind.REMINDER) else None,
            data={
                "session_id": str(session.id),
                "recipient_id": str(recipient.id),
                "recipient_type": recipient.type.value,
                "order_index": recipient.order_index,
                "document_ref": session.document_ref,
                "sender_name": self._sender_name,
            },
        )

    def _subject(self, recipient: Recipient, kind: NotificationKind) -> str:
        if kind == NotificationKind.CREATED:
            prefix = "New" if recipient.order_index == 0 else "Next Step"
            return f"{prefix}: {_ACTION_BY_TYPE.get(recipient.type, _DEFAULT_ACTION)}"
        if kind == NotificationKind.REMINDER:
            return "Reminder: Action Required"
        if kind == NotificationKind.EXPIRED:
            return "Workflow Expired"
        return "Workflow Completed"

    def _message(
        self,
        recipient: Recipient,
        session: WorkflowSession,
        kind: NotificationKind,
        url: str,
    ) -> str:
        greeting = f"Hello {self._display_name(recipient)},"
        total = len(session.recipients)
        step = f"step {recipient.order_index + 1} of {total}"

        if kind == NotificationKind.CREATED:
            body = (
                f"You have been asked to complete {step} of a document workflow.\n"
                f"Open this link to review and complete your part:\n{url}\n\n"
                f"The link expires on {session.expires_at:%Y-%m-%d %H:%M} UTC."
            )
        elif kind == NotificationKind.REMINDER:
            body = (
                f"This is a reminder that {step} of a document workflow is still "
                f"waiting for you.\n{url}\n\n"
                f"The link expires on {session.expires_at:%Y-%m-%d %H:%M} UTC."
            )
        elif kind == NotificationKind.EXPIRED:
            body = (
                "The document workflow you were part of has expired before all steps "
                "were completed. No further action is possible on your link."
            )
        else:
            body = f"All {total} steps of the document workflow have been completed."

        return f"{greeting}\n\n{body}\n\n{self._sender_name}"

    @staticmethod
    def _display_name(recipient: Recipient) -> str:
        if recipient.name:
            return recipient.name
        if recipient.email:
            return recipient.email.split("@", 1)[0]
        return "Recipient"

    async def _send_to_providers(
        self, notification: Notification, providers: list[INotificationProvider]
    ) -> list[NotificationResult]:
        """Send to all supporting providers in parallel.

        One slow provider won't block the others.
        """
        supporting = [p for p in providers if p.supports(notification.kind)]
        if not supporting:
            return []

        return list(
            await asyncio.gather(
                *(self._send_to_provider(p, notification) for p in supporting)
            )
        )

    async def _send_to_provider(
        self, provider: INotificationProvider, notification: Notification
    ) -> NotificationResult:
        """Send to a single provider; provider exceptions become failed results."""
        try:
            return await provider.send(notification)
        except Exception as e:
            logger.error("[NOTIFICATION] Provider %s error: %s", provider.name, e)
            return NotificationResult(
                success=False,
                provider_name=provider.name,
                kind=notification.kind,
                error=str(e),
            )
