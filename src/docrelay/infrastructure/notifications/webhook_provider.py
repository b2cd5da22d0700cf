"""Webhook notification provider - hands email/SMS payloads to a delivery gateway.

Hey future me - docrelay doesn't speak SMTP or carrier protocols itself! Every message is
POSTed as JSON to ONE gateway URL (an internal mail/SMS relay, n8n, a cloud function...)
which does the actual transport. The payload says which channel to use:

    {
        "channel": "email" | "sms",
        "to": "doctor@example.com" | "+15551234567",
        "subject": "New: Prescription Review Required",
        "message": "...plain text...",
        "access_url": "https://.../workflow/<token>" | null,
        "kind": "created" | "reminder" | "expired" | "completed",
        "timestamp": "2025-01-01T00:00:00+00:00",
        "data": {...session/recipient ids...},
        "source": "docrelay"
    }

Configure via settings (NOTIFICATIONS__WEBHOOK_URL etc.). No URL = provider not configured,
and the NotificationService falls back to logging-only mode.
"""

import logging
from typing import Any

import httpx

from docrelay.domain.ports.notification import (
    INotificationProvider,
    Notification,
    NotificationKind,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class WebhookNotificationProvider(INotificationProvider):
    """Delivers notifications through an HTTP gateway."""

    def __init__(
        self,
        url: str | None,
        auth_header: str | None = None,
        timeout: float = 30.0,
        sender_name: str = "DocRelay",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize provider.

        Args:
            url: Gateway endpoint; None or blank disables the provider
            auth_header: Optional Authorization header value (e.g. 'Bearer <token>')
            timeout: Request timeout in seconds
            sender_name: Shown as the "from" name by the gateway
            client: Optional shared httpx client (tests pass one with a MockTransport)
        """
        self._url = (url or "").strip()
        self._auth_header = auth_header
        self._timeout = timeout
        self._sender_name = sender_name
        self._client = client

    @property
    def name(self) -> str:
        """Provider name."""
        return "webhook"

    @property
    def supported_kinds(self) -> list[NotificationKind]:
        """Webhook supports all notification kinds."""
        return []

    async def is_configured(self) -> bool:
        """Check if a gateway URL is set."""
        return bool(self._url)

    async def send(self, notification: Notification) -> NotificationResult:
        """Send notification via the gateway."""
        if not await self.is_configured():
            return NotificationResult(
                success=False,
                provider_name=self.name,
                kind=notification.kind,
                error="Webhook provider not configured",
            )

        try:
            external_id = await self._send_request(self._build_payload(notification))
        except httpx.HTTPError as e:
            logger.error("[NOTIFICATION] Webhook failed: %s", e)
            return NotificationResult(
                success=False,
                provider_name=self.name,
                kind=notification.kind,
                error=str(e),
            )

        logger.info(
            "[NOTIFICATION] Webhook sent (%s): %s - %s",
            notification.channel.value,
            notification.kind.value,
            notification.subject[:50],
        )
        return NotificationResult(
            success=True,
            provider_name=self.name,
            kind=notification.kind,
            external_id=external_id,
        )

    def _build_payload(self, notification: Notification) -> dict[str, Any]:
        return {
            "channel": notification.channel.value,
            "to": notification.to,
            "from_name": self._sender_name,
            "subject": notification.subject,
            "message": notification.message,
            "access_url": notification.access_url,
            "kind": notification.kind.value,
            "timestamp": (
                notification.timestamp.isoformat() if notification.timestamp else None
            ),
            "data": notification.data or {},
            "source": "docrelay",
        }

    async def _send_request(self, payload: dict[str, Any]) -> str | None:
        """POST the payload. Returns the gateway's message id if it sends one back."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "docrelay/0.1",
        }
        if self._auth_header:
            headers["Authorization"] = self._auth_header

        if self._client is not None:
            response = await self._client.post(
                self._url, json=payload, headers=headers, timeout=self._timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=payload, headers=headers)
        response.raise_for_status()

        return self._extract_message_id(response)

    @staticmethod
    def _extract_message_id(response: httpx.Response) -> str | None:
        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            message_id = body.get("id") or body.get("message_id")
            return str(message_id) if message_id is not None else None
        return None


__all__ = ["WebhookNotificationProvider"]
