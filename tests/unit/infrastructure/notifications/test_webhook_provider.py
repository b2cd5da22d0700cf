"""Tests for the webhook notification provider.

Uses httpx.MockTransport so no network is touched - the handler sees exactly the request
the provider would send to the gateway.
"""

import json
from datetime import UTC, datetime

import httpx
import pytest

from docrelay.domain.ports.notification import (
    Notification,
    NotificationChannel,
    NotificationKind,
)
from docrelay.infrastructure.notifications import WebhookNotificationProvider

GATEWAY = "https://gateway.example.com/notify"


def _notification(**overrides) -> Notification:
    fields = {
        "kind": NotificationKind.CREATED,
        "channel": NotificationChannel.EMAIL,
        "to": "doctor@example.com",
        "subject": "New: Prescription Review Required",
        "message": "Hello Dr. House",
        "access_url": "https://docs.example.com/workflow/abcdefghijklmnop",
        "data": {"session_id": "s-1"},
        "timestamp": datetime(2025, 1, 15, 9, 0, tzinfo=UTC),
    }
    fields.update(overrides)
    return Notification(**fields)


def _provider(handler, **kwargs) -> WebhookNotificationProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotificationProvider(GATEWAY, client=client, **kwargs)


class TestConfiguration:
    """is_configured and metadata."""

    async def test_configured_with_url(self) -> None:
        provider = WebhookNotificationProvider(GATEWAY)
        assert await provider.is_configured()
        assert provider.name == "webhook"
        assert provider.supported_kinds == []

    @pytest.mark.parametrize("url", [None, "", "   "])
    async def test_not_configured_without_url(self, url) -> None:
        provider = WebhookNotificationProvider(url)
        assert not await provider.is_configured()

        result = await provider.send(_notification())

        assert result.success is False
        assert result.error == "Webhook provider not configured"


class TestSend:
    """Delivery through the gateway."""

    async def test_posts_json_payload(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "msg-123"})

        provider = _provider(handler, auth_header="Bearer secret", sender_name="Acme")

        result = await provider.send(_notification())

        assert result.success is True
        assert result.external_id == "msg-123"
        assert result.provider_name == "webhook"

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == GATEWAY
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.headers["User-Agent"] == "docrelay/0.1"

        payload = json.loads(request.content)
        assert payload == {
            "channel": "email",
            "to": "doctor@example.com",
            "from_name": "Acme",
            "subject": "New: Prescription Review Required",
            "message": "Hello Dr. House",
            "access_url": "https://docs.example.com/workflow/abcdefghijklmnop",
            "kind": "created",
            "timestamp": "2025-01-15T09:00:00+00:00",
            "data": {"session_id": "s-1"},
            "source": "docrelay",
        }

    async def test_no_auth_header_by_default(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        result = await _provider(handler).send(_notification())

        assert result.success is True
        assert result.external_id is None
        assert "Authorization" not in seen[0].headers

    async def test_sms_payload(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"message_id": 42})

        result = await _provider(handler).send(
            _notification(
                channel=NotificationChannel.SMS,
                to="+15551234567",
                kind=NotificationKind.EXPIRED,
                access_url=None,
            )
        )

        assert result.external_id == "42"
        assert seen[0]["channel"] == "sms"
        assert seen[0]["access_url"] is None
        assert seen[0]["kind"] == "expired"

    async def test_plain_text_response_becomes_external_id(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="queued")

        result = await _provider(handler).send(_notification())

        assert result.external_id == "queued"

    async def test_gateway_error_is_a_failed_result(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="bad gateway")

        result = await _provider(handler).send(_notification())

        assert result.success is False
        assert "502" in result.error

    async def test_connection_error_is_a_failed_result(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("All connection attempts failed", request=request)

        result = await _provider(handler).send(_notification())

        assert result.success is False
        assert "connection" in result.error.lower()
