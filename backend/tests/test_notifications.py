"""Tests for e-mail rendering, the Resend client and the delivery worker."""

import json

import httpx
import pytest

import worker
from conftest import RecordingQueue
from portivo.services.email_service import (
    RESEND_SEND_URL,
    EmailDeliveryError,
    ResendEmailSender,
    render_notification,
    request_with_retries,
)
from portivo.services.notifications import Notification, NotificationKind, portal_url


def _sender(handler) -> ResendEmailSender:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ResendEmailSender(api_key="re_test", from_email="Portivo <hello@portivo.test>", client=client)


class TestRendering:
    @pytest.mark.parametrize("kind", list(NotificationKind))
    def test_every_kind_has_a_template(self, kind):
        subject, body = render_notification(Notification(kind=kind, recipient_email="x@y.test"))
        assert subject
        assert body.startswith("<!DOCTYPE html>")

    def test_values_are_escaped(self):
        notification = Notification(
            kind=NotificationKind.MESSAGE_POSTED,
            recipient_email="x@y.test",
            template_data={"sender_name": "<script>alert(1)</script>", "message_preview": "a & b"},
        )
        _, body = render_notification(notification)
        assert "<script>" not in body
        assert "&lt;script&gt;" in body
        assert "a &amp; b" in body

    def test_invoice_sent_mentions_amount_and_link(self):
        notification = Notification(
            kind=NotificationKind.INVOICE_SENT,
            recipient_email="x@y.test",
            template_data={
                "invoice_number": "INV-202601-ABC123",
                "workspace_name": "Acme Studio",
                "amount": "$1,250.00",
                "portal_url": "https://app.test/portal/acme/invoices/1",
            },
        )
        subject, body = render_notification(notification)
        assert subject == "Invoice INV-202601-ABC123 from Acme Studio"
        assert "$1,250.00" in body
        assert 'href="https://app.test/portal/acme/invoices/1"' in body

    def test_changes_requested_subject(self):
        notification = Notification(
            kind=NotificationKind.APPROVAL_RESPONDED,
            recipient_email="x@y.test",
            template_data={"status": "changes-requested", "approval_title": "Logo"},
        )
        subject, body = render_notification(notification)
        assert subject == "Logo was requested"
        assert "requested changes on" in body

    def test_portal_url(self, monkeypatch):
        from portivo.config import settings

        monkeypatch.setattr(settings, "app_url", "https://app.test/")
        assert portal_url("acme") == "https://app.test/portal/acme"
        assert portal_url("acme", "projects", "p1") == "https://app.test/portal/acme/projects/p1"


@pytest.mark.asyncio
class TestResendSender:
    async def test_success_returns_the_message_id(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "msg_123"})

        message_id = await _sender(handler).send("to@client.test", "Hi", "<p>Hi</p>", idempotency_key="n/1")
        assert message_id == "msg_123"
        [request] = seen
        assert str(request.url) == RESEND_SEND_URL
        assert request.headers["Authorization"] == "Bearer re_test"
        assert request.headers["Idempotency-Key"] == "n/1"
        assert json.loads(request.content)["to"] == ["to@client.test"]

    async def test_duplicate_idempotency_key_counts_as_sent(self):
        sender = _sender(lambda request: httpx.Response(409, json={"id": "msg_prev"}))
        assert await sender.send("to@client.test", "Hi", "<p>Hi</p>", idempotency_key="n/1") == "msg_prev"

    async def test_client_error_raises(self):
        sender = _sender(lambda request: httpx.Response(422, json={"message": "bad from"}))
        with pytest.raises(EmailDeliveryError):
            await sender.send("to@client.test", "Hi", "<p>Hi</p>")

    async def test_missing_api_key_skips_sending(self):
        def handler(request):
            raise AssertionError("no request expected")

        sender = ResendEmailSender(api_key="", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        assert await sender.send("to@client.test", "Hi", "<p>Hi</p>") is None

    async def test_deliver_uses_the_notification_id(self):
        keys: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            keys.append(request.headers["Idempotency-Key"])
            return httpx.Response(200, json={"id": "msg_1"})

        notification = Notification(kind=NotificationKind.SIGN_IN, recipient_email="to@client.test")
        await _sender(handler).deliver(notification)
        assert keys == [f"notification/{notification.id}"]


@pytest.mark.asyncio
class TestRetries:
    async def test_retries_server_errors_then_succeeds(self):
        statuses = iter([503, 429, 200])
        calls = 0

        async def request_fn():
            nonlocal calls
            calls += 1
            return httpx.Response(next(statuses))

        response = await request_with_retries(request_fn, base_delay=0)
        assert response.status_code == 200
        assert calls == 3

    async def test_gives_up_after_max_attempts(self):
        calls = 0

        async def request_fn():
            nonlocal calls
            calls += 1
            return httpx.Response(500)

        response = await request_with_retries(request_fn, max_attempts=2, base_delay=0)
        assert response.status_code == 500
        assert calls == 2

    async def test_client_errors_are_not_retried(self):
        calls = 0

        async def request_fn():
            nonlocal calls
            calls += 1
            return httpx.Response(400)

        await request_with_retries(request_fn, base_delay=0)
        assert calls == 1

    async def test_connection_errors_propagate_on_the_last_attempt(self):
        async def request_fn():
            raise httpx.ConnectError("refused")

        with pytest.raises(httpx.ConnectError):
            await request_with_retries(request_fn, max_attempts=2, base_delay=0)


class FlakySender:
    def __init__(self, failures: int):
        self.failures = failures
        self.delivered: list[Notification] = []

    async def deliver(self, notification: Notification) -> str | None:
        if self.failures > 0:
            self.failures -= 1
            raise EmailDeliveryError("Resend API error: 500")
        self.delivered.append(notification)
        return "msg_ok"


@pytest.mark.asyncio
class TestWorker:
    async def test_failed_delivery_is_requeued(self):
        queue = RecordingQueue()
        notification = Notification(kind=NotificationKind.SIGN_IN, recipient_email="to@client.test")

        assert await worker.process_notification(notification, FlakySender(failures=1), queue) is False
        assert queue.pushed == [notification]
        assert notification.attempts == 1

    async def test_gives_up_after_max_attempts(self):
        queue = RecordingQueue()
        sender = FlakySender(failures=10)
        notification = Notification(kind=NotificationKind.SIGN_IN, recipient_email="to@client.test")

        for _ in range(worker.MAX_DELIVERY_ATTEMPTS):
            queue.pushed.clear()
            await worker.process_notification(notification, sender, queue)
        assert notification.attempts == worker.MAX_DELIVERY_ATTEMPTS
        assert queue.pushed == []

    async def test_success(self):
        queue = RecordingQueue()
        sender = FlakySender(failures=0)
        notification = Notification(kind=NotificationKind.SIGN_IN, recipient_email="to@client.test")

        assert await worker.process_notification(notification, sender, queue) is True
        assert sender.delivered == [notification]
        assert queue.pushed == []
