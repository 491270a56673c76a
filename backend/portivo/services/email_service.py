"""
Outbound e-mail for queued notifications.

Renders one template per `NotificationKind` and sends through the Resend HTTP
API with retry and exponential backoff. Only the worker calls this; request
handlers go through the notification queue.
"""

import asyncio
import html
import logging
import random
from typing import Any, Awaitable, Callable

import httpx

from portivo.config import settings
from portivo.services.notifications import Notification, NotificationKind

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
RESEND_MAX_ATTEMPTS = 3
RESEND_RETRY_BASE_DELAY = 0.5
RESEND_RETRY_MAX_DELAY = 4.0
RESEND_TIMEOUT_SECONDS = 20.0
RETRY_STATUSES = {429, 500, 502, 503, 504}

_BUTTON = (
    '<a href="{url}" style="display: inline-block; background: #6366f1; color: white; '
    'padding: 12px 24px; text-decoration: none; border-radius: 6px; margin: 10px 0;">{label}</a>'
)
_QUOTE = (
    '<div style="background: #f9fafb; border-left: 4px solid #6366f1; '
    'padding: 15px; margin: 20px 0;">{body}</div>'
)


class EmailDeliveryError(Exception):
    pass


def _e(data: dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    return html.escape(str(value)) if value not in (None, "") else default


def _greeting(data: dict[str, Any]) -> str:
    return f"<p>Hi {_e(data, 'recipient_name', 'there')},</p>"


def _approval_requested(data: dict[str, Any]) -> tuple[str, str]:
    description = _e(data, "approval_description")
    body = (
        '<h2 style="color: #111;">Approval Request</h2>'
        + _greeting(data)
        + f"<p><strong>{_e(data, 'workspace_name')}</strong> is requesting your approval on "
        f"<strong>{_e(data, 'project_name')}</strong>:</p>"
        + _QUOTE.format(
            body=f"<h3>{_e(data, 'approval_title')}</h3>"
            + (f'<p style="color: #666;">{description}</p>' if description else "")
        )
        + _BUTTON.format(url=_e(data, "portal_url"), label="Review &amp; Respond")
    )
    return f"Approval needed: {data.get('approval_title', '')}", body


_RESPONSE_LABELS = {
    "approved": "approved",
    "rejected": "rejected",
    "changes-requested": "requested changes on",
}


def _approval_responded(data: dict[str, Any]) -> tuple[str, str]:
    verb = _RESPONSE_LABELS.get(data.get("status", ""), "responded to")
    note = _e(data, "response_note")
    body = (
        '<h2 style="color: #111;">Approval Response</h2>'
        + _greeting(data)
        + f"<p><strong>{_e(data, 'responder_name', 'Your client')}</strong> {verb} "
        f"<strong>{_e(data, 'approval_title')}</strong> on {_e(data, 'project_name')}.</p>"
        + (_QUOTE.format(body=note) if note else "")
        + _BUTTON.format(url=_e(data, "dashboard_url"), label="View Project")
    )
    return f"{data.get('approval_title', 'Approval')} was {verb.split(' ')[0]}", body


def _project_update_posted(data: dict[str, Any]) -> tuple[str, str]:
    body = (
        '<h2 style="color: #111;">New Project Update</h2>'
        + _greeting(data)
        + f"<p><strong>{_e(data, 'workspace_name')}</strong> posted an update on "
        f"<strong>{_e(data, 'project_name')}</strong>:</p>"
        + _QUOTE.format(body=_e(data, "update_content"))
        + _BUTTON.format(url=_e(data, "portal_url"), label="View in Portal")
    )
    return f"New update on {data.get('project_name', 'your project')}", body


def _invoice_sent(data: dict[str, Any]) -> tuple[str, str]:
    due = _e(data, "due_date")
    body = (
        '<h2 style="color: #111;">New Invoice</h2>'
        + _greeting(data)
        + f"<p><strong>{_e(data, 'workspace_name')}</strong> sent you invoice "
        f"<strong>{_e(data, 'invoice_number')}</strong> for <strong>{_e(data, 'amount')}</strong>.</p>"
        + (f"<p>Due {due}.</p>" if due else "")
        + _BUTTON.format(url=_e(data, "portal_url"), label="View Invoice")
    )
    return f"Invoice {data.get('invoice_number', '')} from {data.get('workspace_name', '')}", body


def _message_posted(data: dict[str, Any]) -> tuple[str, str]:
    body = (
        '<h2 style="color: #111;">New Message</h2>'
        + _greeting(data)
        + f"<p><strong>{_e(data, 'sender_name', 'Someone')}</strong> sent a message on "
        f"<strong>{_e(data, 'project_name')}</strong>:</p>"
        + _QUOTE.format(body=_e(data, "message_preview"))
        + _BUTTON.format(url=_e(data, "url"), label="View Conversation")
    )
    return f"New message on {data.get('project_name', 'your project')}", body


def _member_invited(data: dict[str, Any]) -> tuple[str, str]:
    body = (
        '<h2 style="color: #111;">You have been invited</h2>'
        + _greeting(data)
        + f"<p><strong>{_e(data, 'inviter_name', 'A teammate')}</strong> invited you to join "
        f"<strong>{_e(data, 'workspace_name')}</strong> as {_e(data, 'role', 'a member')}.</p>"
        + _BUTTON.format(url=_e(data, "login_url"), label="Accept Invitation")
    )
    return f"Join {data.get('workspace_name', 'your team')} on Portivo", body


def _sign_in(data: dict[str, Any]) -> tuple[str, str]:
    body = (
        '<h2 style="color: #111;">Sign in to Portivo</h2>'
        + "<p>Click the button below to sign in. The link expires in "
        f"{_e(data, 'expires_minutes', '15')} minutes.</p>"
        + _BUTTON.format(url=_e(data, "magic_link_url"), label="Sign in")
        + '<p style="color: #666; font-size: 14px;">If you did not request this, ignore this e-mail.</p>'
    )
    return "Your Portivo sign-in link", body


TEMPLATES: dict[NotificationKind, Callable[[dict[str, Any]], tuple[str, str]]] = {
    NotificationKind.APPROVAL_REQUESTED: _approval_requested,
    NotificationKind.APPROVAL_RESPONDED: _approval_responded,
    NotificationKind.PROJECT_UPDATE_POSTED: _project_update_posted,
    NotificationKind.INVOICE_SENT: _invoice_sent,
    NotificationKind.MESSAGE_POSTED: _message_posted,
    NotificationKind.MEMBER_INVITED: _member_invited,
    NotificationKind.SIGN_IN: _sign_in,
}


def wrap_in_layout(content: str) -> str:
    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
        '<body style="font-family: -apple-system, BlinkMacSystemFont, \'Segoe UI\', Roboto, sans-serif; '
        'line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">'
        f"{content}"
        '<hr style="border: none; border-top: 1px solid #eee; margin: 30px 0;">'
        f'<p style="color: #666; font-size: 12px;">Sent via Portivo &bull; '
        f'<a href="{html.escape(settings.app_url)}" style="color: #6366f1;">Client Portal</a></p>'
        "</body></html>"
    )


def render_notification(notification: Notification) -> tuple[str, str]:
    """Return (subject, html) for a queued notification."""
    subject, body = TEMPLATES[notification.kind](notification.template_data)
    return subject, wrap_in_layout(body)


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = RESEND_MAX_ATTEMPTS,
    base_delay: float = RESEND_RETRY_BASE_DELAY,
    max_delay: float = RESEND_RETRY_MAX_DELAY,
) -> httpx.Response:
    """Execute an HTTP request with exponential backoff retries."""
    for attempt in range(max_attempts):
        try:
            response = await request_fn()
        except httpx.RequestError:
            if attempt >= max_attempts - 1:
                raise
            logger.warning("Resend request failed, retrying", exc_info=True)
        else:
            if response.status_code not in RETRY_STATUSES or attempt >= max_attempts - 1:
                return response
            logger.warning("Resend returned %s, retrying", response.status_code)

        delay = min(max_delay, base_delay * (2 ** attempt))
        if delay:
            await asyncio.sleep(delay + random.uniform(0, delay / 2))
    return response


class ResendEmailSender:
    def __init__(
        self,
        api_key: str | None = None,
        from_email: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.from_email = from_email or settings.email_from
        self._client = client

    async def send(self, to: str, subject: str, html_body: str, idempotency_key: str | None = None) -> str | None:
        """Send one e-mail; returns the provider message id. Raises EmailDeliveryError."""
        if not self.api_key:
            logger.info("RESEND_API_KEY not set, skipping e-mail to %s: %s", to, subject)
            return None

        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        payload = {"from": self.from_email, "to": [to], "subject": subject, "html": html_body}

        client = self._client or httpx.AsyncClient(timeout=RESEND_TIMEOUT_SECONDS)
        try:
            response = await request_with_retries(
                lambda: client.post(RESEND_SEND_URL, headers=headers, json=payload)
            )
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"Resend connection error: {exc.__class__.__name__}") from exc
        finally:
            if self._client is None:
                await client.aclose()

        # 409 on an idempotency key means the message already went out
        if response.is_success or response.status_code == 409:
            try:
                return response.json().get("id")
            except ValueError:
                return None
        raise EmailDeliveryError(f"Resend API error: {response.status_code}")

    async def deliver(self, notification: Notification) -> str | None:
        subject, body = render_notification(notification)
        return await self.send(
            notification.recipient_email,
            subject,
            body,
            idempotency_key=f"notification/{notification.id}",
        )
