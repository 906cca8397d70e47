from __future__ import annotations

import asyncio
import html
import logging
from dataclasses import dataclass
from urllib.parse import quote_plus

import resend

from ai.frameworks import framework_label
from config import settings
from services.checkin_content import FeaturedConnection, GeneratedContent
from services.subscription_models import CheckInFrequency, Subscription
from utils.datetime_utils import to_iso, utcnow

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    pass


@dataclass
class RenderedEmail:
    subject: str
    html: str
    text: str


def _numbered(items: list[str]) -> list[str]:
    return [f"{i}. {item}" for i, item in enumerate(items, start=1)]


def _cadence_word(frequency: CheckInFrequency) -> str:
    return {
        CheckInFrequency.DAILY: "daily",
        CheckInFrequency.MONTHLY: "monthly",
        CheckInFrequency.QUARTERLY: "quarterly",
    }[frequency]


def settings_url(base_url: str, email: str) -> str:
    return f"{base_url.rstrip('/')}/settings?email={quote_plus(email)}"


def _connections_html(connections: list[FeaturedConnection], cadence: str) -> str:
    if not connections:
        return ""
    cards = "".join(
        '<div style="background:#fdf4ff;border-radius:8px;padding:15px;margin-bottom:10px;">'
        f'<h3 style="margin:0 0 8px;color:#1f2937;">{html.escape(c.name)}</h3>'
        f'<p style="margin:4px 0;"><strong>Context:</strong> {html.escape(c.context)}</p>'
        f'<p style="margin:4px 0;"><strong>Suggested Action:</strong> {html.escape(c.suggested_action)}</p>'
        f'<p style="margin:4px 0;"><strong>Conversation Starter:</strong> {html.escape(c.conversation_starter)}</p>'
        "</div>"
        for c in connections
    )
    return (
        '<h2 style="color:#1f2937;font-size:20px;">Featured Connections for Today</h2>'
        f"{cards}"
        f'<p style="font-size:14px;color:#6b7280;">These connections were selected for your {cadence} check-in.</p>'
    )


def render_check_in_email(subscription: Subscription, content: GeneratedContent, base_url: str) -> RenderedEmail:
    label = framework_label(content.framework)
    cadence = _cadence_word(subscription.frequency)
    link = settings_url(base_url, subscription.email)

    insight_items = "".join(
        f'<div style="background:#f3f4f6;border-radius:8px;padding:15px;margin-bottom:10px;">{html.escape(item)}</div>'
        for item in content.insights
    )
    question_items = "".join(
        f'<div style="background:#f0f9ff;border-radius:8px;padding:15px;margin-bottom:10px;">{html.escape(item)}</div>'
        for item in content.follow_up_questions
    )
    analysis_blocks = "".join(
        f'<h2 style="color:#1f2937;font-size:20px;">{html.escape(framework_label(name))}</h2>'
        f'<p style="white-space:pre-line;">{html.escape(text)}</p>'
        for name, text in content.analyses.items()
    )
    connection_section = _connections_html(content.featured_connections, cadence)
    html_body = f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif; color: #374151; line-height: 1.6; max-width: 600px; margin: 0 auto;">
        <h1 style="color: #1f2937;">Your {cadence} {html.escape(label)} Check-In</h1>
        <h2 style="color: #1f2937; font-size: 20px;">Key Insights</h2>
        {insight_items}
        <h2 style="color: #1f2937; font-size: 20px;">Reflection Questions</h2>
        {question_items}
        {connection_section}
        {analysis_blocks}
        <hr style="border: 0; border-top: 1px solid #e5e7eb; margin: 20px 0;">
        <p style="font-size: 14px; color: #6b7280;">
            To update your preferences or unsubscribe, <a href="{html.escape(link)}">click here</a>.
        </p>
    </div>
    """

    text_parts = [f"Your {cadence} {label} Check-In", "", "Key Insights", *_numbered(content.insights)]
    text_parts += ["", "Reflection Questions", *_numbered(content.follow_up_questions)]
    if content.featured_connections:
        text_parts += ["", "Featured Connections for Today"]
        for connection in content.featured_connections:
            text_parts += [
                connection.name,
                f"  Context: {connection.context}",
                f"  Suggested Action: {connection.suggested_action}",
                f"  Conversation Starter: {connection.conversation_starter}",
            ]
        text_parts.append(f"These connections were selected for your {cadence} check-in.")
    for name, text in content.analyses.items():
        text_parts += ["", framework_label(name), text]
    text_parts += ["", f"Update your preferences or unsubscribe: {link}"]

    return RenderedEmail(
        subject=f"Your {label} Journey Check-In",
        html=html_body,
        text="\n".join(text_parts),
    )


def render_test_email() -> RenderedEmail:
    sent_at = to_iso(utcnow())
    html_body = f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif; color: #374151; line-height: 1.6; max-width: 600px; margin: 0 auto;">
        <h1 style="color: #1f2937;">Test Email</h1>
        <p>Verifying email delivery system.</p>
        <p style="font-size: 14px; color: #6b7280;">Sent at {sent_at}</p>
    </div>
    """
    return RenderedEmail(
        subject="Test Email",
        html=html_body,
        text=f"Test Email\n\nVerifying email delivery system.\n\nSent at {sent_at}",
    )


def _message_id(response) -> str | None:
    if isinstance(response, dict):
        return response.get("id")
    return getattr(response, "id", None)


class CheckInMailer:
    """Sends check-in emails through Resend."""

    def __init__(self, api_key: str, sender: str, base_url: str):
        self.api_key = api_key
        self.sender = sender
        self.base_url = base_url

    def _send(self, params: dict) -> dict:
        resend.api_key = self.api_key
        return resend.Emails.send(params)

    async def _deliver(self, params: dict) -> str:
        try:
            response = await asyncio.to_thread(self._send, params)
        except Exception as exc:
            raise EmailDeliveryError(f"Email provider rejected the message: {exc.__class__.__name__}") from exc

        message_id = _message_id(response)
        if not message_id:
            raise EmailDeliveryError("Email provider returned no message id")
        return message_id

    async def send_check_in(self, subscription: Subscription, content: GeneratedContent) -> str:
        if not self.api_key:
            raise EmailDeliveryError("Email delivery is not configured")

        rendered = render_check_in_email(subscription, content, self.base_url)
        params = {
            "from": self.sender,
            "to": [subscription.email],
            "subject": rendered.subject,
            "html": rendered.html,
            "text": rendered.text,
            "headers": {"X-Entity-Ref-ID": subscription.id},
        }
        message_id = await self._deliver(params)
        logger.info(f"Check-in email sent for subscription {subscription.id}")
        return message_id

    async def send_test(self, email: str) -> str:
        if not self.api_key:
            raise EmailDeliveryError("Email delivery is not configured")

        rendered = render_test_email()
        params = {
            "from": self.sender,
            "to": [email],
            "subject": rendered.subject,
            "html": rendered.html,
            "text": rendered.text,
        }
        message_id = await self._deliver(params)
        logger.info("Test email sent")
        return message_id


def get_mailer() -> CheckInMailer:
    return CheckInMailer(
        api_key=settings.RESEND_API_KEY,
        sender=settings.EMAIL_FROM,
        base_url=settings.BASE_URL,
    )
