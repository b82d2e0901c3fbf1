"""Realtime opportunity alerts over email (Resend) and WhatsApp (Twilio)."""

import asyncio
import html
from typing import Optional

import httpx

from config import settings
from models.opportunity import Opportunity
from services.stores import NotificationPreferenceStore
from utils.logger import alert_logger as logger

RESEND_API_URL = "https://api.resend.com/emails"
TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
WHATSAPP_MAX_CHARS = 1600

CATEGORY_LABELS = {
    "arbitrage": "Arbitrage",
    "value_bet": "Value bet",
    "stock": "Stock",
    "crypto": "Crypto",
}


def _format_value(opportunity: Opportunity) -> str:
    unit = opportunity.expected_value_unit.value
    if unit == "currency":
        return f"£{opportunity.expected_value:,.2f}"
    return f"{opportunity.expected_value:+.2f}%"


def should_send_realtime_alert(opportunity: Opportunity, preferences: dict) -> bool:
    if not preferences.get("email_alerts_enabled"):
        return False
    if preferences.get("alert_frequency") != "realtime":
        return False
    threshold = preferences.get("min_confidence_threshold") or settings.ALERT_MIN_CONFIDENCE
    if opportunity.confidence_score < threshold:
        return False
    categories = preferences.get("categories") or []
    if categories and opportunity.category.value not in categories:
        return False
    return True


def format_alert_html(opportunity: Opportunity, user_name: str) -> str:
    link = f"{settings.APP_URL}/opportunities/{opportunity.id}"
    expires = opportunity.expires_at.strftime("%d %b %Y %H:%M UTC") if opportunity.expires_at else "N/A"
    return f"""<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2937; max-width: 600px; margin: 0 auto;">
  <p>Hi {html.escape(user_name)},</p>
  <h2 style="margin: 0 0 8px 0;">{html.escape(opportunity.title)}</h2>
  <p style="color: #4b5563;">{html.escape(opportunity.description or "")}</p>
  <table style="border-collapse: collapse;">
    <tr><td style="padding: 4px 12px 4px 0;">Category</td><td>{CATEGORY_LABELS.get(opportunity.category.value, opportunity.category.value)}</td></tr>
    <tr><td style="padding: 4px 12px 4px 0;">Confidence</td><td>{opportunity.confidence_score}%</td></tr>
    <tr><td style="padding: 4px 12px 4px 0;">Expected value</td><td>{_format_value(opportunity)}</td></tr>
    <tr><td style="padding: 4px 12px 4px 0;">Expires</td><td>{expires}</td></tr>
  </table>
  <p><a href="{link}">View on TradeSmart</a></p>
  <p style="font-size: 12px; color: #6b7280;"><a href="{settings.APP_URL}/settings">Manage alert preferences</a></p>
</body>
</html>"""


def format_whatsapp_message(opportunity: Opportunity) -> str:
    label = CATEGORY_LABELS.get(opportunity.category.value, opportunity.category.value)
    message = (
        f"*TradeSmart {label} alert*\n"
        f"{opportunity.title}\n"
        f"Confidence: {opportunity.confidence_score}% | EV: {_format_value(opportunity)}\n"
        f"{settings.APP_URL}/opportunities/{opportunity.id}"
    )
    if len(message) > WHATSAPP_MAX_CHARS:
        message = message[: WHATSAPP_MAX_CHARS - 3] + "..."
    return message


class AlertNotifier:
    """Sends realtime alerts to subscribed users and logs each delivery."""

    def __init__(
        self,
        preferences: Optional[NotificationPreferenceStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.preferences = preferences or NotificationPreferenceStore()
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def email_configured(self) -> bool:
        return bool(settings.RESEND_API_KEY)

    @property
    def whatsapp_configured(self) -> bool:
        return bool(settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_WHATSAPP_NUMBER)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=settings.ALERT_TIMEOUT_SECONDS)
            self._owns_client = True
        return self._http_client

    async def close(self):
        if self._http_client and self._owns_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send_email(self, to: str, subject: str, html_body: str) -> Optional[str]:
        """Deliver through Resend; returns the message id or None on failure."""
        if not self.email_configured:
            logger.debug("Resend not configured, skipping email")
            return None
        client = await self._get_client()
        try:
            resp = await client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
                json={"from": settings.ALERT_FROM_EMAIL, "to": [to], "subject": subject, "html": html_body},
            )
        except httpx.HTTPError as exc:
            logger.warning("Resend request failed", error=str(exc))
            return None
        if resp.status_code != 200:
            logger.warning("Resend API error", status=resp.status_code, body=resp.text[:300])
            return None
        return resp.json().get("id") or ""

    async def send_whatsapp(self, to: str, body: str) -> Optional[str]:
        """Deliver through Twilio's WhatsApp channel; returns the message SID or None."""
        if not self.whatsapp_configured:
            logger.debug("Twilio not configured, skipping WhatsApp")
            return None
        to_number = to if to.startswith("whatsapp:") else f"whatsapp:{to}"
        from_number = settings.TWILIO_WHATSAPP_NUMBER
        if not from_number.startswith("whatsapp:"):
            from_number = f"whatsapp:{from_number}"

        client = await self._get_client()
        try:
            resp = await client.post(
                f"{TWILIO_API_BASE}/Accounts/{settings.TWILIO_ACCOUNT_SID}/Messages.json",
                auth=(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN),
                data={"From": from_number, "To": to_number, "Body": body},
            )
        except httpx.HTTPError as exc:
            logger.warning("Twilio request failed", error=str(exc))
            return None
        if resp.status_code != 201:
            logger.warning("Twilio API error", status=resp.status_code, body=resp.text[:300])
            return None
        return resp.json().get("sid") or ""

    async def send_opportunity_alert(self, user_id: str, opportunity: Opportunity) -> int:
        """Alert one user about one opportunity; returns the number of delivered messages."""
        prefs = await self.preferences.get_preferences(user_id)
        if not should_send_realtime_alert(opportunity, prefs):
            return 0

        user = await self.preferences.get_user(user_id)
        if user is None or not user.email:
            logger.debug("Alert skipped, user has no email", user_id=user_id)
            return 0

        delivered = 0
        subject = f"New {opportunity.category.value} opportunity: {opportunity.title}"
        user_name = user.full_name or user.email.split("@")[0]
        message_id = await self.send_email(user.email, subject, format_alert_html(opportunity, user_name))
        if message_id is not None:
            delivered += 1
            await self._log(user_id, "email", opportunity.id, message_id)

        if prefs.get("whatsapp_alerts_enabled") and prefs.get("whatsapp_number"):
            sid = await self.send_whatsapp(prefs["whatsapp_number"], format_whatsapp_message(opportunity))
            if sid is not None:
                delivered += 1
                await self._log(user_id, "whatsapp", opportunity.id, sid)
        return delivered

    async def _log(self, user_id: str, channel: str, opportunity_id: str, message_id: str) -> None:
        try:
            await self.preferences.log_notification(
                user_id, "opportunity_alert", channel, opportunity_id=opportunity_id, message_id=message_id
            )
        except Exception as exc:
            # A delivered alert still counts when logging fails.
            logger.warning("Failed to log notification", user_id=user_id, error=str(exc))

    async def send_batch(self, user_ids: list[str], opportunity: Opportunity) -> int:
        results = await asyncio.gather(
            *(self.send_opportunity_alert(user_id, opportunity) for user_id in user_ids),
            return_exceptions=True,
        )
        sent = 0
        for user_id, result in zip(user_ids, results):
            if isinstance(result, Exception):
                logger.warning("Opportunity alert failed", user_id=user_id, opportunity_id=opportunity.id, error=str(result))
            else:
                sent += result
        return sent

    async def notify_realtime(self, opportunities: list[Opportunity]) -> int:
        """Fan out alerts for qualifying opportunities to every realtime subscriber."""
        qualifying = [o for o in opportunities if o.confidence_score >= settings.ALERT_MIN_CONFIDENCE]
        if not qualifying:
            return 0
        subscribers = await self.preferences.realtime_subscribers()
        if not subscribers:
            return 0
        sent = 0
        for opportunity in qualifying:
            sent += await self.send_batch(subscribers, opportunity)
        logger.info("Realtime alerts sent", opportunities=len(qualifying), subscribers=len(subscribers), sent=sent)
        return sent
