import json
import sys
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from config import settings
from models.database import NotificationLog, NotificationPreference, User
from models.opportunity import OpportunityCategory
from services.notifier import (
    WHATSAPP_MAX_CHARS,
    AlertNotifier,
    format_alert_html,
    format_whatsapp_message,
    should_send_realtime_alert,
)
from services.stores import NotificationPreferenceStore


REALTIME = {"email_alerts_enabled": True, "alert_frequency": "realtime", "categories": []}


@pytest.fixture
def channels_configured(monkeypatch):
    monkeypatch.setattr(settings, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(settings, "TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "twilio-token")
    monkeypatch.setattr(settings, "TWILIO_WHATSAPP_NUMBER", "+447700900000")


class ProviderStub:
    """Answers Resend and Twilio calls and keeps the requests."""

    def __init__(self, email_status=200):
        self.email_status = email_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "api.resend.com":
            return httpx.Response(self.email_status, json={"id": f"email-{len(self.requests)}"})
        return httpx.Response(201, json={"sid": f"SM{len(self.requests)}"})


def _notifier(session_factory, stub):
    return AlertNotifier(
        preferences=NotificationPreferenceStore(session_factory),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(stub)),
    )


def test_realtime_alert_rules(make_opportunity):
    opp = make_opportunity(confidence_score=75)

    assert should_send_realtime_alert(opp, REALTIME)
    assert not should_send_realtime_alert(opp, {**REALTIME, "email_alerts_enabled": False})
    assert not should_send_realtime_alert(opp, {**REALTIME, "alert_frequency": "daily"})
    assert not should_send_realtime_alert(opp, {**REALTIME, "min_confidence_threshold": 80})
    assert not should_send_realtime_alert(opp, {**REALTIME, "categories": ["crypto"]})
    assert should_send_realtime_alert(opp, {**REALTIME, "categories": ["stock", "crypto"]})


def test_whatsapp_message_is_truncated(make_opportunity):
    opp = make_opportunity(title="X" * 2000)

    message = format_whatsapp_message(opp)

    assert len(message) == WHATSAPP_MAX_CHARS
    assert message.endswith("...")


def test_alert_html_escapes_user_content(make_opportunity):
    opp = make_opportunity(title="<b>AAPL</b>", category=OpportunityCategory.ARBITRAGE, expected_value=12.5)

    body = format_alert_html(opp, "Sam")

    assert "&lt;b&gt;AAPL&lt;/b&gt;" in body
    assert "£12.50" in body
    assert f"/opportunities/{opp.id}" in body


@pytest.mark.asyncio
async def test_send_email_and_whatsapp(session_factory, channels_configured):
    stub = ProviderStub()
    notifier = _notifier(session_factory, stub)

    email_id = await notifier.send_email("sam@example.com", "Hello", "<p>hi</p>")
    sid = await notifier.send_whatsapp("+447700900123", "hi")
    await notifier.close()

    assert email_id == "email-1"
    assert sid == "SM2"
    email_request, twilio_request = stub.requests
    assert email_request.headers["Authorization"] == "Bearer re_test"
    assert json.loads(email_request.content)["to"] == ["sam@example.com"]
    form = parse_qs(twilio_request.content.decode())
    assert form["To"] == ["whatsapp:+447700900123"]
    assert form["From"] == ["whatsapp:+447700900000"]
    assert twilio_request.url.path.endswith("/Accounts/AC123/Messages.json")


@pytest.mark.asyncio
async def test_unconfigured_channels_are_skipped(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "RESEND_API_KEY", None)
    stub = ProviderStub()
    notifier = _notifier(session_factory, stub)

    assert await notifier.send_email("sam@example.com", "Hello", "<p>hi</p>") is None
    assert stub.requests == []


@pytest.mark.asyncio
async def test_email_provider_error_returns_none(session_factory, channels_configured):
    notifier = _notifier(session_factory, ProviderStub(email_status=422))

    assert await notifier.send_email("sam@example.com", "Hello", "<p>hi</p>") is None


@pytest.mark.asyncio
async def test_notify_realtime_fans_out_and_logs(session_factory, channels_configured, make_opportunity):
    async with session_factory() as session:
        session.add_all(
            [
                User(id="u1", email="sam@example.com", full_name="Sam"),
                User(id="u2", email="alex@example.com"),
                NotificationPreference(
                    user_id="u1",
                    email_alerts_enabled=True,
                    alert_frequency="realtime",
                    whatsapp_alerts_enabled=True,
                    whatsapp_number="+447700900123",
                ),
                NotificationPreference(user_id="u2", email_alerts_enabled=True, alert_frequency="daily"),
            ]
        )
        await session.commit()
    stub = ProviderStub()
    notifier = _notifier(session_factory, stub)
    strong = make_opportunity(confidence_score=85)
    weak = make_opportunity(confidence_score=60)

    sent = await notifier.notify_realtime([strong, weak])

    assert sent == 2
    async with session_factory() as session:
        logs = (await session.execute(select(NotificationLog))).scalars().all()
    assert {(log.user_id, log.channel, log.opportunity_id) for log in logs} == {
        ("u1", "email", strong.id),
        ("u1", "whatsapp", strong.id),
    }


@pytest.mark.asyncio
async def test_notify_realtime_without_qualifying_opportunities(session_factory, make_opportunity):
    stub = ProviderStub()
    notifier = _notifier(session_factory, stub)

    assert await notifier.notify_realtime([make_opportunity(confidence_score=50)]) == 0
    assert stub.requests == []


@pytest.mark.asyncio
async def test_alert_threshold_is_inclusive_at_seventy(session_factory, channels_configured, make_opportunity, monkeypatch):
    monkeypatch.setattr(settings, "ALERT_MIN_CONFIDENCE", 70)
    async with session_factory() as session:
        session.add_all(
            [
                User(id="u1", email="sam@example.com"),
                NotificationPreference(user_id="u1", email_alerts_enabled=True, alert_frequency="realtime"),
            ]
        )
        await session.commit()
    stub = ProviderStub()
    notifier = _notifier(session_factory, stub)

    below = await notifier.notify_realtime([make_opportunity(confidence_score=69)])
    assert below == 0
    assert stub.requests == []

    at_threshold = make_opportunity(confidence_score=70)
    assert await notifier.notify_realtime([at_threshold]) == 1
    assert len(stub.requests) == 1
    async with session_factory() as session:
        logs = (await session.execute(select(NotificationLog))).scalars().all()
    assert [(log.user_id, log.opportunity_id) for log in logs] == [("u1", at_threshold.id)]
