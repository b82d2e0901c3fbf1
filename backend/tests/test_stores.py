import asyncio
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from sqlalchemy import select

from config import settings
from models.database import LinkedAccount, NotificationLog, NotificationPreference, OAuthState, UserTrade
from models.opportunity import OpportunityCategory, OpportunityFilter, OpportunityStatus
from services.platforms.types import PlatformCredentials, PlatformTrade
from services.stores import (
    InvalidStatusTransition,
    LinkedAccountStore,
    NotificationPreferenceStore,
    OpportunityNotFound,
    OpportunityStore,
    TradeStore,
    UsageStore,
)
from utils.utcnow import utcnow


# ---------------------------------------------------------------------------
# Usage quota
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_try_consume_counts_up_to_limit(session_factory):
    store = UsageStore(session_factory)

    decisions = [await store.try_consume("u1", 2) for _ in range(3)]

    assert [d.allowed for d in decisions] == [True, True, False]
    assert [d.used for d in decisions] == [1, 2, 2]
    assert await store.get_usage("u1") == 2


@pytest.mark.asyncio
async def test_concurrent_try_consume_never_exceeds_limit(session_factory):
    store = UsageStore(session_factory)

    decisions = await asyncio.gather(*(store.try_consume("u1", 5) for _ in range(12)))

    assert sum(1 for d in decisions if d.allowed) == 5
    assert await store.get_usage("u1") == 5


@pytest.mark.asyncio
async def test_usage_is_tracked_per_day(session_factory):
    store = UsageStore(session_factory)

    await store.try_consume("u1", 1, day="2026-10-17")
    decision = await store.try_consume("u1", 1, day="2026-10-18")

    assert decision.allowed is True
    assert await store.get_usage("u1", "2026-10-17") == 1


# ---------------------------------------------------------------------------
# Opportunities
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_returns_global_and_own_rows_newest_first(session_factory, make_opportunity):
    store = OpportunityStore(session_factory)
    now = utcnow()
    await store.insert_many(
        [
            make_opportunity(title="old global", created_at=now - timedelta(hours=2)),
            make_opportunity(title="new global", created_at=now - timedelta(minutes=1)),
            make_opportunity(title="mine", user_id="u1", created_at=now - timedelta(hours=1)),
            make_opportunity(title="someone else", user_id="u2", created_at=now),
        ]
    )

    rows = await store.list_opportunities(OpportunityFilter(user_id="u1"))

    assert [r.title for r in rows] == ["new global", "mine", "old global"]


@pytest.mark.asyncio
async def test_expired_status_is_derived_from_expires_at(session_factory, make_opportunity):
    store = OpportunityStore(session_factory)
    stale = make_opportunity(title="stale", expires_at=utcnow() - timedelta(minutes=5))
    fresh = make_opportunity(title="fresh")
    await store.insert_many([stale, fresh])

    expired = await store.list_opportunities(OpportunityFilter(status=OpportunityStatus.EXPIRED))
    open_rows = await store.list_opportunities(OpportunityFilter(status=OpportunityStatus.OPEN))

    assert [r.title for r in expired] == ["stale"]
    assert [r.title for r in open_rows] == ["fresh"]
    assert expired[0].to_response()["status"] == "expired"


@pytest.mark.asyncio
async def test_list_filters_by_category(session_factory, make_opportunity):
    store = OpportunityStore(session_factory)
    await store.insert_many(
        [make_opportunity(title="stock"), make_opportunity(title="crypto", category=OpportunityCategory.CRYPTO)]
    )

    rows = await store.list_opportunities(OpportunityFilter(category=OpportunityCategory.CRYPTO))

    assert [r.title for r in rows] == ["crypto"]


@pytest.mark.asyncio
async def test_update_status_moves_open_to_taken_once(session_factory, make_opportunity):
    store = OpportunityStore(session_factory)
    opp = make_opportunity()
    await store.insert_many([opp])

    updated = await store.update_status(opp.id, OpportunityStatus.TAKEN)
    assert updated.status == OpportunityStatus.TAKEN

    with pytest.raises(InvalidStatusTransition):
        await store.update_status(opp.id, OpportunityStatus.DISMISSED)


@pytest.mark.asyncio
async def test_update_status_rejects_expired_rows(session_factory, make_opportunity):
    store = OpportunityStore(session_factory)
    opp = make_opportunity(expires_at=utcnow() - timedelta(seconds=1))
    await store.insert_many([opp])

    with pytest.raises(InvalidStatusTransition) as excinfo:
        await store.update_status(opp.id, OpportunityStatus.TAKEN)

    assert excinfo.value.current == OpportunityStatus.EXPIRED


@pytest.mark.asyncio
async def test_update_status_unknown_id(session_factory):
    with pytest.raises(OpportunityNotFound):
        await OpportunityStore(session_factory).update_status("missing", OpportunityStatus.TAKEN)


# ---------------------------------------------------------------------------
# Linked accounts and OAuth state
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_linked_account_secrets_are_encrypted_at_rest(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "APP_SECRETS_KEY", "unit-test-key")
    store = LinkedAccountStore(session_factory)

    await store.upsert("u1", "kraken", PlatformCredentials(api_key="key-123", api_secret="c2VjcmV0"))

    async with session_factory() as session:
        row = (await session.execute(select(LinkedAccount))).scalar_one()
    assert row.api_key.startswith("enc:v1:")
    assert "key-123" not in row.api_key
    assert store.credentials(row).api_key == "key-123"
    assert store.credentials(row).api_secret == "c2VjcmV0"


@pytest.mark.asyncio
async def test_upsert_replaces_existing_link_and_reactivates(session_factory):
    store = LinkedAccountStore(session_factory)
    first = await store.upsert("u1", "ibkr", PlatformCredentials(api_key="a", api_secret="b"))
    await store.record_sync(first.id, "boom", deactivate=True)

    second = await store.upsert("u1", "ibkr", PlatformCredentials(api_key="c", api_secret="d"))

    assert second.id == first.id
    account = await store.get("u1", "ibkr")
    assert account.is_active is True
    assert account.sync_error is None
    assert store.credentials(account).api_key == "c"


@pytest.mark.asyncio
async def test_oauth_state_is_single_use(session_factory):
    store = LinkedAccountStore(session_factory)
    state = await store.create_oauth_state("u1", "betfair", ttl_minutes=10)

    assert await store.consume_oauth_state(state, "betfair") == "u1"
    assert await store.consume_oauth_state(state, "betfair") is None


@pytest.mark.asyncio
async def test_expired_or_mismatched_oauth_state_is_rejected(session_factory):
    store = LinkedAccountStore(session_factory)
    async with session_factory() as session:
        session.add(
            OAuthState(
                state="old",
                user_id="u1",
                platform="betfair",
                created_at=utcnow() - timedelta(minutes=20),
                expires_at=utcnow() - timedelta(minutes=10),
            )
        )
        await session.commit()
    other = await store.create_oauth_state("u1", "betfair", ttl_minutes=10)

    assert await store.consume_oauth_state("old", "betfair") is None
    assert await store.consume_oauth_state(other, "kraken") is None


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------


def _trade(trade_id: str, fee: float = 0.5) -> PlatformTrade:
    return PlatformTrade(
        id=trade_id,
        symbol="XXBTZUSD",
        side="buy",
        quantity=0.01,
        price=60000.0,
        fee=fee,
        currency="USD",
        executed_at=datetime(2026, 10, 1, 12, 0, 0),
    )


@pytest.mark.asyncio
async def test_import_trades_is_idempotent(session_factory):
    store = TradeStore(session_factory)

    first = await store.import_trades("u1", "kraken", [_trade("T1"), _trade("T2")])
    second = await store.import_trades("u1", "kraken", [_trade("T2"), _trade("T3")])

    assert first == 2
    assert second == 1
    async with session_factory() as session:
        rows = (await session.execute(select(UserTrade).order_by(UserTrade.external_id))).scalars().all()
    assert [r.external_id for r in rows] == ["kraken-T1", "kraken-T2", "kraken-T3"]
    assert rows[0].category == "kraken"
    assert rows[0].entry_amount == pytest.approx(600.0)
    assert rows[0].pnl == pytest.approx(-0.5)


@pytest.mark.asyncio
async def test_betfair_trades_land_in_arbitrage_category(session_factory):
    await TradeStore(session_factory).import_trades("u1", "betfair", [_trade("B1", fee=0.0)])

    async with session_factory() as session:
        row = (await session.execute(select(UserTrade))).scalar_one()
    assert row.category == "arbitrage"
    assert row.external_id == "betfair-B1"


# ---------------------------------------------------------------------------
# Notification preferences
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_preferences_default_when_no_row(session_factory):
    prefs = await NotificationPreferenceStore(session_factory).get_preferences("nobody")

    assert prefs["email_alerts_enabled"] is True
    assert prefs["alert_frequency"] == "realtime"
    assert prefs["whatsapp_alerts_enabled"] is False


@pytest.mark.asyncio
async def test_realtime_subscribers_and_log(session_factory):
    async with session_factory() as session:
        session.add_all(
            [
                NotificationPreference(user_id="rt", email_alerts_enabled=True, alert_frequency="realtime"),
                NotificationPreference(user_id="daily", email_alerts_enabled=True, alert_frequency="daily"),
                NotificationPreference(user_id="off", email_alerts_enabled=False, alert_frequency="realtime"),
            ]
        )
        await session.commit()
    store = NotificationPreferenceStore(session_factory)

    assert await store.realtime_subscribers() == ["rt"]

    await store.log_notification("rt", "opportunity_alert", "email", opportunity_id="o1", message_id="m1")
    async with session_factory() as session:
        log = (await session.execute(select(NotificationLog))).scalar_one()
    assert (log.user_id, log.channel, log.opportunity_id) == ("rt", "email", "o1")
