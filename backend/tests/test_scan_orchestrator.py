import asyncio
import json
import sys
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from config import settings
from models.database import UserUsage
from services import scan_orchestrator
from services.ai.opportunity_analyzer import OpportunityAnalyzer
from services.notifier import AlertNotifier
from services.scan_orchestrator import ScanOrchestrator
from services.scanners.types import MomentumSignal, StockOpportunity
from services.stores import NotificationPreferenceStore, OpportunityStore, UsageStore
from utils.utcnow import utcnow


def _stock(symbol="AAPL", confidence=75, change_percent=2.0):
    return StockOpportunity(
        id=f"stock-{symbol}-{confidence}",
        symbol=symbol,
        name=f"{symbol} Inc.",
        market="US",
        current_price=101.0,
        price_change=2.0,
        price_change_percent=change_percent,
        signals=[MomentumSignal(type="rsi_oversold", strength=40, value=24.0)],
        overall_signal="buy",
        confidence=confidence,
        technicals={"rsi14": 24.0},
        volume_ratio=1.1,
        fifty_two_week_position=40.0,
        reasoning="RSI oversold at 24.0.",
        suggested_action="Positive signals. Monitor for entry opportunity.",
    )


def _orchestrator(session_factory, scanners, analyzer=None, notifier=None, **kwargs):
    return ScanOrchestrator(
        usage_store=UsageStore(session_factory),
        opportunity_store=OpportunityStore(session_factory),
        analyzer=analyzer or OpportunityAnalyzer(api_key=""),
        notifier=notifier or AlertNotifier(preferences=NotificationPreferenceStore(session_factory)),
        scanners=scanners,
        **kwargs,
    )


def _mock_runners():
    return {name: AsyncMock(return_value=[]) for name in scan_orchestrator.SCANNER_LABELS}


@pytest.mark.asyncio
async def test_missing_scan_type_is_rejected_before_any_scanner_runs(session_factory):
    runners = _mock_runners()
    outcome = await _orchestrator(session_factory, runners).run(None, user_id="u1", user_tier="pro")

    assert outcome.status_code == 400
    assert outcome.body["error"].startswith("scanType is required. Must be one of: arbitrage")
    for runner in runners.values():
        runner.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_scan_type_lists_valid_values(session_factory):
    runners = _mock_runners()
    outcome = await _orchestrator(session_factory, runners).run("forex", user_id="u1", user_tier="pro")

    assert outcome.status_code == 400
    assert outcome.body["error"].startswith("Invalid scanType. Must be one of: arbitrage, value_bets")
    assert "all" in outcome.body["error"]
    for runner in runners.values():
        runner.assert_not_awaited()


@pytest.mark.asyncio
async def test_free_tier_is_refused_without_touching_usage(session_factory):
    runners = _mock_runners()
    usage = UsageStore(session_factory)

    outcome = await _orchestrator(session_factory, runners).run("stocks", user_id="u1", user_tier="free")

    assert outcome.status_code == 403
    assert outcome.body["code"] == "TIER_LIMIT_FREE"
    assert await usage.get_usage("u1") == 0
    runners["stocks"].assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_tier_gets_the_free_quota(session_factory):
    outcome = await _orchestrator(session_factory, _mock_runners()).run("stocks", user_id="u1", user_tier="platinum")

    assert outcome.status_code == 403
    assert outcome.body["code"] == "TIER_LIMIT_FREE"


@pytest.mark.asyncio
async def test_exhausted_quota_returns_429_and_skips_scanners(session_factory):
    async with session_factory() as session:
        session.add(UserUsage(user_id="u1", date=UsageStore.today(), scans_used=100))
        await session.commit()
    runners = _mock_runners()

    outcome = await _orchestrator(session_factory, runners).run("stocks", user_id="u1", user_tier="starter")

    assert outcome.status_code == 429
    assert outcome.body["code"] == "TIER_LIMIT_REACHED"
    assert outcome.body["used"] == 100
    assert outcome.body["limit"] == 100
    runners["stocks"].assert_not_awaited()
    assert await UsageStore(session_factory).get_usage("u1") == 100


@pytest.mark.asyncio
async def test_unlimited_tier_does_not_count_usage(session_factory):
    runners = _mock_runners()
    outcome = await _orchestrator(session_factory, runners).run("stocks", user_id="u1", user_tier="enterprise")

    assert outcome.status_code == 200
    assert await UsageStore(session_factory).get_usage("u1") == 0
    runners["stocks"].assert_awaited_once()


@pytest.mark.asyncio
async def test_stock_scan_counts_usage_and_persists_normalized_rows(session_factory):
    runners = _mock_runners()
    runners["stocks"] = AsyncMock(return_value=[_stock()])

    outcome = await _orchestrator(session_factory, runners).run("stocks", user_id="u1", user_tier="starter")

    assert outcome.status_code == 200
    body = outcome.body
    assert body["success"] is True
    assert body["scanType"] == "stocks"
    assert body["count"] == 1
    assert body["message"] == "Found 1 stocks opportunities"
    assert "errors" not in body
    assert body["timestamp"].endswith("Z")

    opp = body["opportunities"][0]
    assert opp["category"] == "stock"
    assert opp["subcategory"] == "US"
    expires_at = datetime.fromisoformat(opp["expires_at"])
    assert abs((expires_at - (utcnow() + timedelta(hours=24))).total_seconds()) < 120

    assert await UsageStore(session_factory).get_usage("u1") == 1
    stored = await OpportunityStore(session_factory).get(opp["id"])
    assert stored is not None
    assert stored.title == "AAPL - BUY"


@pytest.mark.asyncio
async def test_scan_without_user_id_skips_quota(session_factory):
    runners = _mock_runners()
    outcome = await _orchestrator(session_factory, runners).run("stocks", user_id=None, user_tier="starter")

    assert outcome.status_code == 200
    runners["stocks"].assert_awaited_once()


@pytest.mark.asyncio
async def test_failing_and_slow_scanners_do_not_abort_the_rest(session_factory):
    async def slow_stocks():
        await asyncio.sleep(1)
        return [_stock()]

    runners = _mock_runners()
    runners["arbitrage"] = AsyncMock(side_effect=RuntimeError("odds feed down"))
    runners["stocks"] = slow_stocks
    runners["matched_betting"] = AsyncMock(return_value=[])
    runners["crypto"] = AsyncMock(return_value=[])
    runners["value_bets"] = AsyncMock(return_value=[])

    orchestrator = _orchestrator(session_factory, runners, scanner_timeout=0.05)
    outcome = await orchestrator.run("all", user_id="u1", user_tier="pro")

    assert outcome.status_code == 200
    errors = outcome.body["errors"]
    assert "Arbitrage scanner failed: odds feed down" in errors
    assert "Stock momentum scanner timed out after 0.05s" in errors
    assert outcome.body["count"] == 0
    assert outcome.body["message"].startswith("Found 0 all opportunities (2 error(s): ")
    for name in ("value_bets", "matched_betting", "crypto"):
        runners[name].assert_awaited_once()


@pytest.mark.asyncio
async def test_failed_scanner_keeps_other_scanners_results(session_factory):
    runners = _mock_runners()
    runners["arbitrage"] = AsyncMock(side_effect=RuntimeError("odds feed down"))
    runners["stocks"] = AsyncMock(return_value=[_stock("AAPL"), _stock("MSFT")])

    outcome = await _orchestrator(session_factory, runners).run("all", user_id="u1", user_tier="pro")

    assert outcome.status_code == 200
    assert outcome.body["count"] == 2
    assert [o["data"]["symbol"] for o in outcome.body["opportunities"]] == ["AAPL", "MSFT"]
    assert all(o["category"] == "stock" for o in outcome.body["opportunities"])
    assert outcome.body["errors"] == ["Arbitrage scanner failed: odds feed down"]
    stored = await OpportunityStore(session_factory).get(outcome.body["opportunities"][0]["id"])
    assert stored is not None


@pytest.mark.asyncio
async def test_non_string_scan_type_is_rejected(session_factory):
    runners = _mock_runners()
    orchestrator = _orchestrator(session_factory, runners)

    for bad in (5, ["all"], {"type": "all"}, True):
        outcome = await orchestrator.run(bad, user_id="u1", user_tier="pro")
        assert outcome.status_code == 400
        assert outcome.body["error"].startswith("Invalid scanType. Must be one of:")

    wrong_user = await orchestrator.run("stocks", user_id=42, user_tier="pro")
    wrong_tier = await orchestrator.run("stocks", user_id="u1", user_tier=["pro"])

    assert (wrong_user.status_code, wrong_tier.status_code) == (400, 400)
    for runner in runners.values():
        runner.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_odds_key_reports_unavailable_arbitrage(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "ODDS_API_KEY", None)
    runners = {"arbitrage": scan_orchestrator._run_arbitrage}

    outcome = await _orchestrator(session_factory, runners).run("arbitrage", user_id="u1", user_tier="pro")

    assert outcome.status_code == 200
    assert outcome.body["count"] == 0
    assert outcome.body["errors"] == ["Arbitrage scanner unavailable: ODDS_API_KEY not configured"]


@pytest.mark.asyncio
async def test_only_opportunities_at_threshold_get_ai_analysis(session_factory):
    analysis = {
        "riskAssessment": {"level": "low", "score": 3, "factors": ["Liquid market"]},
        "recommendedAction": {"action": "take", "confidence": 80, "reasoning": "Clear setup"},
        "confidenceExplanation": "Signals agree",
        "potentialPitfalls": [],
        "timing": {"urgency": "soon", "optimalWindow": "Next session"},
        "summary": "Worth a look.",
    }
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        return httpx.Response(200, json={"content": [{"type": "text", "text": json.dumps(analysis)}]})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    analyzer = OpportunityAnalyzer(api_key="test-key", http_client=http_client, min_confidence=70)
    runners = _mock_runners()
    runners["stocks"] = AsyncMock(return_value=[_stock("AAPL", 70), _stock("MSFT", 69)])

    outcome = await _orchestrator(session_factory, runners, analyzer=analyzer).run(
        "stocks", user_id="u1", user_tier="pro"
    )
    await http_client.aclose()

    by_symbol = {o["data"]["symbol"]: o for o in outcome.body["opportunities"]}
    assert "aiAnalysis" in by_symbol["AAPL"]["data"]
    assert by_symbol["AAPL"]["data"]["aiAnalysis"]["action"] == "take"
    assert "aiAnalysis" not in by_symbol["MSFT"]["data"]
    assert outcome.body["aiAnalysisCount"] == 1
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_enrichment_failure_is_not_reported_as_scan_error(session_factory):
    analyzer = OpportunityAnalyzer(api_key="test-key")
    analyzer.enrich = AsyncMock(side_effect=RuntimeError("provider exploded"))
    runners = _mock_runners()
    runners["stocks"] = AsyncMock(return_value=[_stock()])

    outcome = await _orchestrator(session_factory, runners, analyzer=analyzer).run(
        "stocks", user_id="u1", user_tier="pro"
    )

    assert outcome.status_code == 200
    assert outcome.body["count"] == 1
    assert outcome.body["aiAnalysisCount"] == 0
    assert "errors" not in outcome.body


@pytest.mark.asyncio
async def test_persistence_failure_is_reported_and_alerts_are_skipped(session_factory):
    failing_store = OpportunityStore(session_factory)
    failing_store.insert_many = AsyncMock(side_effect=RuntimeError("disk full"))
    notifier = AlertNotifier(preferences=NotificationPreferenceStore(session_factory))
    notifier.notify_realtime = AsyncMock(return_value=3)
    runners = _mock_runners()
    runners["stocks"] = AsyncMock(return_value=[_stock()])

    orchestrator = ScanOrchestrator(
        usage_store=UsageStore(session_factory),
        opportunity_store=failing_store,
        analyzer=OpportunityAnalyzer(api_key=""),
        notifier=notifier,
        scanners=runners,
    )
    outcome = await orchestrator.run("stocks", user_id="u1", user_tier="pro")

    assert outcome.status_code == 200
    assert outcome.body["errors"] == ["Failed to save opportunities: disk full"]
    assert outcome.body["alertsSent"] == 0
    notifier.notify_realtime.assert_not_awaited()


@pytest.mark.asyncio
async def test_alerts_are_sent_after_successful_persist(session_factory):
    notifier = AlertNotifier(preferences=NotificationPreferenceStore(session_factory))
    notifier.notify_realtime = AsyncMock(return_value=2)
    runners = _mock_runners()
    runners["stocks"] = AsyncMock(return_value=[_stock()])

    outcome = await _orchestrator(session_factory, runners, notifier=notifier).run(
        "stocks", user_id="u1", user_tier="pro"
    )

    assert outcome.body["alertsSent"] == 2
    sent = notifier.notify_realtime.await_args.args[0]
    assert [o.data["symbol"] for o in sent] == ["AAPL"]
