import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.scanners import calculations
from services.scanners.arbitrage import ArbitrageScanner, best_odds_per_outcome
from services.scanners.matched_betting import (
    MatchedBettingScanner,
    calculate_lay_stake,
    promotion_catalogue,
)
from services.scanners.odds_api import OddsApiClient
from services.scanners.types import BookmakerAccount
from services.scanners.value_bets import ValueBetScanner, model_probabilities, value_confidence
from utils.utcnow import isoformat_z, utcnow


def _event(home_price, away_price, draw_price=None, hours_ahead=6, second_book_home=None):
    def outcomes(home, away, draw):
        items = [{"name": "Arsenal", "price": home}, {"name": "Chelsea", "price": away}]
        if draw is not None:
            items.append({"name": "Draw", "price": draw})
        return [{"key": "h2h", "outcomes": items}]

    bookmakers = [{"key": "bet365", "title": "Bet365", "markets": outcomes(home_price, away_price, draw_price)}]
    if second_book_home is not None:
        bookmakers.append(
            {"key": "betfair", "title": "Betfair", "markets": outcomes(second_book_home, 1.01, draw_price)}
        )
    return {
        "id": "evt-1",
        "sport_key": "soccer_epl",
        "sport_title": "EPL",
        "home_team": "Arsenal",
        "away_team": "Chelsea",
        "commence_time": isoformat_z(utcnow() + timedelta(hours=hours_ahead)),
        "bookmakers": bookmakers,
    }


# ---------------------------------------------------------------------------
# Betting math
# ---------------------------------------------------------------------------


def test_arbitrage_margin_and_equal_returns():
    odds = [2.1, 2.1]

    margin = calculations.arbitrage_margin(odds)
    stakes, profit, returned = calculations.arbitrage_stakes(odds, 100)

    assert margin == pytest.approx((1 - 2 / 2.1) * 100)
    assert stakes == [50.0, 50.0]
    assert returned == pytest.approx(105.0)
    assert profit == pytest.approx(5.0)


def test_no_arbitrage_when_book_is_over_round():
    assert calculations.arbitrage_margin([1.9, 1.9]) == 0.0
    with pytest.raises(ValueError):
        calculations.arbitrage_stakes([1.9, 1.9], 100)


def test_kelly_stake_is_capped_at_five_percent():
    assert calculations.kelly_fraction(0.5, 2.0) == 0.0
    assert calculations.kelly_stake(0.9, 3.0, 1000, fraction=1.0) == pytest.approx(50.0)


def test_odds_and_probability_conversions():
    assert calculations.odds_to_implied_probability(4.0) == 0.25
    assert calculations.odds_to_implied_probability(1.0) == 1.0
    assert calculations.implied_probability_to_odds(0.5) == 2.0
    with pytest.raises(ValueError):
        calculations.implied_probability_to_odds(1.0)


# ---------------------------------------------------------------------------
# Arbitrage scanner
# ---------------------------------------------------------------------------


def test_best_odds_pick_highest_price_per_outcome():
    best = best_odds_per_outcome(_event(2.0, 2.0, second_book_home=2.4))
    by_team = {b["team"]: b for b in best}

    assert by_team["Arsenal"]["odds"] == 2.4
    assert by_team["Arsenal"]["bookmaker"] == "Betfair"
    assert by_team["Arsenal"]["outcome"] == "home"


def test_analyze_event_finds_cross_book_arbitrage():
    scanner = ArbitrageScanner(odds_client=AsyncMock(), min_margin=1.0)

    opp = scanner.analyze_event(_event(2.0, 2.2, second_book_home=2.3))

    assert opp is not None
    assert opp.margin == pytest.approx((1 - (1 / 2.3 + 1 / 2.2)) * 100)
    assert opp.sport_title == "EPL"
    assert len(opp.stakes) == 2
    assert sum(s.stake for s in opp.stakes) == pytest.approx(100.0, abs=0.02)


def test_analyze_event_skips_started_or_distant_events():
    scanner = ArbitrageScanner(odds_client=AsyncMock(), max_hours_ahead=48)

    assert scanner.analyze_event(_event(2.3, 2.2, hours_ahead=-1)) is None
    assert scanner.analyze_event(_event(2.3, 2.2, hours_ahead=72)) is None
    assert scanner.analyze_event(_event(1.9, 1.9)) is None


@pytest.mark.asyncio
async def test_arbitrage_scan_skips_failed_sport_and_sorts_by_margin():
    client = AsyncMock()
    client.get_odds = AsyncMock(
        side_effect=[RuntimeError("quota"), [_event(2.1, 2.1), _event(2.3, 2.2)]]
    )
    scanner = ArbitrageScanner(odds_client=client, sports=["soccer_fa_cup", "soccer_epl"])

    found = await scanner.scan()

    assert len(found) == 2
    assert found[0].margin > found[1].margin


@pytest.mark.asyncio
async def test_arbitrage_scan_raises_when_every_sport_fails():
    client = AsyncMock()
    client.get_odds = AsyncMock(side_effect=RuntimeError("unauthorized"))

    with pytest.raises(RuntimeError, match="unauthorized"):
        await ArbitrageScanner(odds_client=client, sports=["soccer_epl"]).scan()


# ---------------------------------------------------------------------------
# Value bets
# ---------------------------------------------------------------------------


def test_baseline_model_probabilities_sum_to_one():
    probs = model_probabilities()

    assert sum(probs.values()) == pytest.approx(1.0)
    assert probs["home"] == pytest.approx(0.46)


def test_value_confidence_rewards_edge_depth_and_proximity():
    assert value_confidence(2.0, 1, 30) == 50
    assert value_confidence(10.0, 5, 3) == 95


def test_find_value_bets_flags_underpriced_away_win():
    scanner = ValueBetScanner(odds_client=AsyncMock(), min_edge=3.0, min_confidence=60)

    # Away at 5.0 implies 20% against a 27% baseline.
    bets = scanner.find_value_bets(_event(1.5, 5.0, draw_price=3.0, hours_ahead=4))

    assert [b.selection for b in bets] == ["Chelsea"]
    bet = bets[0]
    assert bet.implied_probability == pytest.approx(20.0)
    assert bet.model_probability == pytest.approx(27.0)
    assert bet.expected_value == pytest.approx((0.27 * 4 - 0.73) * 100)
    assert bet.confidence >= 60
    assert bet.suggested_stake > 0


# ---------------------------------------------------------------------------
# Matched betting
# ---------------------------------------------------------------------------


def test_lay_stake_balances_both_outcomes():
    lay = calculate_lay_stake(10, 2.0, 2.02, commission=0.02)

    assert lay["lay_stake"] == pytest.approx(10 * 2.0 / 2.0, abs=0.01)
    assert lay["profit_if_back_wins"] == pytest.approx(lay["profit_if_lay_wins"], abs=0.05)


def test_new_customer_sees_only_signup_offers():
    promos = MatchedBettingScanner().available_promotions()

    assert promos
    assert all(p.is_new_customer for p in promos)


def test_signed_up_customer_gets_reloads_but_not_signup():
    accounts = [BookmakerAccount(bookmaker_key="bet365", signed_up=True)]
    promos = MatchedBettingScanner(accounts=accounts).available_promotions()
    ids = {p.id for p in promos}

    assert "bet365-signup" not in ids
    assert "bet365-acca-insurance" in ids


def test_claimed_promotions_are_skipped():
    accounts = [BookmakerAccount(bookmaker_key="betfair", claimed_promotions=["betfair-signup"])]
    ids = {p.id for p in MatchedBettingScanner(accounts=accounts).available_promotions()}

    assert "betfair-signup" not in ids


@pytest.mark.asyncio
async def test_matched_betting_scan_sorted_by_expected_profit():
    found = await MatchedBettingScanner().scan()
    profits = [o.expected_profit for o in found]

    assert profits == sorted(profits, reverse=True)
    assert {o.promotion.id for o in found} <= {p.id for p in promotion_catalogue()}


# ---------------------------------------------------------------------------
# Odds API client
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_odds_client_tracks_quota_and_treats_404_as_empty():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["apiKey"] == "odds-key"
        assert request.url.params["oddsFormat"] == "decimal"
        if "soccer_epl" in request.url.path:
            return httpx.Response(
                200, json=[{"id": "e1"}], headers={"x-requests-used": "12", "x-requests-remaining": "488"}
            )
        return httpx.Response(404, json={"message": "Unknown sport"})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = OddsApiClient("odds-key", base_url="https://odds.test/v4", http_client=http_client)

    assert await client.get_odds("soccer_epl") == [{"id": "e1"}]
    assert client.quota_status() == {"used": 12, "remaining": 488}
    assert await client.get_odds("cricket_ipl") == []
    await client.close()


def test_odds_client_requires_key():
    with pytest.raises(ValueError):
        OddsApiClient("")
