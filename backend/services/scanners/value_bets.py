"""Value bets: outcomes where the model probability beats the bookmaker's price.

The model is a long-run league baseline (home 46%, draw 27%, away 27%);
form and goal adjustments apply only when team stats are supplied.
"""

import uuid
from typing import Optional

from services.scanners.calculations import (
    expected_value_percent,
    hours_until,
    kelly_stake,
    odds_to_implied_probability,
)
from services.scanners.odds_api import OddsApiClient
from services.scanners.types import ValueBetOpportunity
from utils.logger import get_logger
from utils.utcnow import parse_iso_datetime

logger = get_logger("scanner.value_bets")

DEFAULT_SPORTS = ["soccer_epl"]


def model_probabilities(home_stats: Optional[dict] = None, away_stats: Optional[dict] = None) -> dict:
    home, draw, away = 0.46, 0.27, 0.27

    if home_stats and away_stats:
        home_form = (home_stats["recent_wins"] * 3 + home_stats["recent_draws"]) / 15
        away_form = (away_stats["recent_wins"] * 3 + away_stats["recent_draws"]) / 15
        form_diff = home_form - away_form
        home += form_diff * 0.15
        away -= form_diff * 0.15

        home_attack = home_stats["avg_goals_scored"] / 1.5
        away_attack = away_stats["avg_goals_scored"] / 1.5
        home_defense = 1.5 / home_stats["avg_goals_conceded"]
        away_defense = 1.5 / away_stats["avg_goals_conceded"]
        strength = (home_attack * home_defense) / (away_attack * away_defense)
        home *= min(1.3, max(0.7, strength))

    total = home + draw + away
    return {"home": home / total, "draw": draw / total, "away": away / total}


def value_confidence(edge: float, odds_count: int, hours_until_start: float) -> int:
    confidence = 50
    if edge >= 10:
        confidence += 25
    elif edge >= 7:
        confidence += 20
    elif edge >= 5:
        confidence += 15
    elif edge >= 3:
        confidence += 10

    if odds_count >= 5:
        confidence += 10
    elif odds_count >= 3:
        confidence += 5

    if hours_until_start <= 6:
        confidence += 10
    elif hours_until_start <= 24:
        confidence += 5

    return min(100, max(0, confidence))


class ValueBetScanner:
    def __init__(
        self,
        odds_client: OddsApiClient,
        min_edge: float = 3.0,
        min_confidence: int = 60,
        max_hours_ahead: float = 48,
        bankroll: float = 1000.0,
        kelly_fraction: float = 0.25,
    ):
        self.odds_client = odds_client
        self.min_edge = min_edge
        self.min_confidence = min_confidence
        self.max_hours_ahead = max_hours_ahead
        self.bankroll = bankroll
        self.kelly_fraction = kelly_fraction

    def find_value_bets(self, event: dict) -> list[ValueBetOpportunity]:
        bookmakers = event.get("bookmakers") or []
        if not bookmakers:
            return []

        commence_time = parse_iso_datetime(event.get("commence_time"))
        if commence_time is None:
            return []
        hours_ahead = hours_until(commence_time)
        if hours_ahead < 0 or hours_ahead > self.max_hours_ahead:
            return []

        probs = model_probabilities()
        home, away = event.get("home_team"), event.get("away_team")

        # outcome name -> [(price, bookmaker title), ...]
        prices: dict[str, list[tuple[float, str]]] = {}
        for bookmaker in bookmakers:
            market = next((m for m in bookmaker.get("markets") or [] if m.get("key") == "h2h"), None)
            if market is None:
                continue
            for outcome in market.get("outcomes") or []:
                prices.setdefault(outcome.get("name"), []).append(
                    (float(outcome.get("price") or 0), bookmaker.get("title", bookmaker.get("key", "")))
                )

        bets = []
        for name, quotes in prices.items():
            best_odds, best_bookmaker = max(quotes, key=lambda q: q[0])
            implied = odds_to_implied_probability(best_odds)
            if name == home:
                model = probs["home"]
            elif name == away:
                model = probs["away"]
            else:
                model = probs["draw"]

            edge = (model - implied) * 100
            if edge < self.min_edge:
                continue
            confidence = value_confidence(edge, len(quotes), hours_ahead)
            if confidence < self.min_confidence:
                continue

            stake = kelly_stake(model, best_odds, self.bankroll, self.kelly_fraction)
            bets.append(
                ValueBetOpportunity(
                    id=str(uuid.uuid4()),
                    event=f"{home} vs {away}",
                    selection=name,
                    bookmaker=best_bookmaker,
                    bookmaker_odds=best_odds,
                    implied_probability=implied * 100,
                    model_probability=model * 100,
                    expected_value=expected_value_percent(model, best_odds),
                    confidence=confidence,
                    suggested_stake=round(stake, 2),
                    sport=event.get("sport_key", ""),
                    commence_time=commence_time,
                )
            )
        return bets

    async def scan(self, sports: Optional[list[str]] = None) -> list[ValueBetOpportunity]:
        sports_to_scan = sports or list(DEFAULT_SPORTS)
        bets: list[ValueBetOpportunity] = []
        last_error: Optional[Exception] = None
        failures = 0

        for sport in sports_to_scan:
            try:
                events = await self.odds_client.get_odds(sport)
            except Exception as exc:
                failures += 1
                last_error = exc
                logger.warning("Value bet sport scan failed", sport=sport, error=str(exc))
                continue
            for event in events:
                bets.extend(self.find_value_bets(event))

        if failures == len(sports_to_scan) and last_error is not None:
            raise last_error

        bets.sort(key=lambda b: b.expected_value, reverse=True)
        return bets
