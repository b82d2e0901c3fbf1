import uuid
from typing import Optional

from services.scanners.calculations import (
    arbitrage_margin,
    arbitrage_stakes,
    hours_until,
    odds_to_implied_probability,
)
from services.scanners.odds_api import OddsApiClient
from services.scanners.types import ArbitrageOpportunity, StakeAllocation
from utils.logger import get_logger
from utils.utcnow import parse_iso_datetime

logger = get_logger("scanner.arbitrage")

DEFAULT_SPORTS = ["soccer_epl", "soccer_uefa_champs_league"]


def best_odds_per_outcome(event: dict) -> list[dict]:
    """Highest price per outcome name across every bookmaker's h2h market."""
    best: dict[str, dict] = {}
    home, away = event.get("home_team"), event.get("away_team")
    for bookmaker in event.get("bookmakers") or []:
        market = next((m for m in bookmaker.get("markets") or [] if m.get("key") == "h2h"), None)
        if market is None:
            continue
        for outcome in market.get("outcomes") or []:
            name = outcome.get("name")
            price = float(outcome.get("price") or 0)
            existing = best.get(name)
            if existing is None or price > existing["odds"]:
                best[name] = {
                    "outcome": "home" if name == home else "away" if name == away else "draw",
                    "team": name,
                    "odds": price,
                    "bookmaker": bookmaker.get("title", bookmaker.get("key", "")),
                    "implied_probability": odds_to_implied_probability(price),
                }
    return list(best.values())


class ArbitrageScanner:
    """Finds events whose best prices across bookmakers sum below 100%."""

    def __init__(
        self,
        odds_client: OddsApiClient,
        min_margin: float = 1.0,
        max_hours_ahead: float = 48,
        total_stake: float = 100.0,
        sports: Optional[list[str]] = None,
    ):
        self.odds_client = odds_client
        self.min_margin = min_margin
        self.max_hours_ahead = max_hours_ahead
        self.total_stake = total_stake
        self.sports = sports or list(DEFAULT_SPORTS)

    def analyze_event(self, event: dict) -> Optional[ArbitrageOpportunity]:
        best = best_odds_per_outcome(event)
        if len(best) < 2:
            return None

        odds = [o["odds"] for o in best]
        margin = arbitrage_margin(odds)
        if margin <= 0 or margin < self.min_margin:
            return None

        commence_time = parse_iso_datetime(event.get("commence_time"))
        if commence_time is None:
            return None
        hours_ahead = hours_until(commence_time)
        if hours_ahead < 0 or hours_ahead > self.max_hours_ahead:
            return None

        stakes, profit, return_amount = arbitrage_stakes(odds, self.total_stake)
        allocations = [
            StakeAllocation(
                outcome=o["outcome"],
                team=o["team"],
                bookmaker=o["bookmaker"],
                odds=o["odds"],
                stake=stakes[i],
                potential_return=stakes[i] * o["odds"],
            )
            for i, o in enumerate(best)
        ]

        return ArbitrageOpportunity(
            id=str(uuid.uuid4()),
            event_id=str(event.get("id")),
            event=f"{event.get('home_team')} vs {event.get('away_team')}",
            home_team=event.get("home_team", ""),
            away_team=event.get("away_team", ""),
            sport=event.get("sport_key", ""),
            sport_title=event.get("sport_title") or event.get("sport_key", ""),
            commence_time=commence_time,
            margin=margin,
            total_implied_probability=sum(o["implied_probability"] for o in best),
            stakes=allocations,
            total_stake=self.total_stake,
            guaranteed_profit=profit,
            guaranteed_return=return_amount,
            hours_until_start=hours_ahead,
        )

    async def scan(self, sports: Optional[list[str]] = None) -> list[ArbitrageOpportunity]:
        """Scan each sport; a failing sport is logged and skipped unless all fail."""
        sports_to_scan = sports or self.sports
        opportunities: list[ArbitrageOpportunity] = []
        last_error: Optional[Exception] = None
        failures = 0

        for sport in sports_to_scan:
            try:
                events = await self.odds_client.get_odds(sport)
            except Exception as exc:
                failures += 1
                last_error = exc
                logger.warning("Arbitrage sport scan failed", sport=sport, error=str(exc))
                continue
            for event in events:
                opp = self.analyze_event(event)
                if opp is not None:
                    opportunities.append(opp)

        if sports_to_scan and failures == len(sports_to_scan) and last_error is not None:
            raise last_error

        opportunities.sort(key=lambda o: o.margin, reverse=True)
        logger.info("Arbitrage scan complete", sports=len(sports_to_scan), found=len(opportunities))
        return opportunities
