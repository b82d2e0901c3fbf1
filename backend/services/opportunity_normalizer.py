"""Map scanner-native results onto the common Opportunity record.

Each scanner reports value in its own unit; ``expected_value_unit`` records
which one so downstream consumers never have to guess from the category.
"""

from datetime import datetime, timedelta
from typing import Optional

from models.opportunity import ExpectedValueUnit, Opportunity, OpportunityCategory
from services.scanners.types import (
    ArbitrageOpportunity,
    FundingRateOpportunity,
    MatchedBetOpportunity,
    StockOpportunity,
    ValueBetOpportunity,
)
from utils.utcnow import to_naive_utc, utcnow

MATCHED_BETTING_TTL = timedelta(days=7)
STOCK_TTL = timedelta(hours=24)


def _clamp_confidence(value: float) -> int:
    return max(0, min(100, int(round(value))))


def _expiry(value: Optional[datetime]) -> Optional[datetime]:
    return to_naive_utc(value) if value is not None else None


def from_arbitrage(arb: ArbitrageOpportunity) -> Opportunity:
    legs = ", ".join(f"{s.team} @ {s.odds:.2f} ({s.bookmaker})" for s in arb.stakes)
    # Arbitrage is risk-free when all legs are placed; confidence reflects margin size.
    confidence = _clamp_confidence(70 + arb.margin * 5)
    return Opportunity(
        category=OpportunityCategory.ARBITRAGE,
        subcategory=arb.sport_title,
        title=f"{arb.event} - {arb.margin:.2f}% arbitrage",
        description=(
            f"Back every outcome for a guaranteed £{arb.guaranteed_profit:.2f} profit "
            f"on a £{arb.total_stake:.2f} stake: {legs}."
        ),
        confidence_score=confidence,
        expected_value=arb.guaranteed_profit,
        expected_value_unit=ExpectedValueUnit.CURRENCY,
        data={
            "source": "arbitrage",
            "eventId": arb.event_id,
            "sport": arb.sport,
            "homeTeam": arb.home_team,
            "awayTeam": arb.away_team,
            "margin": arb.margin,
            "totalImpliedProbability": arb.total_implied_probability,
            "totalStake": arb.total_stake,
            "guaranteedReturn": arb.guaranteed_return,
            "hoursUntilStart": arb.hours_until_start,
            "stakes": [s.model_dump() for s in arb.stakes],
        },
        expires_at=_expiry(arb.commence_time),
    )


def from_value_bet(bet: ValueBetOpportunity) -> Opportunity:
    edge = bet.model_probability - bet.implied_probability
    return Opportunity(
        category=OpportunityCategory.VALUE_BET,
        subcategory=bet.sport,
        title=f"{bet.event}: {bet.selection} @ {bet.bookmaker_odds:.2f}",
        description=(
            f"{bet.bookmaker} prices {bet.selection} at {bet.implied_probability:.1f}% "
            f"against a model estimate of {bet.model_probability:.1f}% "
            f"({edge:+.1f}% edge). Suggested stake £{bet.suggested_stake:.2f}."
        ),
        confidence_score=_clamp_confidence(bet.confidence),
        expected_value=bet.expected_value,
        expected_value_unit=ExpectedValueUnit.PERCENT,
        data={
            "source": "value_bets",
            "selection": bet.selection,
            "bookmaker": bet.bookmaker,
            "odds": bet.bookmaker_odds,
            "impliedProbability": bet.implied_probability,
            "modelProbability": bet.model_probability,
            "edge": round(edge, 2),
            "suggestedStake": bet.suggested_stake,
        },
        expires_at=_expiry(bet.commence_time),
    )


def from_matched_bet(opp: MatchedBetOpportunity, now: Optional[datetime] = None) -> Opportunity:
    promo = opp.promotion
    return Opportunity(
        category=OpportunityCategory.ARBITRAGE,
        subcategory="matched_betting",
        title=f"{promo.bookmaker}: {promo.title}",
        description=(
            f"{opp.strategy.replace('_', ' ').title()} strategy, expected profit "
            f"£{opp.expected_profit:.2f} in about {opp.time_to_complete} minutes."
        ),
        confidence_score=_clamp_confidence(opp.confidence),
        expected_value=opp.expected_profit,
        expected_value_unit=ExpectedValueUnit.CURRENCY,
        data={
            "source": "matched_betting",
            "bookmaker": promo.bookmaker,
            "promotionType": promo.type,
            "strategy": opp.strategy,
            "backStake": opp.back_stake,
            "layStake": opp.lay_stake,
            "layOdds": opp.lay_odds,
            "exchange": opp.exchange,
            "riskLevel": opp.risk_level,
            "profitRate": opp.profit_rate,
            "steps": opp.steps,
            "terms": promo.terms,
        },
        expires_at=to_naive_utc(now or utcnow()) + MATCHED_BETTING_TTL,
    )


def from_stock(stock: StockOpportunity, now: Optional[datetime] = None) -> Opportunity:
    signal_label = stock.overall_signal.replace("_", " ").upper()
    return Opportunity(
        category=OpportunityCategory.STOCK,
        subcategory=stock.market,
        title=f"{stock.symbol} - {signal_label}",
        description=f"{stock.name}: {stock.reasoning} {stock.suggested_action}",
        confidence_score=_clamp_confidence(stock.confidence),
        expected_value=stock.price_change_percent * stock.confidence / 100,
        expected_value_unit=ExpectedValueUnit.PERCENT_SCALED,
        data={
            "source": "stocks",
            "symbol": stock.symbol,
            "name": stock.name,
            "price": stock.current_price,
            "priceChange": stock.price_change,
            "priceChangePercent": stock.price_change_percent,
            "signal": stock.overall_signal,
            "signals": [s.model_dump() for s in stock.signals],
            "technicals": stock.technicals,
            "volumeRatio": stock.volume_ratio,
            "fiftyTwoWeekPosition": stock.fifty_two_week_position,
            "suggestedAction": stock.suggested_action,
        },
        expires_at=to_naive_utc(now or utcnow()) + STOCK_TTL,
    )


def from_funding_rate(rate: FundingRateOpportunity) -> Opportunity:
    side = "Short perp / long spot" if rate.direction == "long" else "Long perp / short spot"
    return Opportunity(
        category=OpportunityCategory.CRYPTO,
        subcategory="funding_rate",
        title=f"{rate.asset} funding {rate.annualized_rate:+.1f}% APR",
        description=(
            f"{rate.symbol} funding is {rate.current_rate:+.4f}% per 8h. "
            f"{side} to collect funding. Suggested size ${rate.suggested_size:,.0f} "
            f"({rate.risk_level} risk)."
        ),
        confidence_score=_clamp_confidence(rate.confidence),
        expected_value=rate.annualized_rate * rate.confidence / 100,
        expected_value_unit=ExpectedValueUnit.PERCENT_SCALED,
        data={
            "source": "crypto",
            "symbol": rate.symbol,
            "asset": rate.asset,
            "fundingRate": rate.current_rate,
            "annualizedRate": rate.annualized_rate,
            "direction": rate.direction,
            "markPrice": rate.mark_price,
            "riskLevel": rate.risk_level,
            "suggestedSize": rate.suggested_size,
        },
        expires_at=_expiry(rate.next_funding_time),
    )


_NORMALIZERS = {
    "arbitrage": from_arbitrage,
    "value_bets": from_value_bet,
    "matched_betting": from_matched_bet,
    "stocks": from_stock,
    "crypto": from_funding_rate,
}


def normalize(scanner: str, results: list) -> list[Opportunity]:
    """Normalize a scanner's result list; ``scanner`` is the orchestrator's source key."""
    try:
        mapper = _NORMALIZERS[scanner]
    except KeyError:
        raise ValueError(f"No normalizer for scanner '{scanner}'") from None
    return [mapper(item) for item in results]
