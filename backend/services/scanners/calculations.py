"""Betting math shared by the odds-based scanners (decimal odds throughout)."""

from datetime import datetime
from typing import Optional

from utils.utcnow import to_naive_utc, utcnow


def odds_to_implied_probability(decimal_odds: float) -> float:
    """2.0 -> 0.5. Odds at or below 1.0 carry no information and map to 1."""
    if decimal_odds <= 1:
        return 1.0
    return 1.0 / decimal_odds


def implied_probability_to_odds(probability: float) -> float:
    if probability <= 0 or probability >= 1:
        raise ValueError("Probability must be between 0 and 1")
    return 1.0 / probability


def total_implied_probability(odds: list[float]) -> float:
    """Sum of implied probabilities; below 1.0 means an arbitrage exists."""
    return sum(odds_to_implied_probability(o) for o in odds)


def arbitrage_margin(odds: list[float]) -> float:
    """Guaranteed profit percentage, (1 - sum(1/odds)) * 100, or 0 if none."""
    total = total_implied_probability(odds)
    if total >= 1:
        return 0.0
    return (1 - total) * 100


def arbitrage_stakes(odds: list[float], total_stake: float) -> tuple[list[float], float, float]:
    """Split ``total_stake`` so every outcome returns the same amount.

    Returns (stakes, profit, return_amount), each rounded to 2 dp.
    """
    total = total_implied_probability(odds)
    if total >= 1:
        raise ValueError("No arbitrage opportunity exists")

    stakes = [(total_stake / total) * odds_to_implied_probability(o) for o in odds]
    return_amount = stakes[0] * odds[0]
    profit = return_amount - total_stake
    return [round(s, 2) for s in stakes], round(profit, 2), round(return_amount, 2)


def kelly_fraction(win_probability: float, decimal_odds: float) -> float:
    """f* = (bp - q) / b, never negative."""
    b = decimal_odds - 1
    if b <= 0:
        return 0.0
    p = win_probability
    q = 1 - p
    return max(0.0, (b * p - q) / b)


def kelly_stake(
    win_probability: float,
    decimal_odds: float,
    bankroll: float,
    fraction: float = 0.25,
) -> float:
    """Fractional Kelly stake capped at 5% of bankroll."""
    suggested = bankroll * kelly_fraction(win_probability, decimal_odds) * fraction
    return min(suggested, bankroll * 0.05)


def expected_value(probability: float, decimal_odds: float, stake: float = 1.0) -> float:
    return probability * stake * (decimal_odds - 1) - (1 - probability) * stake


def expected_value_percent(probability: float, decimal_odds: float) -> float:
    return expected_value(probability, decimal_odds, 1.0) * 100


def hours_until(when: datetime, now: Optional[datetime] = None) -> float:
    return (to_naive_utc(when) - (now or utcnow())).total_seconds() / 3600
