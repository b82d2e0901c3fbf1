"""Result shapes produced by the scanner plugins before normalization."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from utils.utcnow import utcnow


class StakeAllocation(BaseModel):
    outcome: str  # home, away, draw
    team: str
    bookmaker: str
    odds: float
    stake: float
    potential_return: float


class ArbitrageOpportunity(BaseModel):
    id: str
    event_id: str
    event: str
    home_team: str
    away_team: str
    sport: str
    sport_title: str
    commence_time: datetime
    margin: float
    total_implied_probability: float
    stakes: list[StakeAllocation]
    total_stake: float
    guaranteed_profit: float
    guaranteed_return: float
    hours_until_start: float
    created_at: datetime = Field(default_factory=utcnow)


class ValueBetOpportunity(BaseModel):
    id: str
    event: str
    selection: str
    bookmaker: str
    bookmaker_odds: float
    implied_probability: float  # percent
    model_probability: float  # percent
    expected_value: float  # percent
    confidence: int
    suggested_stake: float
    sport: str
    commence_time: datetime


class Promotion(BaseModel):
    """A bookmaker offer that can be extracted with matched betting."""

    id: str
    bookmaker: str
    bookmaker_key: str
    type: str  # signup_bonus, free_bet, risk_free, enhanced_odds, acca_insurance, reload_bonus
    title: str
    description: str = ""
    value: float
    expected_value: float
    min_odds: Optional[float] = None
    min_deposit: Optional[float] = None
    wager_requirement: Optional[float] = None
    qualifying_loss: Optional[float] = None
    is_new_customer: bool = False
    expires_at: Optional[datetime] = None
    terms: list[str] = []


class BookmakerAccount(BaseModel):
    bookmaker_key: str
    signed_up: bool = False
    claimed_promotions: list[str] = []


class MatchedBetOpportunity(BaseModel):
    id: str
    promotion: Promotion
    strategy: str  # matched_bet, risk_free, arb_unlock
    expected_profit: float
    profit_rate: float
    confidence: int
    steps: list[str]
    back_stake: float
    lay_stake: float
    lay_odds: float
    lay_commission: float
    exchange: str = "Betfair Exchange"
    risk_level: str  # low, medium, high
    time_to_complete: int  # minutes
    notes: str = ""


class MomentumSignal(BaseModel):
    # rsi_oversold, rsi_overbought, macd_bullish, macd_bearish, golden_cross,
    # death_cross, bollinger_squeeze, breakout_high, breakout_low, volume_spike
    type: str
    strength: float  # 0..100
    value: Optional[float] = None


class StockOpportunity(BaseModel):
    id: str
    symbol: str
    name: str
    market: str  # UK, US
    current_price: float
    price_change: float
    price_change_percent: float
    signals: list[MomentumSignal]
    overall_signal: str  # strong_buy, buy, neutral, sell, strong_sell
    confidence: int
    technicals: dict[str, Optional[float]]
    volume_ratio: float
    fifty_two_week_position: float  # 0 = at low, 100 = at high
    reasoning: str
    suggested_action: str
    created_at: datetime = Field(default_factory=utcnow)


class FundingRateOpportunity(BaseModel):
    id: str
    symbol: str
    asset: str
    current_rate: float  # percent per 8h funding interval
    annualized_rate: float  # percent, linear (rate * 3 * 365)
    direction: str  # long, short
    mark_price: float
    next_funding_time: datetime
    confidence: int
    risk_level: str  # low, medium, high
    suggested_size: float
    created_at: datetime = Field(default_factory=utcnow)
