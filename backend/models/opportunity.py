import uuid

from pydantic import BaseModel, Field
from typing import Any, Optional
from datetime import datetime
from enum import Enum

from utils.utcnow import utcnow


class OpportunityCategory(str, Enum):
    ARBITRAGE = "arbitrage"
    VALUE_BET = "value_bet"
    STOCK = "stock"
    CRYPTO = "crypto"


class OpportunityStatus(str, Enum):
    """Lifecycle status. EXPIRED is derived at read time and never stored."""

    OPEN = "open"
    TAKEN = "taken"
    DISMISSED = "dismissed"
    EXPIRED = "expired"


class ExpectedValueUnit(str, Enum):
    """Unit of ``expected_value``; scanners do not agree on one."""

    CURRENCY = "currency"  # absolute profit in the stake currency
    PERCENT = "percent"  # expected return as a percentage
    PERCENT_SCALED = "percent_scaled"  # percentage weighted by confidence/100


class ScanType(str, Enum):
    ARBITRAGE = "arbitrage"
    VALUE_BETS = "value_bets"
    MATCHED_BETTING = "matched_betting"
    BETTING = "betting"  # all three betting scanners
    STOCKS = "stocks"
    CRYPTO = "crypto"
    ALL = "all"


# Status transitions a user may request; all are one-way out of OPEN.
ALLOWED_STATUS_TRANSITIONS = {
    OpportunityStatus.OPEN: {OpportunityStatus.TAKEN, OpportunityStatus.DISMISSED},
}


class AIAnalysis(BaseModel):
    """Inline AI judgment attached to ``data.aiAnalysis``."""

    risk_level: str = "medium"  # low, medium, high
    risk_score: int = Field(default=5, ge=1, le=10)
    risk_factors: list[str] = []
    action: str = "monitor"  # take, pass, monitor
    action_confidence: int = Field(default=50, ge=0, le=100)
    reasoning: str = "Unable to determine"
    confidence_explanation: str = "Analysis incomplete"
    potential_pitfalls: list[str] = []
    urgency: str = "flexible"  # immediate, soon, flexible
    optimal_window: str = "Review before acting"
    summary: str = "Analysis could not be completed"
    model: Optional[str] = None
    analyzed_at: datetime = Field(default_factory=utcnow)


class Opportunity(BaseModel):
    """A normalized opportunity as produced by a scan and returned to clients."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    category: OpportunityCategory
    subcategory: Optional[str] = None
    title: str
    description: Optional[str] = None
    confidence_score: int = Field(default=0, ge=0, le=100)
    expected_value: float = 0.0
    expected_value_unit: ExpectedValueUnit = ExpectedValueUnit.CURRENCY
    data: dict[str, Any] = {}
    expires_at: Optional[datetime] = None
    status: OpportunityStatus = OpportunityStatus.OPEN
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def effective_status(self, now: Optional[datetime] = None) -> OpportunityStatus:
        """Stored status, or EXPIRED for open rows past ``expires_at``."""
        if (
            self.status == OpportunityStatus.OPEN
            and self.expires_at is not None
            and self.expires_at < (now or utcnow())
        ):
            return OpportunityStatus.EXPIRED
        return self.status

    @property
    def has_ai_analysis(self) -> bool:
        return "aiAnalysis" in self.data

    def attach_ai_analysis(self, analysis: AIAnalysis) -> None:
        self.data = {**self.data, "aiAnalysis": analysis.model_dump(mode="json")}

    def to_response(self) -> dict:
        payload = self.model_dump(mode="json")
        payload["status"] = self.effective_status().value
        return payload


class OpportunityFilter(BaseModel):
    """Filter for listing stored opportunities"""

    category: Optional[OpportunityCategory] = None
    status: Optional[OpportunityStatus] = None
    user_id: Optional[str] = None
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)
