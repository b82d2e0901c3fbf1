"""Perpetual futures funding-rate opportunities from Binance.

Funding is paid every 8 hours; a positive rate means longs pay shorts.
"""

import uuid
from typing import Optional

from config import settings
from services.scanners.market_data import BinanceFuturesClient
from services.scanners.types import FundingRateOpportunity
from utils.logger import get_logger
from utils.utcnow import utcfromtimestamp_ms, utcnow

logger = get_logger("scanner.crypto")

RISK_SIZE_MULTIPLIER = {"low": 0.1, "medium": 0.05, "high": 0.02}


def annualize_rate(rate_8h: float) -> float:
    """Linear annualization: three funding intervals a day."""
    return rate_8h * 3 * 365


def assess_risk_level(annualized: float) -> str:
    magnitude = abs(annualized)
    if magnitude > 200:
        return "high"
    if magnitude > 100:
        return "medium"
    return "low"


def funding_confidence(annualized: float, hours_to_funding: float) -> int:
    confidence = 60
    magnitude = abs(annualized)
    if magnitude >= 100:
        confidence += 15
    elif magnitude >= 75:
        confidence += 10
    if hours_to_funding <= 2:
        confidence += 15
    elif hours_to_funding <= 4:
        confidence += 10
    return min(100, confidence)


class FundingRateScanner:
    def __init__(
        self,
        client: Optional[BinanceFuturesClient] = None,
        min_annualized_rate: float = 50.0,
        symbols: Optional[list[str]] = None,
        top_pairs_count: int = 20,
        bankroll: Optional[float] = None,
    ):
        self.client = client or BinanceFuturesClient()
        self.min_annualized_rate = min_annualized_rate
        self.symbols = symbols or []
        self.top_pairs_count = top_pairs_count
        self.bankroll = bankroll if bankroll is not None else settings.CRYPTO_BANKROLL

    async def scan(self) -> list[FundingRateOpportunity]:
        rates = await self.client.get_funding_rates()
        wanted = set(self.symbols) if self.symbols else set(await self.client.get_top_pairs(self.top_pairs_count))
        now = utcnow()

        opportunities = []
        for rate in rates:
            if rate.get("symbol") not in wanted:
                continue
            current = float(rate.get("lastFundingRate") or 0) * 100
            annualized = annualize_rate(current)
            if abs(annualized) < self.min_annualized_rate:
                continue

            next_funding = utcfromtimestamp_ms(rate.get("nextFundingTime") or 0)
            hours_to_funding = (next_funding - now).total_seconds() / 3600
            risk = assess_risk_level(annualized)
            opportunities.append(
                FundingRateOpportunity(
                    id=str(uuid.uuid4()),
                    symbol=rate["symbol"],
                    asset=rate["symbol"].replace("USDT", ""),
                    current_rate=current,
                    annualized_rate=annualized,
                    direction="long" if current > 0 else "short",
                    mark_price=float(rate.get("markPrice") or 0),
                    next_funding_time=next_funding,
                    confidence=funding_confidence(annualized, hours_to_funding),
                    risk_level=risk,
                    suggested_size=round(self.bankroll * RISK_SIZE_MULTIPLIER[risk]),
                )
            )

        opportunities.sort(key=lambda o: abs(o.annualized_rate), reverse=True)
        logger.info("Funding rate scan complete", checked=len(wanted), found=len(opportunities))
        return opportunities

    async def get_top_opportunities(self, limit: int = 5) -> list[FundingRateOpportunity]:
        return (await self.scan())[:limit]
