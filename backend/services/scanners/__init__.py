"""Strategy plugins that discover opportunities from third-party market data."""

from services.scanners.arbitrage import ArbitrageScanner
from services.scanners.funding_rates import FundingRateScanner
from services.scanners.matched_betting import MatchedBettingScanner
from services.scanners.odds_api import OddsApiClient
from services.scanners.stock_momentum import StockMomentumScanner
from services.scanners.value_bets import ValueBetScanner

__all__ = [
    "ArbitrageScanner",
    "FundingRateScanner",
    "MatchedBettingScanner",
    "OddsApiClient",
    "StockMomentumScanner",
    "ValueBetScanner",
]
