"""Scan orchestration behind POST /api/scanner/run.

One invocation: quota gate, concurrent scanner fan-out with per-scanner
isolation, normalization, AI enrichment, persistence, alert fan-out. Scanner
and persistence failures are reported in ``errors``; enrichment and alert
failures are only logged.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from config import settings
from models.opportunity import Opportunity, ScanType
from services.ai.opportunity_analyzer import OpportunityAnalyzer
from services.notifier import AlertNotifier
from services.opportunity_normalizer import normalize
from services.scanners import (
    ArbitrageScanner,
    FundingRateScanner,
    MatchedBettingScanner,
    OddsApiClient,
    StockMomentumScanner,
    ValueBetScanner,
)
from services.stores import OpportunityStore, UsageStore
from utils.logger import scanner_logger as logger
from utils.utcnow import isoformat_z, utcnow

# Daily scan quota per subscription tier; None means unlimited.
TIER_LIMITS: dict[str, Optional[int]] = {
    "free": 0,
    "starter": 100,
    "pro": 500,
    "enterprise": None,
    "unlimited": None,
}

BETTING_SCANNERS = ("arbitrage", "value_bets", "matched_betting")

SCAN_SELECTION: dict[ScanType, tuple[str, ...]] = {
    ScanType.ARBITRAGE: ("arbitrage",),
    ScanType.VALUE_BETS: ("value_bets",),
    ScanType.MATCHED_BETTING: ("matched_betting",),
    ScanType.BETTING: BETTING_SCANNERS,
    ScanType.STOCKS: ("stocks",),
    ScanType.CRYPTO: ("crypto",),
    ScanType.ALL: BETTING_SCANNERS + ("stocks", "crypto"),
}

SCANNER_LABELS = {
    "arbitrage": "Arbitrage",
    "value_bets": "Value bet",
    "matched_betting": "Matched betting",
    "stocks": "Stock momentum",
    "crypto": "Crypto funding rate",
}

VALID_SCAN_TYPES = [t.value for t in ScanType]


class ScannerUnavailable(Exception):
    """A scanner cannot run because required configuration is missing."""


ScannerRunner = Callable[[], Awaitable[list]]


async def _run_arbitrage() -> list:
    if not settings.ODDS_API_KEY:
        raise ScannerUnavailable("Arbitrage scanner unavailable: ODDS_API_KEY not configured")
    client = OddsApiClient(settings.ODDS_API_KEY)
    try:
        return await ArbitrageScanner(client).scan()
    finally:
        await client.close()


async def _run_value_bets() -> list:
    if not settings.ODDS_API_KEY:
        raise ScannerUnavailable("Value bet scanner unavailable: ODDS_API_KEY not configured")
    client = OddsApiClient(settings.ODDS_API_KEY)
    try:
        return await ValueBetScanner(client).scan()
    finally:
        await client.close()


async def _run_matched_betting() -> list:
    return await MatchedBettingScanner().scan()


async def _run_stocks() -> list:
    scanner = StockMomentumScanner()
    try:
        return await scanner.get_top_opportunities(limit=settings.STOCK_SCAN_LIMIT)
    finally:
        await scanner.client.close()


async def _run_crypto() -> list:
    scanner = FundingRateScanner()
    try:
        return await scanner.get_top_opportunities(limit=settings.CRYPTO_SCAN_LIMIT)
    finally:
        await scanner.client.close()


def default_scanner_runners() -> dict[str, ScannerRunner]:
    return {
        "arbitrage": _run_arbitrage,
        "value_bets": _run_value_bets,
        "matched_betting": _run_matched_betting,
        "stocks": _run_stocks,
        "crypto": _run_crypto,
    }


@dataclass
class ScanOutcome:
    status_code: int
    body: dict


@dataclass
class _ScannerResult:
    name: str
    opportunities: list[Opportunity] = field(default_factory=list)
    error: Optional[str] = None


def _reject(status_code: int, error: str, **extra) -> ScanOutcome:
    return ScanOutcome(status_code=status_code, body={"error": error, **extra})


class ScanOrchestrator:
    """Coordinates one scan request. Collaborators are injected for testing."""

    def __init__(
        self,
        usage_store: Optional[UsageStore] = None,
        opportunity_store: Optional[OpportunityStore] = None,
        analyzer: Optional[OpportunityAnalyzer] = None,
        notifier: Optional[AlertNotifier] = None,
        scanners: Optional[dict[str, ScannerRunner]] = None,
        scanner_timeout: Optional[float] = None,
    ):
        self.usage_store = usage_store or UsageStore()
        self.opportunity_store = opportunity_store or OpportunityStore()
        self.analyzer = analyzer or OpportunityAnalyzer()
        self.notifier = notifier or AlertNotifier()
        self.scanners = scanners if scanners is not None else default_scanner_runners()
        self.scanner_timeout = scanner_timeout or settings.SCANNER_TIMEOUT_SECONDS

    async def close(self):
        await self.analyzer.close()
        await self.notifier.close()

    async def run(self, scan_type: Any, user_id: Any = None, user_tier: Any = None) -> ScanOutcome:
        """Values come straight from the request body, so any JSON type may arrive here."""
        if scan_type is None or scan_type == "":
            return _reject(400, f"scanType is required. Must be one of: {', '.join(VALID_SCAN_TYPES)}")
        try:
            selected = ScanType(scan_type) if isinstance(scan_type, str) else None
        except ValueError:
            selected = None
        if selected is None:
            return _reject(400, f"Invalid scanType. Must be one of: {', '.join(VALID_SCAN_TYPES)}")
        if user_id is not None and not isinstance(user_id, str):
            return _reject(400, "userId must be a string")
        if user_tier is not None and not isinstance(user_tier, str):
            return _reject(400, "userTier must be a string")

        rejection = await self._check_quota(user_id, (user_tier or "free").lower())
        if rejection is not None:
            return rejection

        results = await asyncio.gather(*(self._run_scanner(name) for name in SCAN_SELECTION[selected]))
        opportunities: list[Opportunity] = []
        errors: list[str] = []
        for result in results:
            opportunities.extend(result.opportunities)
            if result.error:
                errors.append(result.error)

        ai_count = await self._enrich(opportunities)

        persisted = False
        if opportunities:
            try:
                await self.opportunity_store.insert_many(opportunities)
                persisted = True
            except Exception as exc:
                logger.error("Failed to persist opportunities", count=len(opportunities), error=str(exc))
                errors.append(f"Failed to save opportunities: {exc}")

        alerts_sent = await self._send_alerts(opportunities) if persisted else 0

        message = f"Found {len(opportunities)} {selected.value} opportunities"
        if errors:
            message += f" ({len(errors)} error(s): {'; '.join(errors)})"

        body = {
            "success": True,
            "scanType": selected.value,
            "timestamp": isoformat_z(utcnow()),
            "opportunities": [opp.to_response() for opp in opportunities],
            "count": len(opportunities),
            "aiAnalysisCount": ai_count,
            "alertsSent": alerts_sent,
            "message": message,
        }
        if errors:
            body["errors"] = errors
        logger.info(
            "Scan complete",
            scan_type=selected.value,
            user_id=user_id,
            count=len(opportunities),
            errors=len(errors),
            ai_analyzed=ai_count,
            alerts_sent=alerts_sent,
        )
        return ScanOutcome(status_code=200, body=body)

    async def _check_quota(self, user_id: Optional[str], tier: str) -> Optional[ScanOutcome]:
        # Unknown tiers get the free quota.
        limit = TIER_LIMITS.get(tier, 0)
        if limit == 0:
            return _reject(
                403,
                "Free tier does not include scanning. Please upgrade to Starter or higher.",
                code="TIER_LIMIT_FREE",
            )
        if limit is None or not user_id:
            return None

        decision = await self.usage_store.try_consume(user_id, limit)
        if not decision.allowed:
            return _reject(
                429,
                f"Daily scan limit reached ({limit}). Resets at midnight UTC.",
                code="TIER_LIMIT_REACHED",
                used=decision.used,
                limit=limit,
            )
        return None

    async def _run_scanner(self, name: str) -> _ScannerResult:
        label = SCANNER_LABELS.get(name, name)
        runner = self.scanners.get(name)
        if runner is None:
            return _ScannerResult(name, error=f"{label} scanner unavailable: not registered")
        try:
            raw = await asyncio.wait_for(runner(), timeout=self.scanner_timeout)
            opportunities = normalize(name, raw)
        except ScannerUnavailable as exc:
            logger.warning("Scanner skipped", scanner=name, reason=str(exc))
            return _ScannerResult(name, error=str(exc))
        except asyncio.TimeoutError:
            logger.warning("Scanner timed out", scanner=name, timeout=self.scanner_timeout)
            return _ScannerResult(name, error=f"{label} scanner timed out after {self.scanner_timeout:g}s")
        except Exception as exc:
            logger.error("Scanner failed", scanner=name, error=str(exc), exc_info=True)
            return _ScannerResult(name, error=f"{label} scanner failed: {exc}")
        logger.info("Scanner finished", scanner=name, found=len(opportunities))
        return _ScannerResult(name, opportunities=opportunities)

    async def _enrich(self, opportunities: list[Opportunity]) -> int:
        if not opportunities or not self.analyzer.enabled:
            return 0
        try:
            return await self.analyzer.enrich(opportunities)
        except Exception as exc:
            logger.warning("AI enrichment batch failed", error=str(exc))
            return sum(1 for opp in opportunities if opp.has_ai_analysis)

    async def _send_alerts(self, opportunities: list[Opportunity]) -> int:
        try:
            return await self.notifier.notify_realtime(opportunities)
        except Exception as exc:
            logger.warning("Alert fan-out failed", error=str(exc))
            return 0
