"""LLM review of high-confidence opportunities.

Uses the Anthropic Messages API over raw httpx. Each qualifying opportunity
gets a structured risk assessment stored under ``data.aiAnalysis``.
"""

import asyncio
import json
from typing import Any, Optional

import httpx

from config import settings
from models.opportunity import AIAnalysis, Opportunity
from utils.logger import get_logger

logger = get_logger("ai.opportunity_analyzer")

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"

CATEGORY_CONTEXT = {
    "arbitrage": """
This is a sports betting arbitrage opportunity where we exploit odds discrepancies between bookmakers.
Key factors to consider:
- Margin size and sustainability
- Time until event starts
- Bookmaker reliability and payout speed
- Maximum stake limits
- Risk of odds movement before all bets placed""",
    "value_bet": """
This is a sports betting value opportunity where the bookmaker price implies a lower probability than our model.
Key factors to consider:
- Size of the edge against the market
- Reliability of the model probability
- Time until event starts
- Stake sizing relative to bankroll""",
    "stock": """
This is a stock market momentum/technical analysis opportunity.
Key factors to consider:
- Signal strength and confirmation
- Market conditions and sentiment
- Volume and liquidity
- Technical indicator alignment
- Upcoming events (earnings, news)""",
    "crypto": """
This is a cryptocurrency funding rate arbitrage opportunity on perpetual futures.
Key factors to consider:
- Funding rate sustainability
- Exchange risk and reliability
- Liquidation risk at suggested position size
- Historical funding rate patterns
- Market volatility""",
}

RESPONSE_FORMAT = """Provide your analysis in the following JSON format (respond ONLY with valid JSON, no markdown):
{
  "riskAssessment": {
    "level": "low" | "medium" | "high",
    "score": <1-10>,
    "factors": ["factor1", "factor2", ...]
  },
  "recommendedAction": {
    "action": "take" | "pass" | "monitor",
    "confidence": <0-100>,
    "reasoning": "detailed reasoning"
  },
  "confidenceExplanation": "explanation of the confidence score",
  "potentialPitfalls": ["pitfall1", "pitfall2", ...],
  "timing": {
    "urgency": "immediate" | "soon" | "flexible",
    "optimalWindow": "description of best time to act"
  },
  "summary": "2-3 sentence executive summary"
}"""

UNPARSEABLE_ANALYSIS = {
    "risk_level": "medium",
    "risk_score": 5,
    "risk_factors": ["Analysis parsing error - manual review recommended"],
    "action": "monitor",
    "action_confidence": 50,
    "reasoning": "AI analysis could not be parsed. Manual review recommended.",
    "confidence_explanation": "Unable to complete analysis due to response parsing error.",
    "potential_pitfalls": ["AI analysis incomplete - verify manually"],
    "urgency": "flexible",
    "optimal_window": "Review manually before making a decision",
    "summary": "Analysis could not be completed. Please review the opportunity manually.",
}


class AIProviderError(Exception):
    """The AI provider call failed or returned no usable text."""


def build_analysis_prompt(opportunity: Opportunity) -> str:
    category = opportunity.category.value
    context = CATEGORY_CONTEXT.get(category, "Analyze this opportunity based on standard risk/reward principles.")
    unit = opportunity.expected_value_unit.value
    details = f"""
OPPORTUNITY DETAILS:
- Title: {opportunity.title}
- Description: {opportunity.description or ""}
- Category: {category}
- Subcategory: {opportunity.subcategory or "N/A"}
- Scanner Confidence: {opportunity.confidence_score}%
- Expected Value: {opportunity.expected_value:.2f} ({unit})
- Expires: {opportunity.expires_at.isoformat() if opportunity.expires_at else "N/A"}
- Additional Data: {json.dumps(opportunity.data, indent=2, default=str)}"""

    return (
        f"You are an expert financial analyst specializing in {category} opportunities. "
        "Analyze the following opportunity and provide a structured assessment.\n"
        f"{context}\n{details}\n\n{RESPONSE_FORMAT}"
    )


def _strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
        if cleaned.startswith("json"):
            cleaned = cleaned[4:]
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def _clamp(value: Any, lower: int, upper: int, default: int) -> int:
    """Bound a numeric field; missing, zero or non-numeric values take the default."""
    try:
        number = int(round(float(value))) if value else default
    except (TypeError, ValueError):
        number = default
    return max(lower, min(upper, number))


def parse_analysis(text: str, model: Optional[str] = None) -> AIAnalysis:
    """Parse the model's JSON reply; malformed replies become a manual-review analysis."""
    try:
        parsed = json.loads(_strip_code_fence(text))
        if not isinstance(parsed, dict):
            raise ValueError("analysis is not a JSON object")
    except ValueError:
        logger.warning("Failed to parse AI analysis", response=text[:500])
        return AIAnalysis(**UNPARSEABLE_ANALYSIS, model=model)

    risk = parsed.get("riskAssessment") or {}
    action = parsed.get("recommendedAction") or {}
    timing = parsed.get("timing") or {}
    return AIAnalysis(
        risk_level=risk.get("level") or "medium",
        risk_score=_clamp(risk.get("score"), 1, 10, 5),
        risk_factors=list(risk.get("factors") or []),
        action=action.get("action") or "monitor",
        action_confidence=_clamp(action.get("confidence"), 0, 100, 50),
        reasoning=action.get("reasoning") or "Unable to determine",
        confidence_explanation=parsed.get("confidenceExplanation") or "Analysis incomplete",
        potential_pitfalls=list(parsed.get("potentialPitfalls") or []),
        urgency=timing.get("urgency") or "flexible",
        optimal_window=timing.get("optimalWindow") or "Review before acting",
        summary=parsed.get("summary") or "Analysis could not be completed",
        model=model,
    )


class OpportunityAnalyzer:
    """Anthropic-backed reviewer for normalized opportunities."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        batch_size: Optional[int] = None,
        min_confidence: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.ANTHROPIC_API_KEY
        self.model = model or settings.ANTHROPIC_MODEL
        self.batch_size = batch_size or settings.AI_BATCH_SIZE
        self.min_confidence = settings.AI_MIN_CONFIDENCE if min_confidence is None else min_confidence
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _build_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=settings.AI_TIMEOUT_SECONDS)
            self._owns_client = True
        return self._client

    async def close(self):
        if self._client and self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    def should_analyze(self, opportunity: Opportunity) -> bool:
        return opportunity.confidence_score >= self.min_confidence

    async def analyze(self, opportunity: Opportunity) -> AIAnalysis:
        """Run one Messages call.

        Raises:
            AIProviderError: transport failure, non-200 reply, or no text content.
        """
        if not self.enabled:
            raise AIProviderError("ANTHROPIC_API_KEY not configured")

        payload = {
            "model": self.model,
            "max_tokens": settings.AI_MAX_TOKENS,
            "messages": [{"role": "user", "content": build_analysis_prompt(opportunity)}],
        }
        client = await self._get_client()
        try:
            response = await client.post(
                f"{ANTHROPIC_BASE_URL}/messages", headers=self._build_headers(), json=payload
            )
        except httpx.HTTPError as exc:
            raise AIProviderError(f"Anthropic request failed: {exc}") from exc
        if response.status_code != 200:
            raise AIProviderError(f"Anthropic API error {response.status_code}: {response.text[:200]}")

        blocks = response.json().get("content") or []
        text = next((b.get("text") for b in blocks if b.get("type") == "text"), None)
        if not text:
            raise AIProviderError("No text content in AI response")
        return parse_analysis(text, model=self.model)

    async def enrich(self, opportunities: list[Opportunity]) -> int:
        """Attach analyses in place to qualifying opportunities.

        Runs in batches with settle-all semantics; a failed call leaves that
        opportunity unenriched. Returns how many were enriched.
        """
        if not self.enabled:
            return 0
        candidates = [opp for opp in opportunities if self.should_analyze(opp)]
        enriched = 0
        for start in range(0, len(candidates), self.batch_size):
            batch = candidates[start : start + self.batch_size]
            results = await asyncio.gather(
                *(asyncio.wait_for(self.analyze(opp), settings.AI_TIMEOUT_SECONDS) for opp in batch),
                return_exceptions=True,
            )
            for opp, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.warning(
                        "AI analysis failed",
                        opportunity_id=opp.id,
                        error=str(result) or type(result).__name__,
                    )
                    continue
                opp.attach_ai_analysis(result)
                enriched += 1
        logger.info("AI enrichment complete", candidates=len(candidates), enriched=enriched)
        return enriched
