import json
import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.ai.opportunity_analyzer import (
    AIProviderError,
    OpportunityAnalyzer,
    build_analysis_prompt,
    parse_analysis,
)


ANALYSIS_JSON = {
    "riskAssessment": {"level": "low", "score": 3, "factors": ["Tight spread"]},
    "recommendedAction": {"action": "take", "confidence": 82, "reasoning": "Signals agree."},
    "confidenceExplanation": "Three aligned indicators.",
    "potentialPitfalls": ["Earnings next week"],
    "timing": {"urgency": "soon", "optimalWindow": "Before US open"},
    "summary": "Solid setup.",
}


def _messages_reply(text):
    return {"content": [{"type": "text", "text": text}], "model": "claude-test"}


def _analyzer(handler, **kwargs):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpportunityAnalyzer(api_key="sk-test", model="claude-test", http_client=http_client, **kwargs)


def test_parse_analysis_strips_code_fence_and_clamps():
    payload = dict(ANALYSIS_JSON)
    payload["riskAssessment"] = {"level": "high", "score": 15}
    payload["recommendedAction"] = {"action": "pass", "confidence": "abc"}
    text = "```json\n" + json.dumps(payload) + "\n```"

    analysis = parse_analysis(text, model="claude-test")

    assert analysis.risk_level == "high"
    assert analysis.risk_score == 10
    assert analysis.action_confidence == 50
    assert analysis.reasoning == "Unable to determine"
    assert analysis.model == "claude-test"


def test_zero_risk_score_takes_the_default():
    payload = dict(ANALYSIS_JSON)
    payload["riskAssessment"] = {"level": "low", "score": 0}

    assert parse_analysis(json.dumps(payload)).risk_score == 5


def test_unparseable_reply_asks_for_manual_review():
    analysis = parse_analysis("I think this is a great trade!")

    assert analysis.action == "monitor"
    assert analysis.risk_score == 5
    assert "manual review" in analysis.risk_factors[0]


def test_prompt_carries_category_context_and_data(make_opportunity):
    prompt = build_analysis_prompt(make_opportunity())

    assert "stock market momentum" in prompt
    assert "AAPL - BUY" in prompt
    assert '"symbol": "AAPL"' in prompt
    assert "respond ONLY with valid JSON" in prompt


@pytest.mark.asyncio
async def test_analyze_sends_anthropic_headers(make_opportunity):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_messages_reply(json.dumps(ANALYSIS_JSON)))

    analyzer = _analyzer(handler)
    analysis = await analyzer.analyze(make_opportunity())
    await analyzer.close()

    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["model"] == "claude-test"
    assert analysis.action == "take"
    assert analysis.action_confidence == 82
    assert analysis.potential_pitfalls == ["Earnings next week"]


@pytest.mark.asyncio
async def test_analyze_raises_on_provider_error(make_opportunity):
    analyzer = _analyzer(lambda request: httpx.Response(529, text="overloaded"))

    with pytest.raises(AIProviderError, match="529"):
        await analyzer.analyze(make_opportunity())


@pytest.mark.asyncio
async def test_analyze_requires_text_content(make_opportunity):
    analyzer = _analyzer(lambda request: httpx.Response(200, json={"content": []}))

    with pytest.raises(AIProviderError, match="No text content"):
        await analyzer.analyze(make_opportunity())


@pytest.mark.asyncio
async def test_enrich_skips_low_confidence_and_survives_failures(make_opportunity):
    def handler(request: httpx.Request) -> httpx.Response:
        prompt = json.loads(request.content)["messages"][0]["content"]
        if "MSFT" in prompt:
            return httpx.Response(500, text="boom")
        return httpx.Response(200, json=_messages_reply(json.dumps(ANALYSIS_JSON)))

    good = make_opportunity(confidence_score=90)
    failing = make_opportunity(title="MSFT - BUY", confidence_score=85)
    low = make_opportunity(confidence_score=40)
    analyzer = _analyzer(handler, batch_size=1)

    enriched = await analyzer.enrich([good, failing, low])

    assert enriched == 1
    assert good.data["aiAnalysis"]["action"] == "take"
    assert not failing.has_ai_analysis
    assert not low.has_ai_analysis


@pytest.mark.asyncio
async def test_enrich_is_a_noop_without_api_key(make_opportunity):
    analyzer = OpportunityAnalyzer(api_key="")

    assert await analyzer.enrich([make_opportunity(confidence_score=99)]) == 0
