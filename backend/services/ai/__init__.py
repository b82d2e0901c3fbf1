"""AI enrichment for scanner opportunities."""

from services.ai.opportunity_analyzer import (
    AIProviderError,
    OpportunityAnalyzer,
    build_analysis_prompt,
    parse_analysis,
)

__all__ = [
    "AIProviderError",
    "OpportunityAnalyzer",
    "build_analysis_prompt",
    "parse_analysis",
]
