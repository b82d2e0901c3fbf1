from .opportunity import (
    AIAnalysis,
    ExpectedValueUnit,
    Opportunity,
    OpportunityCategory,
    OpportunityFilter,
    OpportunityStatus,
    ScanType,
)

__all__ = [
    "AIAnalysis",
    "ExpectedValueUnit",
    "Opportunity",
    "OpportunityCategory",
    "OpportunityFilter",
    "OpportunityStatus",
    "ScanType",
]
