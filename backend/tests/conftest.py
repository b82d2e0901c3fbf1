"""Shared fixtures for TradeSmart backend tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from models.database import Base
from models.model_registry import register_all_models
from models.opportunity import ExpectedValueUnit, Opportunity, OpportunityCategory
from utils.utcnow import utcnow


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a throwaway SQLite file with the full schema."""
    register_all_models()
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tradesmart-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def make_opportunity():
    """Factory for normalized opportunities with sensible defaults."""

    def _make(**overrides):
        values = {
            "category": OpportunityCategory.STOCK,
            "subcategory": "US",
            "title": "AAPL - BUY",
            "description": "RSI oversold at 24.1.",
            "confidence_score": 75,
            "expected_value": 1.2,
            "expected_value_unit": ExpectedValueUnit.PERCENT_SCALED,
            "data": {"source": "stocks", "symbol": "AAPL"},
            "expires_at": utcnow() + timedelta(hours=24),
        }
        values.update(overrides)
        return Opportunity(**values)

    return _make
