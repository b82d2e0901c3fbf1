from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    JSON,
    Index,
    PrimaryKeyConstraint,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from contextlib import contextmanager
from pathlib import Path
import logging
import os

from config import settings
from models.types import Amount
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== OPPORTUNITIES ====================


class Opportunity(Base):
    """Normalized scanner result shown on the dashboard and used for alerts."""

    __tablename__ = "opportunities"

    id = Column(String, primary_key=True)
    category = Column(String, nullable=False)  # arbitrage, value_bet, stock, crypto
    subcategory = Column(String, nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    confidence_score = Column(Integer, nullable=False, default=0)
    expected_value = Column(Amount, nullable=False, default=0.0)
    # currency, percent or percent_scaled; units differ per category
    expected_value_unit = Column(String, nullable=False, default="currency")
    data = Column(JSON, nullable=False, default=dict)
    expires_at = Column(DateTime, nullable=True)
    status = Column(String, nullable=False, default="open")  # open, taken, dismissed
    user_id = Column(String, nullable=True, index=True)  # NULL = global
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_opportunities_status_created", "status", "created_at"),
        Index("idx_opportunities_category", "category"),
    )


# ==================== USAGE QUOTAS ====================


class UserUsage(Base):
    """Per-user, per-UTC-day scan counter."""

    __tablename__ = "user_usage"

    user_id = Column(String, nullable=False)
    date = Column(String, nullable=False)  # YYYY-MM-DD (UTC)
    scans_used = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (PrimaryKeyConstraint("user_id", "date", name="pk_user_usage"),)


# ==================== USERS & NOTIFICATIONS ====================


class User(Base):
    """Profile mirror of the external auth provider's users."""

    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    full_name = Column(String, nullable=True)
    subscription_tier = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    user_id = Column(String, primary_key=True)
    email_alerts_enabled = Column(Boolean, nullable=False, default=True)
    whatsapp_alerts_enabled = Column(Boolean, nullable=False, default=False)
    alert_frequency = Column(String, nullable=False, default="realtime")  # realtime, hourly, daily, weekly
    whatsapp_number = Column(String, nullable=True)
    min_confidence_threshold = Column(Integer, nullable=True)
    categories = Column(JSON, nullable=True)  # list of categories; empty/NULL = all
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)  # opportunity_alert
    channel = Column(String, nullable=False, default="email")  # email, whatsapp
    opportunity_id = Column(String, nullable=True)
    message_id = Column(String, nullable=True)
    sent_at = Column(DateTime, default=utcnow)


# ==================== LINKED PLATFORM ACCOUNTS ====================


class LinkedAccount(Base):
    """External brokerage/exchange account linked by a user.

    Tokens and API secrets are stored through utils.secrets (Fernet when
    APP_SECRETS_KEY is configured).
    """

    __tablename__ = "linked_accounts"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False)  # betfair, ibkr, kraken
    platform_user_id = Column(String, nullable=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    api_key = Column(Text, nullable=True)
    api_secret = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime, nullable=True)
    sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "platform", name="uq_linked_accounts_user_platform"),
    )


class OAuthState(Base):
    """Pending OAuth authorization round-trip (CSRF state)."""

    __tablename__ = "oauth_states"

    state = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    platform = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)


class UserTrade(Base):
    """Portfolio trade row; platform syncs import settled trades here."""

    __tablename__ = "user_trades"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    external_id = Column(String, nullable=True)  # <platform>-<trade id>
    category = Column(String, nullable=True)
    title = Column(String, nullable=False)
    entry_amount = Column(Amount, nullable=False, default=0.0)
    exit_amount = Column(Amount, nullable=True)
    pnl = Column(Amount, nullable=True)
    pnl_percent = Column(Amount, nullable=True)
    status = Column(String, nullable=False, default="closed")
    notes = Column(Text, nullable=True)
    opened_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "external_id", name="uq_user_trades_external"),
    )


# ==================== DATABASE SETUP ====================

_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked
    _sqlite_path = settings.DATABASE_URL.split(":///", 1)[-1]
    if _sqlite_path and _sqlite_path != ":memory:":
        Path(_sqlite_path).parent.mkdir(parents=True, exist_ok=True)

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for better concurrent access (WAL mode, busy timeout)."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")  # Allow concurrent reads during writes
    cursor.execute("PRAGMA busy_timeout=30000")  # Wait up to 30s when locked (ms)
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


@contextmanager
def _sqlite_migration_lock():
    """Serialize Alembic upgrades across processes for SQLite databases."""
    if "sqlite" not in settings.DATABASE_URL or os.name != "posix":
        yield
        return

    import fcntl

    lock_path = Path(__file__).resolve().parents[1] / ".alembic.sqlite.lock"
    with lock_path.open("a", encoding="utf-8") as lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


async def init_database():
    """Initialize database and apply Alembic migrations."""
    from models.model_registry import register_all_models

    register_all_models()
    with _sqlite_migration_lock():
        async with async_engine.begin() as conn:
            await conn.run_sync(_run_alembic_upgrade)
    logger.info("Database schema at head")
