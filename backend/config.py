from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "tradesmart.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"


class Settings(BaseSettings):
    # Application
    APP_URL: str = "https://tradesmarthub.com"
    CORS_ORIGINS: list[str] = ["*"]
    CRON_SECRET: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    # Database
    DATABASE_URL: str = f"{_SQLITE_ASYNC_PREFIX}{_DEFAULT_DB_PATH}"

    # Secret storage (Fernet key material for tokens/API secrets at rest)
    APP_SECRETS_KEY: Optional[str] = None

    # Odds data provider (arbitrage / value bet scanners)
    ODDS_API_KEY: Optional[str] = None
    ODDS_API_BASE_URL: str = "https://api.the-odds-api.com/v4"

    # Market data
    BINANCE_FUTURES_URL: str = "https://fapi.binance.com"
    YAHOO_CHART_URL: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    CRYPTO_BANKROLL: float = 2000.0

    # AI enrichment
    ANTHROPIC_API_KEY: Optional[str] = None
    ANTHROPIC_MODEL: str = "claude-3-haiku-20240307"
    AI_MAX_TOKENS: int = 1024
    AI_MIN_CONFIDENCE: int = 70
    AI_BATCH_SIZE: int = 5

    # Alerts
    RESEND_API_KEY: Optional[str] = None
    ALERT_FROM_EMAIL: str = "TradeSmart <noreply@tradesmarthub.com>"
    ALERT_MIN_CONFIDENCE: int = 70
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_WHATSAPP_NUMBER: Optional[str] = None

    # External platforms
    BETFAIR_APP_KEY: Optional[str] = None
    BETFAIR_CLIENT_ID: Optional[str] = None
    BETFAIR_CLIENT_SECRET: Optional[str] = None
    IBKR_GATEWAY_URL: str = "https://localhost:5000/v1"

    # Timeouts (seconds)
    SCANNER_TIMEOUT_SECONDS: float = 45.0
    PLATFORM_CALL_TIMEOUT_SECONDS: float = 20.0
    AI_TIMEOUT_SECONDS: float = 30.0
    ALERT_TIMEOUT_SECONDS: float = 15.0

    # Scanner result caps
    STOCK_SCAN_LIMIT: int = 10
    CRYPTO_SCAN_LIMIT: int = 5

    # Account linking
    OAUTH_STATE_TTL_MINUTES: int = 10
    SYNC_LOOKBACK_DAYS: int = 30

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> str:
        text = str(value or "").strip()
        if not text:
            return f"{_SQLITE_ASYNC_PREFIX}{_DEFAULT_DB_PATH}"

        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{_SQLITE_ASYNC_PREFIX}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            absolute.parent.mkdir(parents=True, exist_ok=True)
            return f"{_SQLITE_ASYNC_PREFIX}{absolute}"

        return text

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
