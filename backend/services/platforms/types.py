from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Platform(str, Enum):
    BETFAIR = "betfair"
    IBKR = "ibkr"
    KRAKEN = "kraken"


class PlatformBalance(BaseModel):
    """Account funds. ``total`` is intended to equal available + exposure."""

    available: float
    exposure: float
    total: float
    currency: str


class PlatformPosition(BaseModel):
    id: str
    symbol: str
    side: str  # long, short
    quantity: float
    entry_price: float
    current_price: float
    unrealized_pnl: float
    currency: str
    opened_at: Optional[datetime] = None


class PlatformTrade(BaseModel):
    id: str
    symbol: str
    side: str  # buy, sell
    quantity: float
    price: float
    fee: float
    currency: str
    executed_at: datetime
    order_id: Optional[str] = None


class PlatformCredentials(BaseModel):
    """Stored credentials; OAuth platforms use the token fields, API-key platforms the key pair."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None


class OAuthTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


class SyncResult(BaseModel):
    success: bool
    platform: str
    balance: Optional[PlatformBalance] = None
    positions: list[PlatformPosition] = []
    trades: list[PlatformTrade] = []
    trades_imported: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
