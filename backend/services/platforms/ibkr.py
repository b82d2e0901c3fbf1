"""Interactive Brokers Client Portal gateway client.

Requests are signed with hex HMAC-SHA256 over METHOD + path + body and sent
alongside the API key. The account id is looked up on the first call that
needs it and reused for the lifetime of the client.
"""

import hashlib
import hmac
import json
import math
from datetime import datetime
from typing import Optional

import httpx

from config import settings
from services.platforms.base import PlatformClient, to_float
from services.platforms.errors import AuthenticationError
from services.platforms.types import (
    PlatformBalance,
    PlatformCredentials,
    PlatformPosition,
    PlatformTrade,
)
from utils.logger import get_logger
from utils.utcnow import parse_iso_datetime, to_naive_utc, utcfromtimestamp_ms, utcnow

logger = get_logger("platforms.ibkr")

PLATFORM = "ibkr"
DEFAULT_TRADE_DAYS = 30


def sign_request(method: str, path: str, body: str, api_secret: str) -> str:
    message = f"{method.upper()}{path}{body}"
    return hmac.new(api_secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def _amount(summary: dict, key: str) -> tuple[float, Optional[str]]:
    """Read ``{"amount", "currency"}`` entries; gateway key casing varies."""
    lowered = {str(k).lower(): v for k, v in (summary or {}).items()}
    entry = lowered.get(key.lower())
    if isinstance(entry, dict):
        return to_float(entry.get("amount")), entry.get("currency")
    return to_float(entry), None


class IBKRClient(PlatformClient):
    platform = PLATFORM

    def __init__(
        self,
        credentials: PlatformCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        gateway_url: Optional[str] = None,
    ):
        if not credentials.api_key or not credentials.api_secret:
            raise AuthenticationError("IBKR API key and secret are required", PLATFORM)
        super().__init__(credentials, http_client=http_client, timeout=timeout)
        self.gateway_url = (gateway_url or settings.IBKR_GATEWAY_URL).rstrip("/")
        self.account_id: Optional[str] = None

    async def _request(self, path: str, method: str = "GET", body: Optional[dict] = None):
        payload = json.dumps(body) if body is not None else ""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-IBKR-API-Key": self.credentials.api_key,
            "X-IBKR-API-Signature": sign_request(method, path, payload, self.credentials.api_secret),
        }
        response = await self._send(
            method,
            f"{self.gateway_url}{path}",
            content=payload or None,
            headers=headers,
        )
        return self._decode_json(PLATFORM, response)

    async def _ensure_account_id(self) -> str:
        if self.account_id:
            return self.account_id
        accounts = await self._request("/portfolio/accounts")
        if not accounts:
            raise AuthenticationError("No IBKR accounts found", PLATFORM)
        self.account_id = str(accounts[0].get("accountId") or "")
        if not self.account_id:
            raise AuthenticationError("No IBKR accounts found", PLATFORM)
        return self.account_id

    async def _probe(self) -> None:
        await self._ensure_account_id()

    async def get_balance(self) -> PlatformBalance:
        account_id = await self._ensure_account_id()
        summary = await self._request(f"/portfolio/{account_id}/summary")
        available, _ = _amount(summary, "availablefunds")
        exposure, _ = _amount(summary, "grosspositionvalue")
        total, currency = _amount(summary, "netliquidation")
        if not total:
            total, currency = _amount(summary, "netliquidationvalue")
        return PlatformBalance(
            available=available,
            exposure=exposure,
            total=total,
            currency=currency or "USD",
        )

    async def get_positions(self) -> list[PlatformPosition]:
        account_id = await self._ensure_account_id()
        positions = await self._request(f"/portfolio/{account_id}/positions/0")
        result = []
        for pos in positions or []:
            size = to_float(pos.get("position"))
            result.append(
                PlatformPosition(
                    id=str(pos.get("conid")),
                    symbol=pos.get("contractDesc") or str(pos.get("conid")),
                    side="long" if size > 0 else "short",
                    quantity=abs(size),
                    entry_price=to_float(pos.get("avgPrice"), to_float(pos.get("avgCost"))),
                    current_price=to_float(pos.get("mktPrice")),
                    unrealized_pnl=to_float(pos.get("unrealizedPnl")),
                    currency=pos.get("currency") or "USD",
                    opened_at=None,  # not reported by the gateway
                )
            )
        return result

    async def get_trade_history(self, since: Optional[datetime] = None) -> list[PlatformTrade]:
        await self._ensure_account_id()
        if since is None:
            days = DEFAULT_TRADE_DAYS
        else:
            elapsed = (utcnow() - to_naive_utc(since)).total_seconds()
            days = max(1, math.ceil(elapsed / 86400))
        trades = await self._request(f"/iserver/account/trades?days={days}")

        result = []
        for trade in trades or []:
            if trade.get("trade_time_r"):
                executed_at = utcfromtimestamp_ms(trade["trade_time_r"])
            else:
                executed_at = parse_iso_datetime(trade.get("trade_time")) or utcnow()
            result.append(
                PlatformTrade(
                    id=str(trade.get("execution_id")),
                    symbol=trade.get("symbol", ""),
                    side="buy" if "buy" in str(trade.get("side", "")).lower() else "sell",
                    quantity=to_float(trade.get("size")),
                    price=to_float(trade.get("price")),
                    fee=to_float(trade.get("commission")),
                    currency="USD",
                    executed_at=executed_at,
                    order_id=trade.get("order_ref"),
                )
            )
        return result
