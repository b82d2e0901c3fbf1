"""Kraken spot/margin client (API key + HMAC-SHA512 signature).

Every private call carries a nonce that must be strictly greater than the
last one Kraken saw for the key. Nonces are issued from a process-wide
per-key counter and the per-key lock is held from signing until the
response arrives, so concurrent clients sharing a key cannot reorder
nonces on the wire. Signed requests are never retried automatically.

API documentation: https://docs.kraken.com/rest/
"""

import asyncio
import base64
import binascii
import hashlib
import hmac
import time
import weakref
from datetime import datetime
from typing import Optional
from urllib.parse import urlencode

import httpx

from services.platforms.base import PlatformClient, to_float
from services.platforms.errors import (
    AuthenticationError,
    PlatformError,
    RateLimited,
    UnsupportedOperation,
    UpstreamUnavailable,
)
from services.platforms.types import (
    PlatformBalance,
    PlatformCredentials,
    PlatformPosition,
    PlatformTrade,
)
from utils.logger import get_logger
from utils.utcnow import to_naive_utc, utcfromtimestamp, utcnow

logger = get_logger("platforms.kraken")

KRAKEN_API_URL = "https://api.kraken.com"
PLATFORM = "kraken"

# Only these are summed into the balance; other assets would need a price
# conversion and are reported as zero.
FIAT_ASSETS = ("ZUSD", "USD", "ZGBP", "GBP", "ZEUR", "EUR", "USDT", "USDC")

_AUTH_ERRORS = (
    "EAPI:Invalid key",
    "EAPI:Invalid signature",
    "EAPI:Invalid nonce",
    "EGeneral:Permission denied",
)
_RATE_LIMIT_ERRORS = ("EAPI:Rate limit exceeded", "EGeneral:Too many requests")
_UNAVAILABLE_ERRORS = ("EService:Unavailable", "EService:Busy", "EService:Market in cancel_only mode")
# Accounts without margin trading answer OpenPositions with one of these.
_NO_MARGIN_ERRORS = ("EGeneral:Permission denied", "EOrder:Margin", "EAPI:Feature disabled")

# Per-key counters persist for the process so nonces keep rising across clients.
_last_nonce: dict[str, int] = {}
# Locks are scoped to the running event loop (asyncio.Lock binds to the loop it
# first waits on) and dropped once no request holds or awaits them.
_nonce_locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()


def _key_lock(api_key: str) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    locks = _nonce_locks.get(loop)
    if locks is None:
        locks = weakref.WeakValueDictionary()
        _nonce_locks[loop] = locks
    lock = locks.get(api_key)
    if lock is None:
        lock = asyncio.Lock()
        locks[api_key] = lock
    return lock


def _next_nonce(api_key: str) -> int:
    """Microsecond clock, bumped past the last nonce issued for this key."""
    candidate = time.time_ns() // 1000
    previous = _last_nonce.get(api_key, 0)
    nonce = candidate if candidate > previous else previous + 1
    _last_nonce[api_key] = nonce
    return nonce


def sign_request(path: str, nonce: int, post_data: str, api_secret: str) -> str:
    """base64(HMAC-SHA512(b64decode(secret), path + SHA256(nonce + post_data)))."""
    try:
        secret = base64.b64decode(api_secret)
    except (binascii.Error, ValueError) as exc:
        raise AuthenticationError("Kraken API secret is not valid base64", PLATFORM) from exc
    digest = hashlib.sha256((str(nonce) + post_data).encode()).digest()
    mac = hmac.new(secret, path.encode() + digest, hashlib.sha512)
    return base64.b64encode(mac.digest()).decode()


def map_kraken_errors(errors: list[str], unsupported: tuple[str, ...] = ()) -> PlatformError:
    joined = ", ".join(errors)
    message = f"Kraken API error: {joined}"
    if any(e.startswith(u) for e in errors for u in unsupported):
        return UnsupportedOperation(message, PLATFORM)
    if any(e.startswith(a) for e in errors for a in _AUTH_ERRORS):
        return AuthenticationError(message, PLATFORM)
    if any(e.startswith(r) for e in errors for r in _RATE_LIMIT_ERRORS):
        return RateLimited(message, PLATFORM)
    if any(e.startswith(s) for e in errors for s in _UNAVAILABLE_ERRORS):
        return UpstreamUnavailable(message, PLATFORM)
    return PlatformError(message, PLATFORM)


class KrakenClient(PlatformClient):
    platform = PLATFORM

    def __init__(self, credentials: PlatformCredentials, http_client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        if not credentials.api_key or not credentials.api_secret:
            raise AuthenticationError("Kraken API key and secret are required", PLATFORM)
        super().__init__(credentials, http_client=http_client, timeout=timeout)

    async def _private(self, method: str, params: Optional[dict] = None, unsupported: tuple[str, ...] = ()):
        path = f"/0/private/{method}"
        api_key = self.credentials.api_key

        async with _key_lock(api_key):
            nonce = _next_nonce(api_key)
            post_data = urlencode({"nonce": str(nonce), **{k: str(v) for k, v in (params or {}).items()}})
            headers = {
                "API-Key": api_key,
                "API-Sign": sign_request(path, nonce, post_data, self.credentials.api_secret),
                "Content-Type": "application/x-www-form-urlencoded",
            }
            response = await self._send("POST", f"{KRAKEN_API_URL}{path}", content=post_data, headers=headers)

        data = self._decode_json(PLATFORM, response)
        errors = data.get("error") or []
        if errors:
            raise map_kraken_errors(errors, unsupported)
        return data.get("result") or {}

    async def get_balance(self) -> PlatformBalance:
        balances = await self._private("Balance")
        total = 0.0
        for asset, amount in balances.items():
            if asset in FIAT_ASSETS:
                total += to_float(amount)
        return PlatformBalance(available=total, exposure=0.0, total=total, currency="USD")

    async def get_positions(self) -> list[PlatformPosition]:
        try:
            positions = await self._private("OpenPositions", unsupported=_NO_MARGIN_ERRORS)
        except UnsupportedOperation as exc:
            logger.info("Kraken positions not available", reason=str(exc))
            return []

        result = []
        for position_id, pos in (positions or {}).items():
            volume = to_float(pos.get("vol"))
            result.append(
                PlatformPosition(
                    id=position_id,
                    symbol=pos.get("pair", ""),
                    side="long" if pos.get("type") == "buy" else "short",
                    quantity=volume,
                    entry_price=to_float(pos.get("cost")) / volume if volume else 0.0,
                    current_price=to_float(pos.get("value")) / volume if volume else 0.0,
                    unrealized_pnl=to_float(pos.get("net")),
                    currency="USD",
                    opened_at=utcfromtimestamp(to_float(pos.get("time"))) if pos.get("time") else None,
                )
            )
        return result

    async def get_trade_history(self, since: Optional[datetime] = None) -> list[PlatformTrade]:
        params = {}
        if since is not None:
            params["start"] = int((to_naive_utc(since) - datetime(1970, 1, 1)).total_seconds())
        result = await self._private("TradesHistory", params)

        trades = []
        for trade_id, trade in (result.get("trades") or {}).items():
            trades.append(
                PlatformTrade(
                    id=trade_id,
                    symbol=trade.get("pair", ""),
                    side="buy" if trade.get("type") == "buy" else "sell",
                    quantity=to_float(trade.get("vol")),
                    price=to_float(trade.get("price")),
                    fee=to_float(trade.get("fee")),
                    currency="USD",
                    executed_at=utcfromtimestamp(to_float(trade.get("time"))) if trade.get("time") else utcnow(),
                    order_id=trade.get("ordertxid"),
                )
            )
        return trades
