"""Betfair Exchange client (OAuth2 bearer session).

The client never refreshes its own token. ``exchange_code_for_token`` and
``refresh_access_token`` are module-level helpers used by the account
linking flow, which persists whatever tokens they return.

API documentation: https://docs.developer.betfair.com/
"""

from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from config import settings
from services.platforms.base import PlatformClient, raise_for_platform_status, to_float
from services.platforms.errors import (
    AuthenticationError,
    PlatformConfigurationError,
    PlatformError,
    RateLimited,
    UpstreamUnavailable,
)
from services.platforms.types import (
    OAuthTokens,
    PlatformBalance,
    PlatformCredentials,
    PlatformPosition,
    PlatformTrade,
)
from utils.logger import get_logger
from utils.utcnow import isoformat_z, parse_iso_datetime, utcnow

logger = get_logger("platforms.betfair")

BETFAIR_API_URL = "https://api.betfair.com/exchange"
BETFAIR_AUTH_URL = "https://identitysso.betfair.com"

ACCOUNT_FUNDS_PATH = "/account/rest/v1.0/getAccountFunds/"
JSON_RPC_PATH = "/betting/json-rpc/v1"
CLEARED_ORDERS_PATH = "/betting/rest/v1.0/listClearedOrders/"

# APING error codes that mean the session token is no longer usable.
_AUTH_ERROR_CODES = ("INVALID_SESSION_INFORMATION", "NO_SESSION", "INVALID_APP_KEY", "NO_APP_KEY")
_RATE_LIMIT_CODES = ("TOO_MANY_REQUESTS", "TOO_MUCH_DATA")

PLATFORM = "betfair"


def _redirect_uri() -> str:
    return f"{settings.APP_URL.rstrip('/')}/api/platforms/betfair/callback"


def _raise_for_aping_error(text: str) -> None:
    if any(code in text for code in _AUTH_ERROR_CODES):
        raise AuthenticationError(f"Betfair session rejected: {text[:300]}", PLATFORM)
    if any(code in text for code in _RATE_LIMIT_CODES):
        raise RateLimited("Betfair request limit exceeded", PLATFORM)


class BetfairClient(PlatformClient):
    platform = PLATFORM

    def __init__(self, credentials: PlatformCredentials, http_client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        if not credentials.access_token:
            raise AuthenticationError("Betfair access token is required", PLATFORM)
        if not settings.BETFAIR_APP_KEY:
            raise PlatformConfigurationError("BETFAIR_APP_KEY environment variable is not set", PLATFORM)
        super().__init__(credentials, http_client=http_client, timeout=timeout)
        self.app_key = settings.BETFAIR_APP_KEY

    def _headers(self) -> dict:
        return {
            "X-Application": self.app_key,
            "X-Authentication": self.credentials.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(self, path: str, body: dict):
        try:
            response = await self._send(
                "POST", f"{BETFAIR_API_URL}{path}", json=body, headers=self._headers()
            )
        except PlatformError as exc:
            # Betfair reports session problems as 400s with an APING body.
            if type(exc) is PlatformError:
                _raise_for_aping_error(str(exc))
            raise
        data = self._decode_json(PLATFORM, response)
        if isinstance(data, dict) and data.get("error"):
            error_text = str(data["error"])
            _raise_for_aping_error(error_text)
            raise PlatformError(f"Betfair API error: {error_text[:300]}", PLATFORM)
        return data

    async def get_balance(self) -> PlatformBalance:
        funds = await self._request(ACCOUNT_FUNDS_PATH, {"wallet": "UK"})
        available = to_float(funds.get("availableToBetBalance"))
        exposure = abs(to_float(funds.get("exposure")))
        return PlatformBalance(
            available=available,
            exposure=exposure,
            total=available + exposure,
            currency="GBP",
        )

    async def get_positions(self) -> list[PlatformPosition]:
        """Open positions are Betfair's current (matched/unmatched) orders."""
        payload = await self._request(
            JSON_RPC_PATH,
            {
                "jsonrpc": "2.0",
                "method": "SportsAPING/v1.0/listCurrentOrders",
                "params": {},
                "id": 1,
            },
        )
        result = payload.get("result", payload) if isinstance(payload, dict) else {}
        orders = (result or {}).get("currentOrders") or []

        positions = []
        for order in orders:
            price = to_float(order.get("averagePriceMatched"))
            positions.append(
                PlatformPosition(
                    id=str(order.get("betId")),
                    symbol=f"{order.get('marketId')}-{order.get('selectionId')}",
                    side="long" if order.get("side") == "BACK" else "short",
                    quantity=to_float(order.get("sizeMatched")),
                    entry_price=price,
                    current_price=price,  # live price needs market data
                    unrealized_pnl=0.0,  # settled by the exchange
                    currency="GBP",
                    opened_at=parse_iso_datetime(order.get("placedDate")),
                )
            )
        return positions

    async def get_trade_history(self, since: Optional[datetime] = None) -> list[PlatformTrade]:
        start = since or (utcnow() - timedelta(days=settings.SYNC_LOOKBACK_DAYS))
        result = await self._request(
            CLEARED_ORDERS_PATH,
            {"betStatus": "SETTLED", "settledDateRange": {"from": isoformat_z(start)}},
        )
        trades = []
        for order in result.get("clearedOrders") or []:
            trades.append(
                PlatformTrade(
                    id=str(order.get("betId")),
                    symbol=f"{order.get('marketId')}-{order.get('selectionId')}",
                    side="buy" if order.get("side") == "BACK" else "sell",
                    quantity=to_float(order.get("sizeSettled")),
                    price=to_float(order.get("priceMatched")),
                    fee=0.0,  # commission is charged per market, not per bet
                    currency="GBP",
                    executed_at=parse_iso_datetime(order.get("settledDate")) or utcnow(),
                )
            )
        return trades


# ==================== OAUTH HELPERS ====================


def get_authorization_url(state: str) -> str:
    """Build the Betfair vendor authorization URL for the given CSRF state."""
    if not settings.BETFAIR_CLIENT_ID:
        raise PlatformConfigurationError("BETFAIR_CLIENT_ID environment variable is not set", PLATFORM)
    params = {
        "client_id": settings.BETFAIR_CLIENT_ID,
        "response_type": "code",
        "redirect_uri": _redirect_uri(),
        "state": state,
    }
    return f"{BETFAIR_AUTH_URL}/authorize?{urlencode(params)}"


async def _token_request(form: dict, http_client: Optional[httpx.AsyncClient] = None) -> dict:
    if not settings.BETFAIR_CLIENT_ID or not settings.BETFAIR_CLIENT_SECRET:
        raise PlatformConfigurationError("Betfair OAuth credentials not configured", PLATFORM)
    form = {
        **form,
        "client_id": settings.BETFAIR_CLIENT_ID,
        "client_secret": settings.BETFAIR_CLIENT_SECRET,
    }
    client = http_client or httpx.AsyncClient(timeout=settings.PLATFORM_CALL_TIMEOUT_SECONDS)
    try:
        response = await client.post(f"{BETFAIR_AUTH_URL}/api/token", data=form)
    except httpx.HTTPError as exc:
        raise UpstreamUnavailable(f"Betfair identity service unreachable: {type(exc).__name__}", PLATFORM) from exc
    finally:
        if http_client is None:
            await client.aclose()

    if response.status_code in (400, 401):
        raise AuthenticationError(f"Betfair token request rejected: {response.text[:300]}", PLATFORM)
    raise_for_platform_status(PLATFORM, response)
    data = response.json()
    if not data.get("access_token"):
        raise AuthenticationError("Betfair token response did not include an access token", PLATFORM)
    return data


async def exchange_code_for_token(code: str, http_client: Optional[httpx.AsyncClient] = None) -> OAuthTokens:
    data = await _token_request(
        {"grant_type": "authorization_code", "code": code, "redirect_uri": _redirect_uri()},
        http_client=http_client,
    )
    return OAuthTokens(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_in=data.get("expires_in"),
    )


async def refresh_access_token(refresh_token: str, http_client: Optional[httpx.AsyncClient] = None) -> OAuthTokens:
    """Rotate an access token. A response without a refresh token keeps the old one."""
    data = await _token_request(
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
        http_client=http_client,
    )
    return OAuthTokens(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or refresh_token,
        expires_in=data.get("expires_in"),
    )
