"""External brokerage / exchange integrations behind one call contract."""

from typing import Optional, Union

import httpx

from services.platforms.base import PlatformClient
from services.platforms.betfair import (
    BetfairClient,
    exchange_code_for_token,
    get_authorization_url,
    refresh_access_token,
)
from services.platforms.errors import (
    AuthenticationError,
    PlatformConfigurationError,
    PlatformError,
    RateLimited,
    UnknownPlatformError,
    UnsupportedOperation,
    UpstreamUnavailable,
)
from services.platforms.ibkr import IBKRClient
from services.platforms.kraken import KrakenClient
from services.platforms.types import (
    OAuthTokens,
    Platform,
    PlatformBalance,
    PlatformCredentials,
    PlatformPosition,
    PlatformTrade,
    SyncResult,
)

_CLIENTS = {
    Platform.BETFAIR: BetfairClient,
    Platform.IBKR: IBKRClient,
    Platform.KRAKEN: KrakenClient,
}

PLATFORM_CONFIG = {
    Platform.BETFAIR.value: {
        "name": "Betfair",
        "description": "UK-based betting exchange",
        "auth_type": "oauth",
        "requires_fields": [],
    },
    Platform.IBKR.value: {
        "name": "Interactive Brokers",
        "description": "Global trading platform for stocks, options, and more",
        "auth_type": "apikey",
        "requires_fields": ["api_key", "api_secret"],
    },
    Platform.KRAKEN.value: {
        "name": "Kraken",
        "description": "Cryptocurrency exchange",
        "auth_type": "apikey",
        "requires_fields": ["api_key", "api_secret"],
    },
}


def parse_platform(value: Union[str, Platform]) -> Platform:
    try:
        return Platform(str(getattr(value, "value", value)).lower())
    except ValueError as exc:
        raise UnknownPlatformError(f"Unknown platform: {value}", str(value)) from exc


def create_platform_client(
    platform: Union[str, Platform],
    credentials: PlatformCredentials,
    http_client: Optional[httpx.AsyncClient] = None,
) -> PlatformClient:
    """Construct a new client for ``platform``; no caching between calls."""
    client_cls = _CLIENTS[parse_platform(platform)]
    return client_cls(credentials, http_client=http_client)


__all__ = [
    "AuthenticationError",
    "BetfairClient",
    "IBKRClient",
    "KrakenClient",
    "OAuthTokens",
    "PLATFORM_CONFIG",
    "Platform",
    "PlatformBalance",
    "PlatformClient",
    "PlatformConfigurationError",
    "PlatformCredentials",
    "PlatformError",
    "PlatformPosition",
    "PlatformTrade",
    "RateLimited",
    "SyncResult",
    "UnknownPlatformError",
    "UnsupportedOperation",
    "UpstreamUnavailable",
    "create_platform_client",
    "exchange_code_for_token",
    "get_authorization_url",
    "parse_platform",
    "refresh_access_token",
]
