"""Shared plumbing for platform clients.

Each concrete client owns its auth scheme; this module only provides the
call contract, a lazily created ``httpx.AsyncClient`` and the translation
of transport failures and HTTP statuses into the platform error taxonomy.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import httpx

from config import settings
from services.platforms.errors import (
    AuthenticationError,
    PlatformError,
    RateLimited,
    UpstreamUnavailable,
)
from services.platforms.types import (
    PlatformBalance,
    PlatformCredentials,
    PlatformPosition,
    PlatformTrade,
)
from utils.logger import get_logger

logger = get_logger("platforms")


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def raise_for_platform_status(platform: str, response: httpx.Response) -> None:
    """Raise the taxonomy error matching a non-2xx response."""
    status = response.status_code
    if status < 400:
        return
    body = response.text[:500]
    if status in (401, 403):
        raise AuthenticationError(f"{platform} rejected credentials ({status}): {body}", platform)
    if status == 429:
        raise RateLimited(
            f"{platform} rate limit exceeded",
            platform,
            retry_after=_retry_after_seconds(response),
        )
    if status >= 500:
        raise UpstreamUnavailable(f"{platform} returned {status}: {body}", platform)
    raise PlatformError(f"{platform} API error: {status} - {body}", platform)


class PlatformClient(ABC):
    """Capability interface shared by every external platform client."""

    platform: str = ""

    def __init__(
        self,
        credentials: PlatformCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.credentials = credentials
        self._client: Optional[httpx.AsyncClient] = http_client
        self._owns_client = http_client is None
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return float(self._timeout or settings.PLATFORM_CALL_TIMEOUT_SECONDS)

    async def _get_client(self) -> httpx.AsyncClient:
        """Return a long-lived async HTTP client, creating one if needed."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": "tradesmart-platform-sync/1.0"},
            )
            self._owns_client = True
        return self._client

    async def close(self):
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send one request bounded by the per-call timeout.

        Transport errors and timeouts become UpstreamUnavailable; error
        statuses are mapped by ``raise_for_platform_status``.
        """
        client = await self._get_client()
        try:
            response = await asyncio.wait_for(
                client.request(method, url, **kwargs), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailable(
                f"{self.platform} request timed out after {self.timeout:.0f}s",
                self.platform,
            ) from exc
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailable(f"{self.platform} request timed out", self.platform) from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(
                f"{self.platform} unreachable: {type(exc).__name__}", self.platform
            ) from exc
        raise_for_platform_status(self.platform, response)
        return response

    @staticmethod
    def _decode_json(platform: str, response: httpx.Response):
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(f"{platform} returned a non-JSON body", platform) from exc

    async def validate_credentials(self) -> bool:
        """Run the cheapest authenticated call; never raises."""
        try:
            await self._probe()
            return True
        except Exception as exc:
            logger.warning(
                "Credential validation failed",
                platform=self.platform,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    async def _probe(self) -> None:
        await self.get_balance()

    @abstractmethod
    async def get_balance(self) -> PlatformBalance:
        ...

    @abstractmethod
    async def get_positions(self) -> list[PlatformPosition]:
        ...

    @abstractmethod
    async def get_trade_history(self, since: Optional[datetime] = None) -> list[PlatformTrade]:
        ...


def to_float(value, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default
