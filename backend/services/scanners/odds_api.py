"""Client for The Odds API (https://the-odds-api.com/)."""

from typing import Optional

import httpx

from config import settings
from utils.logger import get_logger
from utils.retry import with_retry

logger = get_logger("odds_api")

SUPPORTED_SPORTS = {
    "soccer_epl": "English Premier League",
    "soccer_england_league1": "English League 1",
    "soccer_england_league2": "English League 2",
    "soccer_england_efl_cup": "EFL Cup",
    "soccer_fa_cup": "FA Cup",
    "soccer_uefa_champs_league": "UEFA Champions League",
    "soccer_uefa_europa_league": "UEFA Europa League",
    "tennis_atp_wimbledon": "ATP Wimbledon",
    "tennis_wta_wimbledon": "WTA Wimbledon",
    "americanfootball_nfl": "NFL",
    "basketball_nba": "NBA",
    "mma_mixed_martial_arts": "MMA",
    "boxing_boxing": "Boxing",
}

UK_BOOKMAKERS = [
    "betfair_ex_uk",
    "betfair",
    "bet365",
    "williamhill",
    "ladbrokes_uk",
    "coral",
    "paddypower",
    "skybet",
    "betvictor",
    "unibet_uk",
    "betway",
    "888sport",
    "boylesports",
    "betfred",
]


class OddsApiClient:
    """Fetches bookmaker odds and tracks the remaining request quota."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("ODDS_API_KEY is required")
        self.api_key = api_key
        self.base_url = (base_url or settings.ODDS_API_BASE_URL).rstrip("/")
        self._client = http_client
        self.requests_used: Optional[int] = None
        self.requests_remaining: Optional[int] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _update_quota(self, headers: httpx.Headers) -> None:
        used = headers.get("x-requests-used")
        remaining = headers.get("x-requests-remaining")
        if used is not None and used.isdigit():
            self.requests_used = int(used)
        if remaining is not None and remaining.isdigit():
            self.requests_remaining = int(remaining)

    def quota_status(self) -> dict:
        return {"used": self.requests_used, "remaining": self.requests_remaining}

    @with_retry()
    async def get_odds(
        self,
        sport: str,
        regions: tuple[str, ...] = ("uk",),
        markets: tuple[str, ...] = ("h2h",),
        bookmakers: Optional[list[str]] = None,
    ) -> list[dict]:
        """Events with bookmaker odds for ``sport``; a 404 means no events."""
        params = {
            "apiKey": self.api_key,
            "regions": ",".join(regions),
            "markets": ",".join(markets),
            "oddsFormat": "decimal",
        }
        if bookmakers:
            params["bookmakers"] = ",".join(bookmakers)

        client = await self._get_client()
        response = await client.get(f"{self.base_url}/sports/{sport}/odds", params=params)
        if response.status_code == 404:
            return []
        response.raise_for_status()
        self._update_quota(response.headers)
        if self.requests_remaining is not None and self.requests_remaining < 50:
            logger.warning("Odds API quota running low", remaining=self.requests_remaining)
        return response.json()
