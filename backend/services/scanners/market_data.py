"""Public market data over httpx: Yahoo Finance chart API and Binance USD-M futures."""

from typing import Optional

import httpx

from config import settings
from utils.logger import get_logger
from utils.retry import with_retry

logger = get_logger("market_data")

FALLBACK_TOP_PAIRS = ["BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT", "XRPUSDT"]


class YahooChartClient:
    """Daily OHLCV history plus a quote derived from the chart metadata."""

    def __init__(self, base_url: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or settings.YAHOO_CHART_URL).rstrip("/")
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=20.0,
                headers={"User-Agent": "Mozilla/5.0 (compatible; tradesmart-scanner/1.0)"},
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    @with_retry()
    async def get_chart(self, symbol: str, range_: str = "1y", interval: str = "1d") -> Optional[dict]:
        """Return ``{"quote": {...}, "history": [{close, volume, ...}]}`` or None."""
        client = await self._get_client()
        response = await client.get(
            f"{self.base_url}/{symbol}", params={"range": range_, "interval": interval}
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        results = (response.json().get("chart") or {}).get("result") or []
        if not results:
            return None
        return self._parse_chart(symbol, results[0])

    @staticmethod
    def _parse_chart(symbol: str, result: dict) -> Optional[dict]:
        meta = result.get("meta") or {}
        quote_block = ((result.get("indicators") or {}).get("quote") or [{}])[0]
        closes = quote_block.get("close") or []
        volumes = quote_block.get("volume") or []
        highs = quote_block.get("high") or []
        lows = quote_block.get("low") or []

        history = [
            {
                "close": float(c),
                "volume": float(volumes[i] or 0) if i < len(volumes) else 0.0,
                "high": float(highs[i]) if i < len(highs) and highs[i] is not None else float(c),
                "low": float(lows[i]) if i < len(lows) and lows[i] is not None else float(c),
            }
            for i, c in enumerate(closes)
            if c is not None
        ]
        if not history:
            return None

        price = float(meta.get("regularMarketPrice") or history[-1]["close"])
        previous = history[-2]["close"] if len(history) > 1 else float(meta.get("chartPreviousClose") or price)
        change = price - previous
        quote = {
            "symbol": symbol,
            "short_name": meta.get("shortName") or meta.get("longName") or symbol,
            "price": price,
            "change": change,
            "change_percent": (change / previous * 100) if previous else 0.0,
            "volume": float(meta.get("regularMarketVolume") or history[-1]["volume"]),
            "fifty_two_week_high": float(meta.get("fiftyTwoWeekHigh") or max(h["high"] for h in history)),
            "fifty_two_week_low": float(meta.get("fiftyTwoWeekLow") or min(h["low"] for h in history)),
        }
        return {"quote": quote, "history": history}


class BinanceFuturesClient:
    def __init__(self, base_url: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or settings.BINANCE_FUTURES_URL).rstrip("/")
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=20.0)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    @with_retry()
    async def get_funding_rates(self) -> list[dict]:
        """Current premium index (mark price, last funding rate) for every perpetual."""
        client = await self._get_client()
        response = await client.get(f"{self.base_url}/fapi/v1/premiumIndex")
        response.raise_for_status()
        return response.json()

    async def get_top_pairs(self, limit: int = 20) -> list[str]:
        """Symbols with the highest 24h quote volume; falls back to majors on error."""
        try:
            client = await self._get_client()
            response = await client.get(f"{self.base_url}/fapi/v1/ticker/24hr")
            response.raise_for_status()
            tickers = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Top pairs lookup failed, using fallback list", error=str(exc))
            return list(FALLBACK_TOP_PAIRS)
        tickers.sort(key=lambda t: float(t.get("quoteVolume") or 0), reverse=True)
        return [t["symbol"] for t in tickers[:limit]]
