import asyncio
import uuid
from typing import Optional

import numpy as np

from services.scanners import indicators
from services.scanners.market_data import YahooChartClient
from services.scanners.types import MomentumSignal, StockOpportunity
from utils.logger import get_logger

logger = get_logger("scanner.stocks")

FTSE_100_SYMBOLS = [
    "SHEL.L", "AZN.L", "HSBA.L", "ULVR.L", "BP.L", "GSK.L", "RIO.L", "DGE.L", "BATS.L", "REL.L",
    "NG.L", "LSEG.L", "AAL.L", "CPG.L", "PRU.L", "VOD.L", "GLEN.L", "SSE.L", "BA.L", "LLOY.L",
]

SP500_SYMBOLS = [
    "AAPL", "MSFT", "GOOGL", "AMZN", "NVDA", "META", "TSLA", "BRK-B", "UNH", "JNJ",
    "V", "XOM", "JPM", "WMT", "MA", "PG", "HD", "CVX", "MRK", "ABBV",
]

MIN_HISTORY_POINTS = 50
BATCH_SIZE = 5

BULLISH_SIGNALS = {"buy", "strong_buy"}
BEARISH_SIGNALS = {"sell", "strong_sell"}


def _last(series) -> Optional[float]:
    value = float(series[-1]) if len(series) else float("nan")
    return None if np.isnan(value) else value


def overall_signal(signals: list[MomentumSignal], price_change: float) -> dict:
    """Combine individual signals into a direction, confidence and narrative."""
    bullish = 0.0
    bearish = 0.0
    reasons: list[str] = []

    for signal in signals:
        if signal.type == "rsi_oversold":
            bullish += signal.strength
            reasons.append(f"RSI oversold at {signal.value:.1f}")
        elif signal.type == "rsi_overbought":
            bearish += signal.strength
            reasons.append(f"RSI overbought at {signal.value:.1f}")
        elif signal.type == "macd_bullish":
            bullish += signal.strength
            reasons.append("MACD bullish crossover")
        elif signal.type == "macd_bearish":
            bearish += signal.strength
            reasons.append("MACD bearish crossover")
        elif signal.type == "golden_cross":
            bullish += signal.strength
            reasons.append("Golden cross (50 SMA > 200 SMA)")
        elif signal.type == "death_cross":
            bearish += signal.strength
            reasons.append("Death cross (50 SMA < 200 SMA)")
        elif signal.type == "volume_spike":
            if price_change > 0:
                bullish += signal.strength * 0.5
                reasons.append(f"High volume rally ({signal.value:.1f}x avg)")
            else:
                bearish += signal.strength * 0.5
                reasons.append(f"High volume selloff ({signal.value:.1f}x avg)")
        elif signal.type == "bollinger_squeeze":
            reasons.append("Bollinger squeeze - breakout imminent")
        elif signal.type == "breakout_high":
            bullish += signal.strength
            reasons.append(f"Near 52-week high ({signal.value:.1f}% away)")
        elif signal.type == "breakout_low":
            bullish += signal.strength * 0.7  # bounces from lows are weaker
            reasons.append("Bouncing off 52-week low")

    net = bullish - bearish
    if net >= 150:
        direction, action = "strong_buy", "Strong bullish momentum. Consider initiating position."
    elif net >= 60:
        direction, action = "buy", "Positive signals. Monitor for entry opportunity."
    elif net <= -150:
        direction, action = "strong_sell", "Strong bearish momentum. Consider reducing exposure or shorting."
    elif net <= -60:
        direction, action = "sell", "Negative signals. Consider taking profits or reducing position."
    else:
        direction, action = "neutral", "Mixed signals. Wait for clearer trend direction."

    agreement = abs(bullish - bearish) / (bullish + bearish + 1)
    confidence = min(100, round(agreement * 50 + len(signals) * 10 + abs(net) * 0.1))
    return {
        "overall_signal": direction,
        "confidence": int(confidence),
        "reasoning": ". ".join(reasons) + ".",
        "suggested_action": action,
    }


class StockMomentumScanner:
    def __init__(
        self,
        client: Optional[YahooChartClient] = None,
        markets: tuple[str, ...] = ("UK", "US"),
        symbols: Optional[list[str]] = None,
        min_confidence: int = 40,
        rsi_oversold: float = 30,
        rsi_overbought: float = 70,
        volume_spike_multiple: float = 2.0,
        batch_delay: float = 1.0,
    ):
        self.client = client or YahooChartClient()
        self.markets = markets
        self.symbols = symbols or []
        self.min_confidence = min_confidence
        self.rsi_oversold = rsi_oversold
        self.rsi_overbought = rsi_overbought
        self.volume_spike_multiple = volume_spike_multiple
        self.batch_delay = batch_delay

    def _universe(self) -> list[tuple[str, str]]:
        if self.symbols:
            return [(s, "UK" if s.endswith(".L") else "US") for s in self.symbols]
        universe: list[tuple[str, str]] = []
        if "UK" in self.markets:
            universe.extend((s, "UK") for s in FTSE_100_SYMBOLS)
        if "US" in self.markets:
            universe.extend((s, "US") for s in SP500_SYMBOLS)
        return universe

    def analyze(self, symbol: str, market: str, quote: dict, history: list[dict]) -> Optional[StockOpportunity]:
        """Score one symbol; None when history is short or nothing fired."""
        if len(history) < MIN_HISTORY_POINTS:
            return None

        closes = np.array([h["close"] for h in history], dtype=float)
        volumes = np.array([h["volume"] for h in history], dtype=float)

        rsi_values = indicators.rsi(closes, 14)
        macd_data = indicators.macd(closes, 12, 26, 9)
        bands = indicators.bollinger_bands(closes, 20, 2)
        current_rsi = _last(rsi_values)

        signals: list[MomentumSignal] = []
        if indicators.is_oversold(rsi_values, self.rsi_oversold):
            strength = min(100.0, (self.rsi_oversold - current_rsi) * 3)
            signals.append(MomentumSignal(type="rsi_oversold", strength=strength, value=current_rsi))
        if indicators.is_overbought(rsi_values, self.rsi_overbought):
            strength = min(100.0, (current_rsi - self.rsi_overbought) * 3)
            signals.append(MomentumSignal(type="rsi_overbought", strength=strength, value=current_rsi))

        if indicators.macd_bullish_cross(macd_data):
            signals.append(MomentumSignal(type="macd_bullish", strength=70))
        if indicators.macd_bearish_cross(macd_data):
            signals.append(MomentumSignal(type="macd_bearish", strength=70))

        if indicators.golden_cross(closes):
            signals.append(MomentumSignal(type="golden_cross", strength=85))
        if indicators.death_cross(closes):
            signals.append(MomentumSignal(type="death_cross", strength=85))

        avg_volume = float(volumes[-20:].sum() / 20)
        volume_ratio = float(volumes[-1] / avg_volume) if avg_volume > 0 else 0.0
        if volume_ratio >= self.volume_spike_multiple:
            signals.append(
                MomentumSignal(type="volume_spike", strength=min(100.0, volume_ratio * 25), value=volume_ratio)
            )

        bandwidth = bands["bandwidth"]
        valid_bandwidth = bandwidth[~np.isnan(bandwidth)][-50:]
        current_bandwidth = _last(bandwidth)
        if len(valid_bandwidth) and current_bandwidth is not None:
            if current_bandwidth < valid_bandwidth.mean() * 0.5:
                signals.append(MomentumSignal(type="bollinger_squeeze", strength=60))

        price = quote["price"]
        high, low = quote["fifty_two_week_high"], quote["fifty_two_week_low"]
        from_high = (high - price) / high * 100 if high > 0 else 0.0
        from_low = (price - low) / low * 100 if low > 0 else 0.0
        if from_high <= 3:
            signals.append(MomentumSignal(type="breakout_high", strength=75, value=from_high))
        if from_low <= 5 and quote["change"] > 0:
            signals.append(MomentumSignal(type="breakout_low", strength=70, value=from_low))

        if not signals:
            return None

        summary = overall_signal(signals, quote["change"])
        price_range = high - low
        position = (price - low) / price_range * 100 if price_range > 0 else 50.0

        return StockOpportunity(
            id=str(uuid.uuid4()),
            symbol=symbol,
            name=quote.get("short_name") or symbol,
            market=market,
            current_price=price,
            price_change=quote["change"],
            price_change_percent=quote["change_percent"],
            signals=signals,
            technicals={
                "rsi14": current_rsi,
                "macd_line": _last(macd_data["macd"]),
                "macd_signal": _last(macd_data["signal"]),
                "macd_histogram": _last(macd_data["histogram"]),
                "sma50": float(closes[-50:].mean()),
                "sma200": float(closes[-200:].mean()) if len(closes) >= 200 else price,
                "bollinger_upper": _last(bands["upper"]),
                "bollinger_lower": _last(bands["lower"]),
                "bollinger_bandwidth": current_bandwidth,
            },
            volume_ratio=volume_ratio,
            fifty_two_week_position=position,
            **summary,
        )

    async def _analyze_symbol(self, symbol: str, market: str) -> Optional[StockOpportunity]:
        chart = await self.client.get_chart(symbol)
        if chart is None:
            return None
        return self.analyze(symbol, market, chart["quote"], chart["history"])

    async def scan(self) -> list[StockOpportunity]:
        """Analyze the universe in batches; individual symbol failures are skipped."""
        universe = self._universe()
        opportunities: list[StockOpportunity] = []
        failures = 0
        last_error: Optional[Exception] = None

        for start in range(0, len(universe), BATCH_SIZE):
            batch = universe[start : start + BATCH_SIZE]
            results = await asyncio.gather(
                *(self._analyze_symbol(symbol, market) for symbol, market in batch),
                return_exceptions=True,
            )
            for (symbol, _), result in zip(batch, results):
                if isinstance(result, Exception):
                    failures += 1
                    last_error = result
                    logger.debug("Stock analysis failed", symbol=symbol, error=str(result))
                elif result is not None and result.confidence >= self.min_confidence:
                    opportunities.append(result)
            if start + BATCH_SIZE < len(universe) and self.batch_delay:
                await asyncio.sleep(self.batch_delay)

        if universe and failures == len(universe) and last_error is not None:
            raise last_error

        opportunities.sort(key=lambda o: o.confidence, reverse=True)
        logger.info("Stock momentum scan complete", symbols=len(universe), found=len(opportunities), failed=failures)
        return opportunities

    async def get_top_opportunities(self, limit: int = 10, signal_type: Optional[str] = None) -> list[StockOpportunity]:
        results = await self.scan()
        if signal_type == "bullish":
            results = [o for o in results if o.overall_signal in BULLISH_SIGNALS]
        elif signal_type == "bearish":
            results = [o for o in results if o.overall_signal in BEARISH_SIGNALS]
        return results[:limit]
