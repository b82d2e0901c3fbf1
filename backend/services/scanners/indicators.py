"""Technical indicators over daily closes.

Every series function returns a float array aligned with the input, with
NaN where the window is not yet full.
"""

import numpy as np


def sma(prices, period: int) -> np.ndarray:
    values = np.asarray(prices, dtype=float)
    out = np.full(values.shape, np.nan)
    if len(values) < period:
        return out
    window_sums = np.convolve(values, np.ones(period), mode="valid")
    out[period - 1 :] = window_sums / period
    return out


def ema(prices, period: int) -> np.ndarray:
    """EMA seeded with the running mean for the first ``period`` values."""
    values = np.asarray(prices, dtype=float)
    out = np.empty(values.shape)
    if len(values) == 0:
        return out
    multiplier = 2 / (period + 1)
    seed = min(period, len(values))
    out[:seed] = np.cumsum(values[:seed]) / np.arange(1, seed + 1)
    for i in range(seed, len(values)):
        out[i] = (values[i] - out[i - 1]) * multiplier + out[i - 1]
    return out


def rsi(prices, period: int = 14) -> np.ndarray:
    """RSI where each step smooths the previous window's simple averages.

    This is not Wilder's recursive smoothing: the prior average is
    recomputed from the trailing window on every step.
    """
    values = np.asarray(prices, dtype=float)
    out = np.full(values.shape, np.nan)
    if len(values) < period + 1:
        return out

    changes = np.diff(values)
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)

    for i in range(period - 1, len(gains)):
        if i == period - 1:
            avg_gain = gains[:period].mean()
            avg_loss = losses[:period].mean()
        else:
            avg_gain = (gains[i - period : i].mean() * (period - 1) + gains[i]) / period
            avg_loss = (losses[i - period : i].mean() * (period - 1) + losses[i]) / period
        if avg_loss == 0:
            out[i + 1] = 100.0
        else:
            out[i + 1] = 100 - 100 / (1 + avg_gain / avg_loss)
    return out


def macd(prices, fast: int = 12, slow: int = 26, signal: int = 9) -> dict:
    line = ema(prices, fast) - ema(prices, slow)
    signal_line = ema(line, signal)
    return {"macd": line, "signal": signal_line, "histogram": line - signal_line}


def bollinger_bands(prices, period: int = 20, std_dev: float = 2.0) -> dict:
    values = np.asarray(prices, dtype=float)
    middle = sma(values, period)
    upper = np.full(values.shape, np.nan)
    lower = np.full(values.shape, np.nan)
    bandwidth = np.full(values.shape, np.nan)
    if len(values) >= period:
        windows = np.lib.stride_tricks.sliding_window_view(values, period)
        sd = windows.std(axis=1)  # population std, as used by Bollinger
        upper[period - 1 :] = middle[period - 1 :] + std_dev * sd
        lower[period - 1 :] = middle[period - 1 :] - std_dev * sd
        with np.errstate(divide="ignore", invalid="ignore"):
            bandwidth[period - 1 :] = (upper[period - 1 :] - lower[period - 1 :]) / middle[period - 1 :] * 100
    return {"upper": upper, "middle": middle, "lower": lower, "bandwidth": bandwidth}


def _ma_cross(prices) -> tuple[float, float, float, float]:
    sma50 = sma(prices, 50)
    sma200 = sma(prices, 200)
    return sma50[-2], sma200[-2], sma50[-1], sma200[-1]


def golden_cross(prices) -> bool:
    """50-day SMA crossed above the 200-day SMA on the latest bar."""
    if len(prices) < 201:
        return False
    prev50, prev200, cur50, cur200 = _ma_cross(prices)
    return bool(prev50 <= prev200 and cur50 > cur200)


def death_cross(prices) -> bool:
    if len(prices) < 201:
        return False
    prev50, prev200, cur50, cur200 = _ma_cross(prices)
    return bool(prev50 >= prev200 and cur50 < cur200)


def is_oversold(rsi_values, threshold: float = 30) -> bool:
    current = rsi_values[-1] if len(rsi_values) else np.nan
    return bool(not np.isnan(current) and current < threshold)


def is_overbought(rsi_values, threshold: float = 70) -> bool:
    current = rsi_values[-1] if len(rsi_values) else np.nan
    return bool(not np.isnan(current) and current > threshold)


def macd_bullish_cross(data: dict) -> bool:
    line, signal = data["macd"], data["signal"]
    if len(line) < 2:
        return False
    return bool(line[-2] <= signal[-2] and line[-1] > signal[-1])


def macd_bearish_cross(data: dict) -> bool:
    line, signal = data["macd"], data["signal"]
    if len(line) < 2:
        return False
    return bool(line[-2] >= signal[-2] and line[-1] < signal[-1])
