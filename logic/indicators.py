"""
Indicator math.

Pure numpy functions. Every series has the same length as its input and is
NaN-padded where the indicator is still warming up, so index -1 is always
the latest candle and index -2 the previous one.

- sma / ema: EMA is seeded with the SMA of its first full period
- rsi: Wilder smoothing
- macd: EMA(fast) - EMA(slow), signal = EMA(signal) of the MACD line
- stochastic: %K over `period`, smoothed by `k_smooth`; %D = SMA(d_smooth) of %K
- bollinger: SMA(period) +/- std_dev * population standard deviation
"""

from typing import Sequence, Tuple

import numpy as np


def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=float)


def _first_valid(series: np.ndarray) -> int:
    idx = np.flatnonzero(~np.isnan(series))
    return int(idx[0]) if len(idx) else len(series)


def sma(values: Sequence[float], period: int) -> np.ndarray:
    arr = _as_array(values)
    out = np.full(len(arr), np.nan)
    if period <= 0 or len(arr) < period:
        return out
    csum = np.cumsum(np.insert(arr, 0, 0.0))
    out[period - 1:] = (csum[period:] - csum[:-period]) / period
    return out


def ema(values: Sequence[float], period: int) -> np.ndarray:
    """EMA tolerant of leading NaNs (used for MACD signal and smoothing)."""
    arr = _as_array(values)
    out = np.full(len(arr), np.nan)
    if period <= 0:
        return out
    start = _first_valid(arr)
    if len(arr) - start < period:
        return out

    seed_end = start + period
    out[seed_end - 1] = np.mean(arr[start:seed_end])
    mult = 2 / (period + 1)
    for i in range(seed_end, len(arr)):
        out[i] = (arr[i] - out[i - 1]) * mult + out[i - 1]
    return out


def rsi(values: Sequence[float], period: int = 14) -> np.ndarray:
    arr = _as_array(values)
    out = np.full(len(arr), np.nan)
    if period <= 0 or len(arr) < period + 1:
        return out

    deltas = np.diff(arr)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = np.mean(gains[:period])
    avg_loss = np.mean(losses[:period])
    out[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period + 1, len(arr)):
        avg_gain = (avg_gain * (period - 1) + gains[i - 1]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i - 1]) / period
        out[i] = _rsi_value(avg_gain, avg_loss)
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def macd(
    values: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return (macd_line, signal_line, histogram)."""
    line = ema(values, fast) - ema(values, slow)
    signal_line = ema(line, signal)
    return line, signal_line, line - signal_line


def stochastic(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
    k_smooth: int = 3,
    d_smooth: int = 3,
) -> Tuple[np.ndarray, np.ndarray]:
    """Return (%K, %D), both in [0, 100]."""
    high = _as_array(highs)
    low = _as_array(lows)
    close = _as_array(closes)
    raw_k = np.full(len(close), np.nan)

    for i in range(period - 1, len(close)):
        hh = np.max(high[i - period + 1:i + 1])
        ll = np.min(low[i - period + 1:i + 1])
        span = hh - ll
        # Flat window: treat as mid-range rather than dividing by zero
        raw_k[i] = 50.0 if span == 0 else (close[i] - ll) / span * 100

    k = _nan_sma(raw_k, k_smooth) if k_smooth > 1 else raw_k
    d = _nan_sma(k, d_smooth)
    return k, d


def _nan_sma(series: np.ndarray, period: int) -> np.ndarray:
    out = np.full(len(series), np.nan)
    start = _first_valid(series)
    if len(series) - start < period:
        return out
    out[start:] = sma(series[start:], period)
    return out


def bollinger(
    values: Sequence[float], period: int = 20, std_dev: float = 2.0
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return (middle, upper, lower)."""
    arr = _as_array(values)
    mid = sma(arr, period)
    dev = np.full(len(arr), np.nan)
    for i in range(period - 1, len(arr)):
        dev[i] = np.std(arr[i - period + 1:i + 1])
    return mid, mid + std_dev * dev, mid - std_dev * dev
