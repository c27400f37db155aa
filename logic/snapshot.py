"""Per-cycle indicator snapshot built from the candle window."""

import math
from dataclasses import dataclass, asdict
from typing import List, Optional

import numpy as np

from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Candle, Ok, Result, Skip
from logic import indicators

logger = get_logger(__name__)


@dataclass
class IndicatorSnapshot:
    """Latest (and previous, where warm) value of every indicator."""
    price: float
    ema_fast: float
    ema_slow: float
    rsi: float
    macd: float
    macd_signal: float
    macd_hist: float
    stoch_k: float
    stoch_d: float
    bb_mid: float
    bb_upper: float
    bb_lower: float
    volume: float
    volume_avg: float
    ema_fast_prev: Optional[float] = None
    ema_slow_prev: Optional[float] = None
    rsi_prev: Optional[float] = None
    macd_prev: Optional[float] = None
    macd_signal_prev: Optional[float] = None
    macd_hist_prev: Optional[float] = None
    stoch_k_prev: Optional[float] = None
    stoch_d_prev: Optional[float] = None
    bb_mid_prev: Optional[float] = None
    bb_upper_prev: Optional[float] = None
    bb_lower_prev: Optional[float] = None

    @property
    def is_uptrend(self) -> bool:
        return self.ema_fast > self.ema_slow

    @property
    def macd_bullish(self) -> bool:
        return self.macd > self.macd_signal

    def to_dict(self) -> dict:
        return {k: (round(v, 8) if isinstance(v, float) else v) for k, v in asdict(self).items()}


def _last(series: np.ndarray) -> float:
    return float(series[-1])


def _prev(series: np.ndarray) -> Optional[float]:
    if len(series) < 2 or math.isnan(series[-2]):
        return None
    return float(series[-2])


def compute_snapshot(window: List[Candle], config: Settings = settings) -> Result:
    """Ok(IndicatorSnapshot) or Skip when the window is too short to be trusted."""
    required = config.min_required_candles
    if len(window) < required:
        return Skip(f"insufficient candles: {len(window)}/{required}")

    closes = np.array([c.close for c in window], dtype=float)
    highs = np.array([c.high for c in window], dtype=float)
    lows = np.array([c.low for c in window], dtype=float)
    volumes = np.array([c.volume for c in window], dtype=float)

    ema_fast = indicators.ema(closes, config.ema_fast_period)
    ema_slow = indicators.ema(closes, config.ema_slow_period)
    rsi = indicators.rsi(closes, config.rsi_period)
    macd_line, macd_signal, macd_hist = indicators.macd(
        closes, config.macd_fast_period, config.macd_slow_period, config.macd_signal_period
    )
    stoch_k, stoch_d = indicators.stochastic(
        highs, lows, closes, config.stoch_period, config.stoch_k_smooth, config.stoch_d_smooth
    )
    bb_mid, bb_upper, bb_lower = indicators.bollinger(closes, config.bb_period, config.bb_std_dev)

    latest = {
        "ema_fast": _last(ema_fast),
        "ema_slow": _last(ema_slow),
        "rsi": _last(rsi),
        "macd": _last(macd_line),
        "macd_signal": _last(macd_signal),
        "macd_hist": _last(macd_hist),
        "stoch_k": _last(stoch_k),
        "stoch_d": _last(stoch_d),
        "bb_mid": _last(bb_mid),
        "bb_upper": _last(bb_upper),
        "bb_lower": _last(bb_lower),
    }
    missing = [name for name, value in latest.items() if math.isnan(value)]
    if missing:
        # No partial signals: one cold indicator skips the whole cycle
        return Skip(f"indicators not ready: {', '.join(missing)}")

    vol_period = min(config.volume_avg_period, len(volumes))
    snapshot = IndicatorSnapshot(
        price=float(closes[-1]),
        volume=float(volumes[-1]),
        volume_avg=float(np.mean(volumes[-vol_period:])),
        ema_fast_prev=_prev(ema_fast),
        ema_slow_prev=_prev(ema_slow),
        rsi_prev=_prev(rsi),
        macd_prev=_prev(macd_line),
        macd_signal_prev=_prev(macd_signal),
        macd_hist_prev=_prev(macd_hist),
        stoch_k_prev=_prev(stoch_k),
        stoch_d_prev=_prev(stoch_d),
        bb_mid_prev=_prev(bb_mid),
        bb_upper_prev=_prev(bb_upper),
        bb_lower_prev=_prev(bb_lower),
        **latest,
    )
    logger.debug(
        "[SIGNAL] P=%.4f BB L=%.4f M=%.4f U=%.4f RSI=%.2f EMA F=%.4f S=%.4f MACD=%.5f/%.5f K=%.2f D=%.2f",
        snapshot.price, snapshot.bb_lower, snapshot.bb_mid, snapshot.bb_upper, snapshot.rsi,
        snapshot.ema_fast, snapshot.ema_slow, snapshot.macd, snapshot.macd_signal,
        snapshot.stoch_k, snapshot.stoch_d,
    )
    return Ok(snapshot)
