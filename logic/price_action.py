"""
Price action helpers used by the scorer and exit rules.

All functions look at the tail of an ascending candle window.
"""

from dataclasses import dataclass, field
from typing import List, Sequence

from core.models import Candle
from logic.snapshot import IndicatorSnapshot


@dataclass
class RangeCheck:
    """Outcome of a relative-price-position check."""
    is_good_entry: bool
    message: str
    position_pct: float = 0.0


@dataclass
class ConvictionCheck:
    is_low_conviction: bool = False
    confidence: float = 0.0
    reasons: List[str] = field(default_factory=list)


def detect_reversal_pattern(candles: Sequence[Candle]) -> bool:
    """Bullish engulfing, morning star or hammer on the last three candles."""
    if len(candles) < 3:
        return False
    c1, c2, c3 = candles[-3], candles[-2], candles[-1]

    bullish_engulfing = (
        c1.is_red and c2.is_green
        and c2.open < c1.close and c2.close > c1.open
        and c2.body > c1.body
    )
    morning_star = (
        c1.is_red and c2.body < c1.body * 0.5
        and c3.is_green and c3.close > (c1.open + c1.close) / 2
    )
    hammer = (
        c3.is_green
        and (c3.close - c3.low) > 2 * (c3.high - c3.close)
        and (c3.high - c3.close) < c3.body * 0.3
        and c3.low < min(c1.low, c2.low)
    )
    return bullish_engulfing or morning_star or hammer


def trend_consistency(candles: Sequence[Candle], lookback: int = 10) -> float:
    """Directional consistency in [-10, 10]; strong = body over 60% of range."""
    if lookback <= 0 or len(candles) < lookback + 1:
        return 0.0
    bull = bear = strong_bull = strong_bear = 0
    for c in candles[-lookback:]:
        strong = c.body > c.range * 0.6
        if c.is_green:
            bull += 1
            strong_bull += strong
        elif c.is_red:
            bear += 1
            strong_bear += strong
    score = (bull - bear) / lookback * 5 + (strong_bull - strong_bear) / lookback * 5
    return max(-10.0, min(10.0, score))


def consecutive_candles(candles: Sequence[Candle], count: int = 3, rising: bool = True) -> bool:
    """True when the last `count` candles are all green (or all red)."""
    if count <= 0 or len(candles) < count + 1:
        return False
    tail = candles[-count:]
    return all(c.is_green for c in tail) if rising else all(c.is_red for c in tail)


def rising_candle_streak(candles: Sequence[Candle], min_pct: float = 0.5) -> int:
    """Number of latest candles that are green and closed min_pct% above the prior close."""
    streak = 0
    for i in range(len(candles) - 1, 0, -1):
        cur, prev = candles[i], candles[i - 1]
        if prev.close <= 0:
            break
        change = (cur.close - prev.close) / prev.close * 100
        if cur.is_green and change >= min_pct:
            streak += 1
        else:
            break
    return streak


def is_strong_downtrend(candles: Sequence[Candle], drop_pct: float = 2.0, lookback: int = 5) -> bool:
    """Latest close more than drop_pct% below the close `lookback` candles earlier."""
    if len(candles) < lookback + 1:
        return False
    return candles[-1].close < candles[-1 - lookback].close * (1 - drop_pct / 100)


def check_recent_low(
    candles: Sequence[Candle], price: float, lookback: int = 288, max_range_pct: float = 30.0
) -> RangeCheck:
    """Longs only from the bottom part of the recent range."""
    window = candles[-lookback:]
    if not window:
        return RangeCheck(True, "no history")
    low = min(c.low for c in window)
    high = max(c.high for c in window)
    if high <= low:
        return RangeCheck(True, "flat range")
    position = (price - low) / (high - low) * 100
    if position <= max_range_pct:
        return RangeCheck(True, f"price at {position:.1f}% of {len(window)}-candle range", position)
    return RangeCheck(
        False,
        f"price at {position:.1f}% of {len(window)}-candle range (max {max_range_pct:.0f}%)",
        position,
    )


def check_recent_high(
    candles: Sequence[Candle], price: float, lookback: int = 45, tolerance_pct: float = 0.5
) -> RangeCheck:
    """Shorts only near the recent high."""
    window = candles[-lookback:]
    if not window:
        return RangeCheck(False, "no history")
    high = max(c.high for c in window)
    if high <= 0:
        return RangeCheck(False, "invalid high")
    distance = (high - price) / high * 100
    if distance <= tolerance_pct:
        return RangeCheck(True, f"price {distance:.2f}% below recent high", distance)
    return RangeCheck(
        False,
        f"price {distance:.2f}% below recent high {high:.4f} (max {tolerance_pct}%)",
        distance,
    )


def detect_low_conviction(snapshot: IndicatorSnapshot) -> ConvictionCheck:
    """Flag choppy, directionless conditions where entries tend to stall.

    Each neutral reading adds to the confidence (0-100); two or more strong
    readings make the zone low-conviction.
    """
    check = ConvictionCheck()
    price = snapshot.price

    if 45 <= snapshot.rsi <= 55:
        check.confidence += 25
        check.reasons.append(f"RSI neutral ({snapshot.rsi:.1f})")
    if 40 <= snapshot.stoch_k <= 60:
        check.confidence += 20
        check.reasons.append(f"Stochastic mid-range (K={snapshot.stoch_k:.1f})")
    if price > 0 and abs(snapshot.macd_hist) < price * 0.0005:
        check.confidence += 20
        check.reasons.append("MACD histogram flat")

    band = snapshot.bb_upper - snapshot.bb_lower
    if band > 0 and abs(price - snapshot.bb_mid) < band * 0.1:
        check.confidence += 20
        check.reasons.append("Price hugging BB middle")
    if snapshot.bb_mid > 0 and band / snapshot.bb_mid * 100 < 1.0:
        check.confidence += 15
        check.reasons.append("Bollinger bands squeezed")

    check.confidence = min(100.0, check.confidence)
    check.is_low_conviction = check.confidence >= 50
    return check
