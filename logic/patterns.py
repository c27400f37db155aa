"""
Candle pattern analyzer.

Looks for classic one/two/three-candle reversal and continuation shapes at
the end of the window and folds them into a signed net score:

    bullish patterns add, bearish patterns subtract
    patterns completing on the latest candle count fully,
    patterns that completed one candle earlier count half

The net score maps to BULLISH / BEARISH / NEUTRAL through `signal_threshold`.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from core.logging_utils import get_logger
from core.models import Candle

logger = get_logger(__name__)


class PatternSignal(Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


@dataclass
class DetectedPattern:
    name: str
    score: float
    description: str = ""


@dataclass
class PatternAnalysis:
    signal: PatternSignal = PatternSignal.NEUTRAL
    net_score: float = 0.0
    patterns: List[DetectedPattern] = field(default_factory=list)

    @property
    def is_bullish(self) -> bool:
        return self.signal == PatternSignal.BULLISH

    @property
    def is_bearish(self) -> bool:
        return self.signal == PatternSignal.BEARISH

    def names(self) -> List[str]:
        return [p.name for p in self.patterns]


# Base scores (sign = direction)
PATTERN_SCORES = {
    "hammer": 1.5,
    "bullish_engulfing": 2.0,
    "piercing_line": 1.5,
    "morning_star": 2.5,
    "three_white_soldiers": 2.5,
    "shooting_star": -1.5,
    "bearish_engulfing": -2.0,
    "dark_cloud_cover": -1.5,
    "evening_star": -2.5,
    "three_black_crows": -2.5,
}


class CandlePatternAnalyzer:
    """Scores reversal patterns on the tail of a candle window."""

    def __init__(self, signal_threshold: float = 2.0):
        self.signal_threshold = signal_threshold

    def analyze(self, candles: Sequence[Candle]) -> PatternAnalysis:
        if len(candles) < 3:
            return PatternAnalysis()

        found: List[DetectedPattern] = []
        for offset, weight in ((0, 1.0), (1, 0.5)):
            end = len(candles) - offset
            if end < 3:
                continue
            for name in self._detect(candles[:end]):
                score = PATTERN_SCORES[name] * weight
                label = name if offset == 0 else f"{name}(prev)"
                found.append(DetectedPattern(label, score, self._describe(name)))

        net = round(sum(p.score for p in found), 4)
        if net >= self.signal_threshold:
            signal = PatternSignal.BULLISH
        elif net <= -self.signal_threshold:
            signal = PatternSignal.BEARISH
        else:
            signal = PatternSignal.NEUTRAL

        if found:
            logger.debug("[SIGNAL] Patterns %s net=%.2f -> %s", [p.name for p in found], net, signal.value)
        return PatternAnalysis(signal=signal, net_score=net, patterns=found)

    def _detect(self, candles: Sequence[Candle]) -> List[str]:
        c1, c2, c3 = candles[-3], candles[-2], candles[-1]
        names = []
        if self._hammer(c3, (c1, c2)):
            names.append("hammer")
        if self._shooting_star(c3, (c1, c2)):
            names.append("shooting_star")
        if self._bullish_engulfing(c2, c3):
            names.append("bullish_engulfing")
        if self._bearish_engulfing(c2, c3):
            names.append("bearish_engulfing")
        if self._piercing_line(c2, c3):
            names.append("piercing_line")
        if self._dark_cloud_cover(c2, c3):
            names.append("dark_cloud_cover")
        if self._morning_star(c1, c2, c3):
            names.append("morning_star")
        if self._evening_star(c1, c2, c3):
            names.append("evening_star")
        if all(c.is_green for c in (c1, c2, c3)) and c1.close < c2.close < c3.close:
            names.append("three_white_soldiers")
        if all(c.is_red for c in (c1, c2, c3)) and c1.close > c2.close > c3.close:
            names.append("three_black_crows")
        return names

    @staticmethod
    def _hammer(c: Candle, prior: Sequence[Candle]) -> bool:
        if c.range <= 0 or c.body <= 0:
            return False
        return (
            c.lower_wick >= 2 * c.body
            and c.upper_wick <= c.body * 0.3
            and c.low < min(p.low for p in prior)
        )

    @staticmethod
    def _shooting_star(c: Candle, prior: Sequence[Candle]) -> bool:
        if c.range <= 0 or c.body <= 0:
            return False
        return (
            c.upper_wick >= 2 * c.body
            and c.lower_wick <= c.body * 0.3
            and c.high > max(p.high for p in prior)
        )

    @staticmethod
    def _bullish_engulfing(prev: Candle, cur: Candle) -> bool:
        return (
            prev.is_red and cur.is_green
            and cur.open <= prev.close and cur.close >= prev.open
            and cur.body > prev.body
        )

    @staticmethod
    def _bearish_engulfing(prev: Candle, cur: Candle) -> bool:
        return (
            prev.is_green and cur.is_red
            and cur.open >= prev.close and cur.close <= prev.open
            and cur.body > prev.body
        )

    @staticmethod
    def _piercing_line(prev: Candle, cur: Candle) -> bool:
        return (
            prev.is_red and cur.is_green
            and cur.open < prev.close
            and (prev.open + prev.close) / 2 < cur.close < prev.open
        )

    @staticmethod
    def _dark_cloud_cover(prev: Candle, cur: Candle) -> bool:
        return (
            prev.is_green and cur.is_red
            and cur.open > prev.close
            and prev.open < cur.close < (prev.open + prev.close) / 2
        )

    @staticmethod
    def _morning_star(c1: Candle, c2: Candle, c3: Candle) -> bool:
        return (
            c1.is_red and c3.is_green
            and c2.body < c1.body * 0.5
            and c3.close > (c1.open + c1.close) / 2
        )

    @staticmethod
    def _evening_star(c1: Candle, c2: Candle, c3: Candle) -> bool:
        return (
            c1.is_green and c3.is_red
            and c2.body < c1.body * 0.5
            and c3.close < (c1.open + c1.close) / 2
        )

    @staticmethod
    def _describe(name: str) -> str:
        direction = "Bullish" if PATTERN_SCORES[name] > 0 else "Bearish"
        return f"{direction} {name.replace('_', ' ')}"


_analyzer: Optional[CandlePatternAnalyzer] = None


def analyze_patterns(candles: Sequence[Candle]) -> PatternAnalysis:
    """Module-level convenience wrapper around a shared analyzer."""
    global _analyzer
    if _analyzer is None:
        _analyzer = CandlePatternAnalyzer()
    return _analyzer.analyze(candles)
