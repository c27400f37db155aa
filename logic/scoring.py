"""Signal scoring for trade decisions.

Turns one IndicatorSnapshot into four weighted-checklist scores and an
unconfirmed candidate decision. Confirmation (debouncing over cycles)
happens afterwards in ConfirmationGate.

Candidate order:
    HOLD   open long still supported by trend/momentum
    BUY    buy score, stochastic and entry quality all pass (plus range check)
    SELL   sell score >= min_sell_score
    COVER  open short and the market turned oversold/buyable
    SHORT  downtrend with enough short entry quality (plus recent-high check)
"""

from typing import List, Optional

from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Candle, Decision, Position, Side, SignalKind, SignalScores, TradeSignal
from logic.patterns import PatternAnalysis
from logic.price_action import (
    check_recent_high,
    check_recent_low,
    detect_low_conviction,
    detect_reversal_pattern,
    trend_consistency,
)
from logic.snapshot import IndicatorSnapshot

logger = get_logger(__name__)


class SignalScorer:
    """Weighted scoring of buy/sell/short conditions."""

    def __init__(self, config: Settings = settings):
        self.config = config

    def score(
        self,
        snap: IndicatorSnapshot,
        candles: List[Candle],
        patterns: PatternAnalysis,
        position: Optional[Position] = None,
    ) -> TradeSignal:
        scores = self.compute_scores(snap, candles, patterns)
        return self.identify(snap, candles, scores, position)

    # ------------------------------------------------------------------
    # Scores
    # ------------------------------------------------------------------

    def compute_scores(
        self, snap: IndicatorSnapshot, candles: List[Candle], patterns: PatternAnalysis
    ) -> SignalScores:
        cfg = self.config
        s = SignalScores(is_uptrend=snap.is_uptrend)
        price = snap.price
        k = snap.stoch_k

        ema_close = snap.ema_slow > 0 and abs(snap.ema_fast - snap.ema_slow) / snap.ema_slow * 100 < cfg.ema_close_threshold_pct
        macd_buy = snap.macd > snap.macd_signal and snap.macd_prev is not None and snap.macd > snap.macd_prev
        rsi_buy = snap.rsi < cfg.rsi_buy_threshold
        rsi_ideal = 30 < snap.rsi < 45
        near_lower = price < snap.bb_lower * 1.01
        near_upper = price > snap.bb_upper * 0.99

        # Buy score
        buy_terms = [
            (ema_close, 2, "EMA close"),
            (macd_buy, 3, "MACD rising above signal"),
            (rsi_buy, 1, "RSI oversold"),
            (rsi_ideal, 2, "RSI ideal zone"),
            (snap.rsi < 25, 2, "RSI deep oversold"),
            (snap.rsi < 20, 1, "RSI extreme oversold"),
            (k < cfg.stoch_k_buy_threshold, 1, "Stoch oversold"),
            (k < 10, 2, "Stoch deep oversold"),
            (k < 5, 1, "Stoch extreme oversold"),
            (near_lower, 2, "Near lower BB"),
        ]
        s.buy = self._tally(buy_terms, s.reasons, "buy")

        # Sell score
        macd_sell = (snap.macd - snap.macd_signal) < cfg.macd_sell_offset
        sell_terms = [
            (ema_close, 2, "EMA close"),
            (macd_sell, 2, "MACD below sell offset"),
            (snap.rsi > cfg.rsi_sell_threshold, 1, "RSI overbought"),
            (snap.rsi > 75, 2, "RSI high overbought"),
            (snap.rsi > 80, 1, "RSI extreme overbought"),
            (k > cfg.stoch_k_sell_threshold, 1, "Stoch overbought"),
            (k > 85, 2, "Stoch high overbought"),
            (k > 90, 1, "Stoch extreme overbought"),
            (near_upper, 2, "Near upper BB"),
        ]
        s.sell = self._tally(sell_terms, s.reasons, "sell")

        # Stochastic gate
        safe_zone = k < cfg.stoch_safe_zone
        stoch_oversold = k < cfg.stoch_k_buy_threshold
        k_confirm = k > snap.stoch_d
        s.stoch_buy_ok = ((k_confirm and safe_zone and k < 50) or stoch_oversold) and safe_zone

        s.volume_confirmed = snap.volume_avg > 0 and snap.volume > snap.volume_avg * cfg.volume_surge_ratio
        reversal = detect_reversal_pattern(candles)
        consistency = trend_consistency(candles, cfg.trend_consistency_lookback)

        # Long entry quality
        quality_terms = [
            (near_lower, 3, "Near lower BB"),
            (price < snap.ema_fast, 1, "Below fast EMA"),
            (reversal, 2, "Reversal pattern"),
            (stoch_oversold, 2, "Stoch oversold"),
            (rsi_buy, 2, "RSI buy zone"),
            (rsi_ideal, 1, "RSI ideal zone"),
            (macd_buy, 2, "MACD bullish"),
            (patterns.is_bullish, 3, "Bullish patterns"),
            (not patterns.is_bullish and patterns.net_score > 0, 1, "Mild bullish patterns"),
            (patterns.is_bearish, -2, "Bearish patterns"),
            (consistency > 5, 1, "Consistent uptrend"),
            (s.volume_confirmed, 1, "Volume surge"),
        ]
        s.entry_quality = self._tally(quality_terms, s.reasons, "quality")

        # Short entry quality
        short_terms = [
            (near_upper, 3, "Near upper BB"),
            (price > snap.ema_fast, 1, "Above fast EMA"),
            (reversal, 2, "Reversal pattern"),
            (snap.rsi > 70, 2, "RSI overbought"),
            (snap.rsi > 80, 1, "RSI extreme overbought"),
            (k > 80, 2, "Stoch overbought"),
            (snap.macd < snap.macd_signal, 2, "MACD bearish"),
            (patterns.is_bearish, 3, "Bearish patterns"),
            (not patterns.is_bearish and patterns.net_score < 0, 1, "Mild bearish patterns"),
            (patterns.is_bullish, -2, "Bullish patterns"),
            (not snap.is_uptrend, 1, "Downtrend"),
            (s.volume_confirmed, 1, "Volume surge"),
        ]
        s.short_entry = self._tally(short_terms, s.reasons, "short")

        conviction = detect_low_conviction(snap)
        if conviction.is_low_conviction:
            penalty = round(cfg.low_conviction_max_penalty * conviction.confidence / 100)
            s.low_conviction_penalty = penalty
            s.entry_quality = max(0, s.entry_quality - penalty)
            s.short_entry = max(0, s.short_entry - penalty)
            s.reasons.append(f"low conviction -{penalty} ({conviction.confidence:.0f}%)")
            logger.info(
                "[SIGNAL] Low conviction zone (%.0f%%): %s",
                conviction.confidence, "; ".join(conviction.reasons),
            )

        logger.info(
            "[SIGNAL] Scores buy=%d sell=%d quality=%d short=%d stochOK=%s uptrend=%s",
            s.buy, s.sell, s.entry_quality, s.short_entry, s.stoch_buy_ok, s.is_uptrend,
        )
        return s

    @staticmethod
    def _tally(terms, reasons: List[str], label: str) -> int:
        total = 0
        for hit, weight, name in terms:
            if hit:
                total += weight
                reasons.append(f"{label}:{name} {weight:+d}")
        return total

    # ------------------------------------------------------------------
    # Candidate decision
    # ------------------------------------------------------------------

    def should_hold(self, snap: IndicatorSnapshot, scores: SignalScores) -> bool:
        return (
            (snap.is_uptrend and snap.rsi < 70)
            or (snap.price > snap.bb_mid and scores.volume_confirmed)
            or (snap.macd_bullish and snap.price > snap.ema_slow)
        )

    def identify(
        self,
        snap: IndicatorSnapshot,
        candles: List[Candle],
        scores: SignalScores,
        position: Optional[Position] = None,
    ) -> TradeSignal:
        cfg = self.config
        side = position.side if position else None

        if side == Side.LONG and self.should_hold(snap, scores):
            reason = (
                f"Holding position: Trend={snap.is_uptrend}, RSI={snap.rsi:.2f}, "
                f"Above BB Mid={snap.price > snap.bb_mid}, MACD Bullish={snap.macd_bullish}"
            )
            return TradeSignal(Decision.HOLD, reason, scores)

        if side == Side.SHORT:
            oversold = snap.rsi < cfg.rsi_buy_threshold or snap.stoch_k < cfg.stoch_k_buy_threshold
            if scores.buy >= cfg.min_buy_score or oversold:
                return TradeSignal(Decision.COVER, f"Cover candidate: buy score={scores.buy}, RSI={snap.rsi:.2f}", scores)
            return TradeSignal(Decision.NONE, "Short open, no cover conditions", scores)

        buy_ok = (
            scores.buy >= cfg.min_buy_score
            and scores.stoch_buy_ok
            and scores.entry_quality >= cfg.min_entry_quality
        )
        if buy_ok:
            check = check_recent_low(candles, snap.price, cfg.recent_low_lookback, cfg.recent_low_max_range_pct)
            if not check.is_good_entry:
                return TradeSignal(Decision.NONE, f"Buy signal suppressed: {check.message}", scores, price_position_ok=False, suppressed=SignalKind.BUY)
            reason = f"Buy Score={scores.buy}, Quality={scores.entry_quality}, StochOK={scores.stoch_buy_ok}"
            return TradeSignal(Decision.BUY, reason, scores)

        if scores.sell >= cfg.min_sell_score:
            return TradeSignal(Decision.SELL, f"Sell Score={scores.sell}", scores)

        if side is None and not snap.is_uptrend and scores.short_entry >= cfg.min_short_quality:
            check = check_recent_high(candles, snap.price, cfg.recent_high_lookback, cfg.recent_high_tolerance_pct)
            if not check.is_good_entry:
                return TradeSignal(Decision.NONE, f"Short signal suppressed: {check.message}", scores, price_position_ok=False, suppressed=SignalKind.SHORT)
            reason = f"Short Score={scores.short_entry}, RSI={snap.rsi:.2f}, MACD Bearish={not snap.macd_bullish}"
            return TradeSignal(Decision.SHORT, reason, scores)

        return TradeSignal(Decision.NONE, "Conditions not met.", scores)
