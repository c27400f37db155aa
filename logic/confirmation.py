"""
Signal confirmation state machine.

Each signal kind owns a ConfirmationCounter:

    IDLE (count 0) -> ACCUMULATING (0 < count < required) -> CONFIRMED

Counters advance by one per qualifying cycle and are capped at the
requirement. They reset only when the reference price moves against the
trade by more than the kind's reset tolerance; wiggles inside the tolerance
keep the count. Bearish/bullish pattern acceleration may add several steps
at once but never past the requirement.

Sell and cover confirmation carry extra take-profit logic:
- sell counts only above entry * (1 + take_profit_confirm_pct), holds while
  momentum is still up, pauses one short of the requirement while price is
  still rising noticeably (aggressive mode), and resets after too many
  consecutive lower checks
- cover confirms immediately on large profits and otherwise falls back to
  the counter
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Candle, SignalKind
from logic.patterns import PatternAnalysis
from logic.price_action import consecutive_candles, is_strong_downtrend, rising_candle_streak

logger = get_logger(__name__)


class ConfirmationState(Enum):
    IDLE = "IDLE"
    ACCUMULATING = "ACCUMULATING"
    CONFIRMED = "CONFIRMED"


# Price direction that invalidates an accumulating signal
_ADVERSE_UP = {SignalKind.BUY, SignalKind.COVER}


@dataclass
class ConfirmationCounter:
    kind: SignalKind
    required: int
    reset_tolerance_pct: float
    count: int = 0
    reference_price: Optional[float] = None

    @property
    def state(self) -> ConfirmationState:
        if self.count <= 0:
            return ConfirmationState.IDLE
        if self.count >= self.required:
            return ConfirmationState.CONFIRMED
        return ConfirmationState.ACCUMULATING

    @property
    def confirmed(self) -> bool:
        return self.count >= self.required

    def increment(self, steps: int = 1, price: Optional[float] = None) -> int:
        if steps <= 0:
            return self.count
        if self.count == 0 and price is not None:
            self.reference_price = price
        self.count = min(self.required, self.count + steps)
        return self.count

    def reset(self) -> None:
        self.count = 0
        self.reference_price = None

    def adverse_move_pct(self, price: float) -> float:
        """How far price moved against the signal since counting started."""
        ref = self.reference_price
        if not ref:
            return 0.0
        if self.kind in _ADVERSE_UP:
            return (price - ref) / ref * 100
        return (ref - price) / ref * 100

    def to_dict(self) -> dict:
        return {"count": self.count, "referencePrice": self.reference_price}


@dataclass
class GateDecision:
    confirmed: bool
    reason: str
    count: int = 0


class ConfirmationGate:
    """Owns one counter per SignalKind plus sell-check bookkeeping."""

    def __init__(self, config: Settings = settings):
        self.config = config
        self.counters: Dict[SignalKind, ConfirmationCounter] = {
            SignalKind.BUY: ConfirmationCounter(
                SignalKind.BUY, config.buy_confirmations_required, config.buy_reset_tolerance_pct),
            SignalKind.SELL: ConfirmationCounter(
                SignalKind.SELL, config.sell_confirmations_required, config.sell_reset_tolerance_pct),
            SignalKind.SHORT: ConfirmationCounter(
                SignalKind.SHORT, config.short_confirmations_required, config.short_reset_tolerance_pct),
            SignalKind.COVER: ConfirmationCounter(
                SignalKind.COVER, config.cover_confirmations_required, config.cover_reset_tolerance_pct),
        }
        self.last_sell_check_price: float = 0.0
        self.continuous_drop_count: int = 0

    def __getitem__(self, kind: SignalKind) -> ConfirmationCounter:
        return self.counters[kind]

    def count(self, kind: SignalKind) -> int:
        return self.counters[kind].count

    def reset(self, kind: SignalKind, reason: str = "") -> None:
        counter = self.counters[kind]
        if counter.count > 0:
            logger.info("[CONFIRM] Reset %s count %d -> 0 (%s)", kind.value, counter.count, reason or "manual")
        counter.reset()

    def reset_exit_counters(self) -> None:
        """Called when a position closes."""
        self.counters[SignalKind.SELL].reset()
        self.counters[SignalKind.COVER].reset()
        self.last_sell_check_price = 0.0
        self.continuous_drop_count = 0

    def accelerate(self, kind: SignalKind, patterns: PatternAnalysis) -> int:
        """Extra steps from strong opposing patterns, bounded by config and requirement."""
        if kind in (SignalKind.SELL, SignalKind.SHORT):
            if not patterns.is_bearish:
                return 0
            strength = -patterns.net_score
        else:
            if not patterns.is_bullish:
                return 0
            strength = patterns.net_score
        extra = min(self.config.max_pattern_acceleration, int(strength // 1))
        counter = self.counters[kind]
        extra = max(0, min(extra, counter.required - counter.count))
        if extra:
            counter.increment(extra)
            logger.info(
                "[CONFIRM] %s accelerated +%d by patterns %s (net %.2f)",
                kind.value, extra, patterns.names(), patterns.net_score,
            )
        return extra

    # ------------------------------------------------------------------
    # Entry confirmation
    # ------------------------------------------------------------------

    def evaluate_entry(
        self,
        kind: SignalKind,
        price: float,
        condition_met: bool,
        price_position_ok: bool = True,
        superseded: bool = False,
    ) -> GateDecision:
        """Advance the BUY or SHORT counter for this cycle."""
        counter = self.counters[kind]

        if not price_position_ok:
            self.reset(kind, "price position check failed")
            return GateDecision(False, f"{kind.value} suppressed by price position", 0)
        if superseded:
            self.reset(kind, "opposing signal took over")
            return GateDecision(False, f"{kind.value} superseded", 0)

        if counter.count > 0:
            adverse = counter.adverse_move_pct(price)
            if adverse > counter.reset_tolerance_pct:
                self.reset(kind, f"price moved {adverse:.3f}% against signal")

        if not condition_met:
            return GateDecision(counter.confirmed, f"{kind.value} holding at {counter.count}/{counter.required}", counter.count)

        counter.increment(1, price)
        logger.info("[CONFIRM] %s confirmation %d/%d", kind.value, counter.count, counter.required)
        if counter.confirmed:
            return GateDecision(True, f"{kind.value} confirmed {counter.count}/{counter.required}", counter.count)
        return GateDecision(False, f"{kind.value} pending {counter.count}/{counter.required}", counter.count)

    # ------------------------------------------------------------------
    # Exit confirmation
    # ------------------------------------------------------------------

    def evaluate_sell(
        self, candles: List[Candle], entry_price: float, patterns: PatternAnalysis
    ) -> GateDecision:
        """Take-profit sell confirmation for an open long."""
        cfg = self.config
        counter = self.counters[SignalKind.SELL]
        if len(candles) < 4 or entry_price <= 0:
            return GateDecision(False, "not enough data for sell check", counter.count)

        price = candles[-1].close
        previous_check = self.last_sell_check_price

        if previous_check > 0:
            if price < previous_check:
                self.continuous_drop_count += 1
                if self.continuous_drop_count >= cfg.max_continuous_price_drops and counter.count > 0:
                    self.reset(SignalKind.SELL, f"{self.continuous_drop_count} continuous price drops")
                    self.continuous_drop_count = 0
            else:
                self.continuous_drop_count = 0
        self.last_sell_check_price = price

        tp_level = entry_price * (1 + cfg.take_profit_confirm_pct / 100)
        if price <= tp_level:
            drop_pct = (tp_level - price) / tp_level * 100
            if drop_pct > counter.reset_tolerance_pct:
                self.reset(SignalKind.SELL, f"price {drop_pct:.3f}% below take-profit level")
                return GateDecision(False, "below take-profit level", counter.count)
            return GateDecision(False, f"near take-profit level, holding at {counter.count}", counter.count)

        streak = rising_candle_streak(candles, cfg.rising_candle_min_pct)
        if streak >= cfg.rising_candles_hold:
            return GateDecision(False, f"{streak} strong rising candles, holding for more gains", counter.count)
        if patterns.is_bullish and patterns.net_score > cfg.bullish_hold_net_score:
            return GateDecision(False, f"bullish patterns (net {patterns.net_score:.2f}), holding", counter.count)

        pause_at = counter.required - 1
        rising = candles[-1].is_green
        if cfg.aggressive_confirmation and counter.count >= pause_at and rising and previous_check > 0:
            move = (price - previous_check) / previous_check * 100
            if move > cfg.aggressive_pause_move_pct:
                logger.info("[CONFIRM] SELL paused at %d/%d, price still rising %.3f%%", counter.count, counter.required, move)
                return GateDecision(False, f"paused at {counter.count} while rising", counter.count)
        if cfg.aggressive_confirmation or not rising:
            counter.increment(1, price)

        self.accelerate(SignalKind.SELL, patterns)
        logger.info("[CONFIRM] SELL confirmation %d/%d", counter.count, counter.required)
        return GateDecision(counter.confirmed, f"sell confirmation {counter.count}/{counter.required}", counter.count)

    def evaluate_cover(
        self, candles: List[Candle], entry_price: float, cover_signal: bool
    ) -> GateDecision:
        """Profit-taking cover rules for an open short."""
        cfg = self.config
        counter = self.counters[SignalKind.COVER]
        if len(candles) < 6 or entry_price <= 0:
            return GateDecision(False, "not enough data for cover check", counter.count)

        price = candles[-1].close
        if price >= entry_price:
            adverse = (price - entry_price) / entry_price * 100
            if adverse > counter.reset_tolerance_pct:
                self.reset(SignalKind.COVER, f"short {adverse:.3f}% under water")
            return GateDecision(False, "short not profitable", counter.count)

        profit = (entry_price - price) / entry_price * 100
        counter.increment(1, price)

        if profit >= cfg.cover_immediate_pct:
            return GateDecision(True, f"profit {profit:.2f}% >= {cfg.cover_immediate_pct}%", counter.count)
        if profit >= cfg.cover_strong_pct and consecutive_candles(candles, 3, rising=False):
            return GateDecision(True, f"profit {profit:.2f}% with 3 red candles", counter.count)
        if profit >= cfg.cover_modest_pct and not is_strong_downtrend(candles, cfg.strong_downtrend_drop_pct):
            return GateDecision(True, f"profit {profit:.2f}% and no strong downtrend", counter.count)
        if cover_signal and counter.confirmed:
            return GateDecision(True, f"cover confirmed {counter.count}/{counter.required}", counter.count)
        return GateDecision(False, f"cover pending {counter.count}/{counter.required}", counter.count)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        data = {kind.value: counter.to_dict() for kind, counter in self.counters.items()}
        data["lastSellCheckPrice"] = self.last_sell_check_price
        data["continuousDropCount"] = self.continuous_drop_count
        return data
