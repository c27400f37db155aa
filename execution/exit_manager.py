"""Exit decisions for the open position.

Order of checks each cycle:
1. hard stop loss (always, even right after a restart)
2. recently-loaded grace: nothing else fires unless PnL >= recently_loaded_min_pnl_pct,
   except a fully confirmed long sell
3. trailing stop
4. long: confirmed take-profit sell on a SELL candidate
   short: profit-taking cover rules / confirmed cover counter

A confirmed long sell on a multi-entry position only sells the entries that
are individually in profit when that is a strict subset (partial exit).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Candle, Decision, Position, Side, TradeSignal
from logic.confirmation import ConfirmationGate
from logic.patterns import PatternAnalysis

logger = get_logger(__name__)


@dataclass
class ExitDecision:
    """Result of exit check."""
    should_exit: bool
    reason: str = ""
    is_partial: bool = False
    quantity: float = 0.0
    forced: bool = False
    confirmed: bool = False


class ExitManager:
    """Decides whether (and how much of) the open position should be closed."""

    def __init__(self, gate: ConfirmationGate, config: Settings = settings):
        self.gate = gate
        self.config = config

    def evaluate(
        self,
        position: Position,
        price: float,
        candles: List[Candle],
        signal: TradeSignal,
        patterns: PatternAnalysis,
        now: Optional[datetime] = None,
    ) -> ExitDecision:
        pnl_pct = position.pnl_pct(price)

        if position.should_stop(price):
            return ExitDecision(
                True,
                f"stop loss hit: {price:.6f} vs {position.stop_loss_price:.6f} ({pnl_pct:+.2f}%)",
                quantity=position.quantity,
                forced=True,
            )

        if position.is_long:
            decision = self._evaluate_long(position, price, candles, signal, patterns)
        else:
            decision = self._evaluate_short(position, price, candles, signal)

        if decision.should_exit and not decision.confirmed and position.is_recently_loaded(now):
            if pnl_pct < self.config.recently_loaded_min_pnl_pct:
                logger.info(
                    "[CYCLE] Exit '%s' deferred: position recently loaded, pnl %.2f%% < %.1f%%",
                    decision.reason, pnl_pct, self.config.recently_loaded_min_pnl_pct,
                )
                return ExitDecision(False, "recently loaded grace period")
        return decision

    def _evaluate_long(
        self,
        position: Position,
        price: float,
        candles: List[Candle],
        signal: TradeSignal,
        patterns: PatternAnalysis,
    ) -> ExitDecision:
        # Sell confirmation advances every cycle so the count reflects price history
        confirm = self.gate.evaluate_sell(candles, position.weighted_entry_price, patterns)

        if position.trailing_stop_hit(price):
            return ExitDecision(
                True, f"trailing stop hit: {price:.6f} < {position.trailing_stop_price:.6f}",
                quantity=position.quantity,
            )

        if signal.decision == Decision.SELL and confirm.confirmed:
            return self._sell_quantity(position, price, f"{signal.reason}; {confirm.reason}")
        return ExitDecision(False, confirm.reason)

    def _evaluate_short(
        self, position: Position, price: float, candles: List[Candle], signal: TradeSignal
    ) -> ExitDecision:
        if position.trailing_stop_hit(price):
            return ExitDecision(
                True, f"trailing stop hit: {price:.6f} > {position.trailing_stop_price:.6f}",
                quantity=position.quantity,
            )
        confirm = self.gate.evaluate_cover(
            candles, position.weighted_entry_price, cover_signal=signal.decision == Decision.COVER
        )
        if confirm.confirmed:
            return ExitDecision(True, confirm.reason, quantity=position.quantity)
        return ExitDecision(False, confirm.reason)

    def _sell_quantity(self, position: Position, price: float, reason: str) -> ExitDecision:
        """Whole position, or only the individually profitable entries."""
        entries = position.entry_transactions
        if len(entries) > 1:
            threshold = self.config.partial_exit_min_profit_pct
            winners = [tx for tx in entries if (price - tx.price) / tx.price * 100 >= threshold]
            if winners and len(winners) < len(entries):
                qty = min(position.quantity, sum(tx.quantity for tx in winners))
                logger.info(
                    "[CYCLE] Partial profit taking: %d/%d entries >= %.1f%%, qty=%.8f",
                    len(winners), len(entries), threshold, qty,
                )
                return ExitDecision(
                    True, f"partial profit taking ({len(winners)} entries); {reason}",
                    is_partial=True, quantity=qty, confirmed=True,
                )
        return ExitDecision(True, reason, quantity=position.quantity, confirmed=True)


def exit_side(position: Position) -> str:
    """Order side that flattens the position."""
    return "SELL" if position.side == Side.LONG else "BUY"
