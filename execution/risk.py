"""Risk-based position sizing."""

from dataclasses import dataclass
from typing import Tuple

from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Side
from execution.order_utils import floor_to_lot

logger = get_logger(__name__)


@dataclass
class SizingResult:
    quantity: float
    quote_amount: float
    risk_amount: float
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.quantity > 0


class RiskSizer:
    """
    Sizes entries so that a stop-out loses at most risk% of the spendable
    balance, fees included.

        feeFactor = 1 + fee% / 100
        long:  effEntry = entry * ff, effStop = stop / ff
        short: effEntry = entry / ff, effStop = stop * ff
        spendable = balance * max_balance_usage
        risk = min(spendable * risk% / 100, spendable)
        qty = floor_lot(risk / |effEntry - effStop|)
        qty * entry > spendable  ->  qty = floor_lot(spendable / entry * safety)
    """

    def __init__(self, config: Settings = settings):
        self.config = config

    @property
    def fee_factor(self) -> float:
        return 1 + self.config.taker_fee_pct / 100

    def size(self, entry: float, stop: float, balance: float, risk_pct: float, side: Side = Side.LONG) -> float:
        return self.size_detailed(entry, stop, balance, risk_pct, side).quantity

    def size_detailed(
        self, entry: float, stop: float, balance: float, risk_pct: float, side: Side = Side.LONG
    ) -> SizingResult:
        cfg = self.config
        if entry <= 0 or stop <= 0 or balance <= 0 or risk_pct <= 0:
            return SizingResult(0.0, 0.0, 0.0, "non-positive input")
        if side == Side.LONG and stop >= entry:
            return SizingResult(0.0, 0.0, 0.0, "stop must be below entry for a long")
        if side == Side.SHORT and stop <= entry:
            return SizingResult(0.0, 0.0, 0.0, "stop must be above entry for a short")

        ff = self.fee_factor
        if side == Side.LONG:
            eff_entry, eff_stop = entry * ff, stop / ff
        else:
            eff_entry, eff_stop = entry / ff, stop * ff

        spendable = balance * cfg.max_balance_usage
        risk_amount = min(spendable * risk_pct / 100, spendable)
        stop_distance = abs(eff_entry - eff_stop)
        if stop_distance == 0:
            return SizingResult(0.0, 0.0, risk_amount, "zero stop distance")

        qty = floor_to_lot(risk_amount / stop_distance, cfg.lot_decimals)
        if qty * entry > spendable:
            qty = floor_to_lot(spendable / entry * cfg.notional_safety_margin, cfg.lot_decimals)

        logger.debug(
            "[RISK] %s size entry=%.6f stop=%.6f bal=%.2f risk=%.2f -> qty=%.8f",
            side.value, entry, stop, balance, risk_amount, qty,
        )
        return SizingResult(qty, qty * entry, risk_amount)

    def meets_minimums(self, quantity: float, price: float) -> Tuple[bool, str]:
        cfg = self.config
        notional = quantity * price
        if quantity < cfg.min_base_trade:
            return False, f"quantity {quantity:.8f} below minimum {cfg.min_base_trade}"
        if notional < cfg.min_quote_trade:
            return False, f"notional {notional:.2f} below minimum {cfg.min_quote_trade}"
        return True, ""
