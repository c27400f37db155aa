"""Engine state container.

Everything that survives from one cycle to the next lives here instead of in
module globals:
    - Position: the ledger (and through it the open position)
    - Market: the candle window, last snapshot and signal
    - Confirmation: one counter per signal kind
    - Bookkeeping: cumulative profit, re-entry references, reconciliation skip
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from core.candle_store import CandleStore
from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Position, TradeSignal
from execution.position_ledger import PositionLedger
from logic.confirmation import ConfirmationGate
from logic.snapshot import IndicatorSnapshot

logger = get_logger(__name__)


@dataclass
class EngineState:
    """Mutable per-process engine state."""

    ledger: PositionLedger
    candles: CandleStore
    gate: ConfirmationGate
    config: Settings = field(default_factory=lambda: settings)

    # Bookkeeping
    cumulative_profit: float = 0.0
    last_sell_time: Optional[datetime] = None
    last_sell_price: float = 0.0
    last_cover_time: Optional[datetime] = None
    last_cover_price: float = 0.0
    averaged_this_cycle: bool = False
    skip_reconcile: bool = False

    # Latest cycle
    balances: dict = field(default_factory=dict)
    last_snapshot: Optional[IndicatorSnapshot] = None
    last_signal: Optional[TradeSignal] = None
    last_price: float = 0.0
    cycle_count: int = 0

    @property
    def position(self) -> Optional[Position]:
        return self.ledger.position

    def base_balance(self) -> float:
        return float(self.balances.get(self.config.base_currency, 0.0) or 0.0)

    def quote_balance(self) -> float:
        return float(self.balances.get(self.config.quote_currency, 0.0) or 0.0)

    def restore(self, now: Optional[datetime] = None) -> Optional[Position]:
        """Load persisted candles and position.

        Confirmation counters start from zero on every start; the snapshot in
        the position file is written for inspection only.
        """
        loaded = self.candles.load()
        if loaded:
            logger.info("[CANDLES] Restored %d cached candles", loaded)
        return self.ledger.load(now)

    def persist_confirmation(self) -> None:
        """Write the counters into the open position and save it."""
        position = self.ledger.position
        if position is None:
            return
        position.confirmation_state = self.gate.to_dict()
        self.ledger.save()

    # ------------------------------------------------------------------
    # Re-entry cooldown
    # ------------------------------------------------------------------

    def record_sell(self, price: float, now: datetime) -> None:
        self.last_sell_price = price
        self.last_sell_time = now

    def record_cover(self, price: float, now: datetime) -> None:
        self.last_cover_price = price
        self.last_cover_time = now

    def long_reentry_allowed(self, price: float, now: datetime) -> bool:
        """After a sell: price must clear the last sell by reentry_price_pct, or the cooldown elapse."""
        return self._reentry_allowed(self.last_sell_price, self.last_sell_time, price, now, above=True)

    def short_reentry_allowed(self, price: float, now: datetime) -> bool:
        return self._reentry_allowed(self.last_cover_price, self.last_cover_time, price, now, above=False)

    def _reentry_allowed(
        self, ref_price: float, ref_time: Optional[datetime], price: float, now: datetime, above: bool
    ) -> bool:
        if ref_time is None or ref_price <= 0:
            return True
        if now - ref_time >= timedelta(minutes=self.config.reentry_cooldown_minutes):
            return True
        margin = self.config.reentry_price_pct / 100
        if above:
            return price > ref_price * (1 + margin)
        return price < ref_price * (1 - margin)

    def to_cycle_info(self, now: datetime) -> dict:
        """Snapshot written to cycle_info.json."""
        position = self.position
        signal = self.last_signal
        return {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "cycle": self.cycle_count,
            "pair": self.config.trading_pair,
            "price": self.last_price,
            "indicators": self.last_snapshot.to_dict() if self.last_snapshot else None,
            "signal": signal.decision.value if signal else None,
            "reason": signal.reason if signal else "",
            "confirmations": self.gate.to_dict(),
            "position": position.to_dict() if position else None,
            "balances": dict(self.balances),
            "cumulativeProfit": self.cumulative_profit,
        }
