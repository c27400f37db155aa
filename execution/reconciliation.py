"""Wallet vs ledger reconciliation.

Compares the exchange's available base balance with the tracked long
quantity once per cycle and folds any external change (manual trades,
partial fills, dust conversions) back into the ledger.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Side
from execution.position_ledger import PositionLedger

logger = get_logger(__name__)


class ReconcileAction(Enum):
    NONE = "none"
    SKIPPED = "skipped"
    INCREASED = "increased"
    DECREASED = "decreased"
    CLOSED = "closed"
    RECOVERED = "recovered"


@dataclass
class ReconcileOutcome:
    action: ReconcileAction
    delta: float = 0.0
    message: str = ""
    pnl: float = 0.0

    @property
    def changed(self) -> bool:
        return self.action not in (ReconcileAction.NONE, ReconcileAction.SKIPPED)


class ReconciliationMonitor:
    def __init__(self, ledger: PositionLedger, config: Settings = settings):
        self.ledger = ledger
        self.config = config

    def reconcile(
        self, wallet_base: float, price: float, skip: bool = False, now: Optional[datetime] = None
    ) -> ReconcileOutcome:
        cfg = self.config
        if skip:
            logger.info("[RECON] Skipped (engine averaged in last cycle)")
            return ReconcileOutcome(ReconcileAction.SKIPPED, message="averaged in last cycle")

        position = self.ledger.position
        if position is None:
            if wallet_base > cfg.recovered_position_min_base and price > 0:
                self.ledger.recover(price, wallet_base, now=now)
                msg = f"Recovered untracked {wallet_base:.8f} {cfg.base_currency} @ {price:.6f}"
                logger.warning("[RECON] %s", msg)
                return ReconcileOutcome(ReconcileAction.RECOVERED, wallet_base, msg)
            return ReconcileOutcome(ReconcileAction.NONE)

        if position.side == Side.SHORT:
            # Shorts are settled in quote; the base wallet says nothing about them
            return ReconcileOutcome(ReconcileAction.NONE, message="short position")

        tracked = position.quantity
        diff = wallet_base - tracked
        if abs(diff) <= tracked * cfg.reconcile_tolerance_pct / 100:
            return ReconcileOutcome(ReconcileAction.NONE)

        if diff > 0:
            msg = f"Wallet holds {wallet_base:.8f}, tracked {tracked:.8f}: adding {diff:.8f}"
            self.ledger.record_manual(diff, price, reason="wallet reconciliation (increase)", now=now)
            logger.warning("[RECON] %s", msg)
            return ReconcileOutcome(ReconcileAction.INCREASED, diff, msg)

        # Quantity that left the wallet is treated as sold at the current price
        if wallet_base < cfg.dust_threshold_base:
            pnl = self.ledger.realised_pnl(price, tracked)
            msg = f"Wallet empty ({wallet_base:.8f}), closing tracked {tracked:.8f} (pnl {pnl:+.4f})"
            self.ledger.record_manual(-tracked, price, reason="wallet reconciliation (closed)", now=now)
            logger.warning("[RECON] %s", msg)
            return ReconcileOutcome(ReconcileAction.CLOSED, -tracked, msg, pnl)

        pnl = self.ledger.realised_pnl(price, -diff)
        msg = f"Wallet holds {wallet_base:.8f}, tracked {tracked:.8f}: removing {-diff:.8f} (pnl {pnl:+.4f})"
        result = self.ledger.record_manual(diff, price, reason="wallet reconciliation (decrease)", now=now)
        logger.warning("[RECON] %s", msg)
        action = ReconcileAction.CLOSED if result is None else ReconcileAction.DECREASED
        return ReconcileOutcome(action, diff, msg, pnl)
