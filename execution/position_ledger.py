"""
Position ledger.

Owns the single open position and every mutation of it. Each mutation
appends a Transaction and persists immediately, so the on-disk state is
never behind what the engine believes.

Cost basis: weighted entry = sum(quote) / sum(qty) over ENTRY and
AVERAGE_IN transactions only. EXIT and MANUAL transactions change the
quantity but never the basis.

Realised PnL (fees excluded):
    long:  (exit - weighted_entry) * qty
    short: (weighted_entry - exit) * qty
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Position, Side, Transaction, TransactionType
from core.trading_interfaces import IPositionStore

logger = get_logger(__name__)


class LedgerError(Exception):
    """Invalid ledger operation (programming error, never an exchange failure)."""


class PositionExistsError(LedgerError):
    """open() called while a position is already open."""


@dataclass
class ExitResult:
    quantity: float
    price: float
    pnl: float
    closed: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _tx_id(order_id: Optional[str], prefix: str) -> str:
    return order_id or f"{prefix}-{uuid.uuid4().hex[:12]}"


class PositionLedger:
    """Single-position ledger with weighted cost tracking."""

    def __init__(self, store: Optional[IPositionStore] = None, config: Settings = settings):
        self.store = store
        self.config = config
        self.position: Optional[Position] = None

    @property
    def has_position(self) -> bool:
        return self.position is not None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self, now: Optional[datetime] = None) -> Optional[Position]:
        """Load persisted state and mark it recently loaded."""
        if self.store is None:
            return None
        position = self.store.load()
        if position is not None:
            now = now or _utc_now()
            position.recently_loaded_until = now + timedelta(minutes=self.config.recently_loaded_minutes)
            logger.info(
                "[LEDGER] Restored %s qty=%.8f entry=%.6f (grace until %s)",
                position.side.value, position.quantity, position.weighted_entry_price,
                position.recently_loaded_until.isoformat(),
            )
        self.position = position
        return position

    def save(self) -> None:
        if self.store is not None:
            self.store.save(self.position)

    # ------------------------------------------------------------------
    # Stops
    # ------------------------------------------------------------------

    def _apply_stops(self, position: Position) -> None:
        cfg = self.config
        entry = position.weighted_entry_price
        if position.side == Side.LONG:
            position.stop_loss_price = entry * (1 - cfg.stop_loss_pct / 100)
            position.take_profit_price = entry * (1 + cfg.take_profit_pct / 100)
        else:
            position.stop_loss_price = entry * (1 + cfg.short_stop_loss_pct / 100)
            position.take_profit_price = entry * (1 - cfg.short_take_profit_pct / 100)

    def update_trailing_stop(self, price: float) -> Optional[float]:
        """Activate at trailing_activation_pct profit, then only ratchet protectively."""
        position = self.position
        if position is None or price <= 0:
            return None
        cfg = self.config
        distance = cfg.trailing_distance_pct / 100

        if position.is_long:
            candidate = price * (1 - distance)
            better = position.trailing_stop_price is None or candidate > position.trailing_stop_price
        else:
            candidate = price * (1 + distance)
            better = position.trailing_stop_price is None or candidate < position.trailing_stop_price

        if position.trailing_stop_price is None and position.pnl_pct(price) < cfg.trailing_activation_pct:
            return None
        if better:
            old = position.trailing_stop_price
            position.trailing_stop_price = candidate
            if old is None:
                logger.info("[LEDGER] Trailing stop activated at %.6f (pnl %.2f%%)", candidate, position.pnl_pct(price))
            else:
                logger.info("[LEDGER] Trailing stop %.6f -> %.6f", old, candidate)
            self.save()
        return position.trailing_stop_price

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def open(
        self,
        side: Side,
        price: float,
        quantity: float,
        quote_amount: Optional[float] = None,
        order_id: Optional[str] = None,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> Position:
        if self.position is not None:
            raise PositionExistsError(f"{self.position.side.value} position already open")
        if price <= 0 or quantity <= 0:
            raise LedgerError(f"Cannot open with price={price} quantity={quantity}")

        now = now or _utc_now()
        tx = Transaction(
            type=TransactionType.ENTRY,
            price=price,
            quantity=quantity,
            quote_amount=quote_amount if quote_amount else price * quantity,
            timestamp=now,
            id=_tx_id(order_id, "entry"),
            reason=reason,
        )
        position = Position(
            side=side,
            quantity=quantity,
            opened_at=now,
            stop_loss_price=0.0,
            take_profit_price=0.0,
            transactions=[tx],
        )
        self._apply_stops(position)
        self.position = position
        self.save()
        logger.info(
            "[LEDGER] Opened %s qty=%.8f @ %.6f SL=%.6f TP=%.6f",
            side.value, quantity, price, position.stop_loss_price, position.take_profit_price,
        )
        return position

    def average_in(
        self,
        price: float,
        quantity: float,
        quote_amount: Optional[float] = None,
        order_id: Optional[str] = None,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> Position:
        position = self._require_position("average in")
        if price <= 0 or quantity <= 0:
            raise LedgerError(f"Cannot average in with price={price} quantity={quantity}")

        position.transactions.append(Transaction(
            type=TransactionType.AVERAGE_IN,
            price=price,
            quantity=quantity,
            quote_amount=quote_amount if quote_amount else price * quantity,
            timestamp=now or _utc_now(),
            id=_tx_id(order_id, "avg"),
            reason=reason,
        ))
        position.quantity += quantity
        self._apply_stops(position)
        self.save()
        logger.info(
            "[LEDGER] Averaged in qty=%.8f @ %.6f -> total=%.8f entry=%.6f",
            quantity, price, position.quantity, position.weighted_entry_price,
        )
        return position

    def realised_pnl(self, price: float, quantity: float) -> float:
        position = self._require_position("compute pnl")
        entry = position.weighted_entry_price
        if position.is_long:
            return (price - entry) * quantity
        return (entry - price) * quantity

    def partial_exit(
        self,
        quantity: float,
        price: float,
        order_id: Optional[str] = None,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ExitResult:
        position = self._require_position("exit")
        if quantity <= 0 or price <= 0:
            raise LedgerError(f"Cannot exit quantity={quantity} at price={price}")

        quantity = min(quantity, position.quantity)
        pnl = self.realised_pnl(price, quantity)
        position.transactions.append(Transaction(
            type=TransactionType.EXIT,
            price=price,
            quantity=quantity,
            quote_amount=price * quantity,
            timestamp=now or _utc_now(),
            id=_tx_id(order_id, "exit"),
            reason=reason,
        ))
        position.quantity -= quantity

        closed = position.quantity < self.config.dust_threshold_base
        if closed:
            logger.info("[LEDGER] Closed %s @ %.6f pnl=%.6f (%s)", position.side.value, price, pnl, reason)
            self.position = None
        else:
            logger.info(
                "[LEDGER] Partial exit qty=%.8f @ %.6f pnl=%.6f, remaining=%.8f",
                quantity, price, pnl, position.quantity,
            )
        self.save()
        return ExitResult(quantity=quantity, price=price, pnl=pnl, closed=closed)

    def close(self, price: float, order_id: Optional[str] = None, reason: str = "", now: Optional[datetime] = None) -> ExitResult:
        position = self._require_position("close")
        return self.partial_exit(position.quantity, price, order_id=order_id, reason=reason, now=now)

    def record_manual(self, quantity_delta: float, price: float, reason: str, now: Optional[datetime] = None) -> Optional[Position]:
        """Apply an externally observed quantity change.

        Increases are MANUAL transactions (no basis change); decreases are
        synthetic EXITs. Returns the position, or None once it is closed.
        """
        position = self._require_position("adjust")
        if quantity_delta == 0:
            return position
        now = now or _utc_now()

        if quantity_delta > 0:
            position.transactions.append(Transaction(
                type=TransactionType.MANUAL,
                price=price,
                quantity=quantity_delta,
                quote_amount=price * quantity_delta,
                timestamp=now,
                id=_tx_id(None, "manual"),
                reason=reason,
            ))
            position.quantity += quantity_delta
        else:
            removed = min(-quantity_delta, position.quantity)
            position.transactions.append(Transaction(
                type=TransactionType.EXIT,
                price=price,
                quantity=removed,
                quote_amount=price * removed,
                timestamp=now,
                id=_tx_id(None, "recon"),
                reason=reason,
            ))
            position.quantity -= removed
            if position.quantity < self.config.dust_threshold_base:
                self.position = None

        self.save()
        logger.info("[LEDGER] Adjusted quantity by %+.8f (%s)", quantity_delta, reason)
        return self.position

    def recover(self, price: float, quantity: float, now: Optional[datetime] = None) -> Position:
        """Synthesise a long for base holdings found in the wallet with no tracked position."""
        if self.position is not None:
            raise PositionExistsError("Cannot recover while a position is open")
        position = self.open(Side.LONG, price, quantity, reason="recovered from wallet balance", now=now)
        position.stop_loss_price = price * (1 - self.config.recovered_stop_pct / 100)
        self.save()
        return position

    def _require_position(self, action: str) -> Position:
        if self.position is None:
            raise LedgerError(f"Cannot {action}: no open position")
        return self.position
