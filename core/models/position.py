"""Position and transaction models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class Side(Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class TransactionType(Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    AVERAGE_IN = "AVERAGE_IN"
    MANUAL = "MANUAL"


COST_BASIS_TYPES = (TransactionType.ENTRY, TransactionType.AVERAGE_IN)


def _parse_ts(value) -> datetime:
    if isinstance(value, (int, float)):
        # Millisecond epochs show up in hand-edited state files
        if value > 1e12:
            value = value / 1000
        return datetime.fromtimestamp(value, tz=timezone.utc)
    ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class Transaction:
    """Single fill (or synthetic adjustment) within a position's lifetime."""
    type: TransactionType
    price: float
    quantity: float
    quote_amount: float
    timestamp: datetime
    id: str
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "price": self.price,
            "quantity": self.quantity,
            "quoteAmount": self.quote_amount,
            "timestamp": self.timestamp.isoformat(),
            "id": self.id,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        price = float(data["price"])
        quantity = float(data["quantity"])
        quote = data.get("quoteAmount")
        return cls(
            type=TransactionType(data["type"]),
            price=price,
            quantity=quantity,
            quote_amount=float(quote) if quote is not None else price * quantity,
            timestamp=_parse_ts(data["timestamp"]),
            id=str(data.get("id", "")),
            reason=data.get("reason", ""),
        )


@dataclass
class Position:
    """The single open position tracked by the engine."""
    side: Side
    quantity: float
    opened_at: datetime
    stop_loss_price: float
    take_profit_price: float
    transactions: list[Transaction] = field(default_factory=list)
    trailing_stop_price: Optional[float] = None
    confirmation_state: dict = field(default_factory=dict)
    recently_loaded_until: Optional[datetime] = None

    @property
    def weighted_entry_price(self) -> float:
        """Quantity-weighted cost basis over ENTRY/AVERAGE_IN fills only."""
        qty = 0.0
        quote = 0.0
        for tx in self.transactions:
            if tx.type in COST_BASIS_TYPES:
                qty += tx.quantity
                quote += tx.quote_amount
        if qty <= 0:
            return 0.0
        return quote / qty

    @property
    def entry_transactions(self) -> list[Transaction]:
        return [tx for tx in self.transactions if tx.type in COST_BASIS_TYPES]

    @property
    def is_long(self) -> bool:
        return self.side == Side.LONG

    def pnl_pct(self, price: float) -> float:
        entry = self.weighted_entry_price
        if entry <= 0 or price <= 0:
            return 0.0
        if self.is_long:
            return (price - entry) / entry * 100
        return (entry - price) / entry * 100

    def unrealized_pnl(self, price: float) -> float:
        entry = self.weighted_entry_price
        if self.is_long:
            return (price - entry) * self.quantity
        return (entry - price) * self.quantity

    def should_stop(self, price: float) -> bool:
        """Hard stop-loss check (independent of the trailing stop)."""
        if self.stop_loss_price <= 0:
            return False
        if self.is_long:
            return price <= self.stop_loss_price
        return price >= self.stop_loss_price

    def trailing_stop_hit(self, price: float) -> bool:
        if self.trailing_stop_price is None:
            return False
        if self.is_long:
            return price < self.trailing_stop_price
        return price > self.trailing_stop_price

    def is_recently_loaded(self, now: Optional[datetime] = None) -> bool:
        if self.recently_loaded_until is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now < self.recently_loaded_until

    def to_dict(self) -> dict:
        return {
            "side": self.side.value,
            "transactions": [tx.to_dict() for tx in self.transactions],
            "weightedEntryPrice": self.weighted_entry_price,
            "quantity": self.quantity,
            "openedAt": self.opened_at.isoformat(),
            "stopLossPrice": self.stop_loss_price,
            "takeProfitPrice": self.take_profit_price,
            "trailingStopPrice": self.trailing_stop_price,
            "confirmationState": dict(self.confirmation_state),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        transactions = [Transaction.from_dict(tx) for tx in data.get("transactions", [])]
        quantity = float(data["quantity"])
        if quantity <= 0:
            raise ValueError(f"Persisted position has non-positive quantity {quantity}")
        trailing = data.get("trailingStopPrice")
        position = cls(
            side=Side(data["side"]),
            quantity=quantity,
            opened_at=_parse_ts(data["openedAt"]),
            stop_loss_price=float(data.get("stopLossPrice") or 0),
            take_profit_price=float(data.get("takeProfitPrice") or 0),
            transactions=transactions,
            trailing_stop_price=float(trailing) if trailing is not None else None,
            confirmation_state=dict(data.get("confirmationState") or {}),
        )
        if position.weighted_entry_price <= 0:
            raise ValueError("Persisted position has no entry transactions")
        return position
