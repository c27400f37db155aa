"""Structured engine events and the fan-out bus that delivers them to sinks.

The trading cycle never talks to a transport directly: it emits EngineEvent
values and whatever is subscribed (notification queue, tests) receives them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from core.logging_utils import get_logger

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EventType(Enum):
    TRADE = "trade"
    POSITION_ADJUSTED = "position_adjusted"
    POSITION_RECOVERED = "position_recovered"
    POSITION_CLOSED = "position_closed"
    ORDER_FAILED = "order_failed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    PATTERN = "pattern"
    ERROR = "error"
    INFO = "info"


@dataclass
class EngineEvent:
    """Outbound notification payload."""

    type: EventType
    pair: str
    message: str
    action: str = ""
    price: float = 0.0
    quantity: float = 0.0
    quote_amount: float = 0.0
    order_id: str = ""
    entry_price: Optional[float] = None
    pnl: Optional[float] = None
    details: dict = field(default_factory=dict)
    ts: datetime = field(default_factory=_utc_now)

    def render(self) -> str:
        """Human-readable one-message summary."""
        head = f"{self.action} {self.pair}" if self.action else self.pair
        lines = [f"[{self.type.value.upper()}] {head}", self.message]
        if self.price:
            lines.append(f"Price: {self.price:.6f}")
        if self.quantity:
            lines.append(f"Quantity: {self.quantity:.8f}")
        if self.quote_amount:
            lines.append(f"Value: {self.quote_amount:.2f}")
        if self.entry_price:
            lines.append(f"Entry: {self.entry_price:.6f}")
        if self.pnl is not None:
            lines.append(f"PnL: {self.pnl:+.4f}")
        if self.order_id:
            lines.append(f"Order: {self.order_id}")
        return "\n".join(lines)


class EventBus:
    """Minimal sync bus; a failing sink never breaks the trading path."""

    def __init__(self):
        self._handlers: List[Callable[[EngineEvent], None]] = []

    def subscribe(self, handler: Callable[[EngineEvent], None]) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: Callable[[EngineEvent], None]) -> bool:
        try:
            self._handlers.remove(handler)
            return True
        except ValueError:
            return False

    def notify(self, event: EngineEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.warning("[EVENT] Sink error for %s: %s", event.type.value, e)
                continue
