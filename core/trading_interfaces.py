"""Component interfaces shared by paper/live implementations."""

from typing import Optional, Protocol, TYPE_CHECKING

from core.events import EngineEvent
from core.models import Candle, Position

if TYPE_CHECKING:
    from execution.order_utils import OrderResult


class IExchangeClient(Protocol):
    """Exchange access consumed by the engine.

    Every call may raise; callers treat a failure as "skip the dependent
    action this cycle".
    """

    async def get_balances(self) -> dict[str, float]:
        ...

    async def get_candles(self, pair: str, granularity_s: int, start: int, end: int) -> list[Candle]:
        ...

    async def get_price(self, pair: str) -> float:
        ...

    async def submit_order(
        self,
        pair: str,
        side: str,
        quantity: float,
        order_type: str = "market",
        price: Optional[float] = None,
        post_only: bool = False,
    ) -> "OrderResult":
        ...

    async def cancel_order(self, order_id: str) -> bool:
        ...

    async def get_open_orders(self, pair: Optional[str] = None) -> list[dict]:
        ...


class IEventSink(Protocol):
    """Outbound notification sink."""

    def notify(self, event: EngineEvent) -> None:
        ...


class IPositionStore(Protocol):
    """Position persistence abstraction."""

    def save(self, position: Optional[Position]) -> None:
        ...

    def load(self) -> Optional[Position]:
        ...

    def clear(self) -> None:
        ...
