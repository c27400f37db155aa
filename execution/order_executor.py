"""Order submission with an in-flight guard.

At most one order per (side, signal kind) may be outstanding. A second
request for the same key while the first is awaiting the exchange is
skipped instead of queued.
"""

from typing import Optional, Set, Tuple

from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Fatal, Ok, Result, SignalKind, Skip
from core.trading_interfaces import IExchangeClient
from execution.order_utils import (
    OrderError,
    OrderFatalError,
    classify_error,
    floor_to_lot,
    validate_order_args,
    with_retry_async,
)

logger = get_logger(__name__)


class OrderExecutor:
    def __init__(self, client: IExchangeClient, config: Settings = settings):
        self.client = client
        self.config = config
        self.in_flight: Set[Tuple[str, SignalKind]] = set()

    def is_in_flight(self, side: str, kind: SignalKind) -> bool:
        return (side, kind) in self.in_flight

    async def submit(
        self, kind: SignalKind, side: str, quantity: float, price: Optional[float] = None
    ) -> Result:
        """Ok(OrderResult), Skip(reason) or Fatal(OrderError)."""
        cfg = self.config
        key = (side, kind)
        if key in self.in_flight:
            logger.warning("[ORDER] %s %s already in flight, skipping", side, kind.value)
            return Skip(f"{side} {kind.value} order already in flight")

        quantity = floor_to_lot(quantity, cfg.lot_decimals)
        post_only = cfg.post_only_sells and side == "SELL" and price is not None
        order_type = "limit" if post_only else "market"
        try:
            validate_order_args(cfg.trading_pair, side, quantity, order_type, price)
        except OrderFatalError as e:
            logger.error("[ORDER] Rejected before submit: %s", e)
            return Fatal(e)

        self.in_flight.add(key)
        try:
            submit = with_retry_async(max_attempts=cfg.order_max_attempts)(self.client.submit_order)
            result = await submit(
                cfg.trading_pair, side, quantity,
                order_type=order_type,
                price=price if post_only else None,
                post_only=post_only,
            )
        except OrderError as e:
            logger.error("[ORDER] %s %s %.8f failed: %s", side, kind.value, quantity, e)
            return Fatal(e)
        finally:
            self.in_flight.discard(key)

        if not result.success:
            error = classify_error(Exception(result.error or "order rejected"))
            logger.error("[ORDER] %s %s %.8f rejected: %s", side, kind.value, quantity, result.error)
            return Fatal(error)

        if result.fill_qty is None:
            result.fill_qty = quantity
        if result.fill_price is None and price:
            result.fill_price = price
        logger.info(
            "[ORDER] %s %s %.8f filled @ %s (order %s)",
            side, kind.value, result.fill_qty, result.fill_price, result.order_id,
        )
        return Ok(result)
