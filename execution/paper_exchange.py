"""Paper exchange: simulated balances and instant fills.

Implements the same interface as the Coinbase client so the trading cycle
cannot tell the difference. Market data comes either from injected candles
(tests, replays) or from a live market-data client.

Fills happen at the requested limit price or the latest known price, with
the taker fee charged in quote currency. Selling more base than held is
allowed only for shorts (the base balance goes negative, margin style).
"""

import uuid
from pathlib import Path
from typing import List, Optional

from core.base_persistence import JsonFileStore
from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Candle
from execution.order_utils import (
    ExchangeUnavailableError,
    InsufficientFundsError,
    OrderResult,
    validate_order_args,
)

logger = get_logger(__name__)

PAPER_BALANCES_FILE = "paper_balances.json"


class PaperExchange:
    def __init__(
        self,
        config: Settings = settings,
        market_data=None,
        data_dir: Optional[Path] = None,
        allow_short: bool = True,
    ):
        self.config = config
        self.market_data = market_data
        self.allow_short = allow_short
        self._store = JsonFileStore(Path(data_dir) / PAPER_BALANCES_FILE) if data_dir else None
        self.balances = {
            config.quote_currency: config.paper_start_balance_quote,
            config.base_currency: config.paper_start_balance_base,
        }
        self._candles: List[Candle] = []
        self._price: Optional[float] = None
        self.orders: List[dict] = []
        self.fail_next_orders = 0
        self._load_balances()

    # ------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------

    def set_candles(self, candles: List[Candle]) -> None:
        self._candles = sorted(candles, key=lambda c: c.start)

    def add_candle(self, candle: Candle) -> None:
        self._candles = [c for c in self._candles if c.start != candle.start] + [candle]
        self._candles.sort(key=lambda c: c.start)

    def set_price(self, price: Optional[float]) -> None:
        self._price = price

    def set_balance(self, currency: str, amount: float) -> None:
        self.balances[currency] = amount
        self._save_balances()

    def _load_balances(self) -> None:
        if self._store is None:
            return
        data = self._store.read()
        if isinstance(data, dict):
            for currency, amount in data.items():
                try:
                    self.balances[currency] = float(amount)
                except (TypeError, ValueError):
                    logger.warning("[ORDER] Ignoring bad paper balance %s=%r", currency, amount)

    def _save_balances(self) -> None:
        if self._store is not None:
            self._store.write(self.balances)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_candles(self, pair: str, granularity_s: int, start: int, end: int) -> List[Candle]:
        if self._candles:
            return [c for c in self._candles if start <= c.start <= end]
        if self.market_data is not None:
            candles = await self.market_data.get_candles(pair, granularity_s, start, end)
            if candles:
                self._price = candles[-1].close
            return candles
        raise ExchangeUnavailableError("paper exchange has no candle source")

    async def get_price(self, pair: str) -> float:
        if self._price:
            return self._price
        if self._candles:
            return self._candles[-1].close
        if self.market_data is not None:
            return await self.market_data.get_price(pair)
        raise ExchangeUnavailableError("paper exchange has no price source")

    # ------------------------------------------------------------------
    # Account / orders
    # ------------------------------------------------------------------

    async def get_balances(self) -> dict[str, float]:
        return {k: max(0.0, v) for k, v in self.balances.items()}

    async def submit_order(
        self,
        pair: str,
        side: str,
        quantity: float,
        order_type: str = "market",
        price: Optional[float] = None,
        post_only: bool = False,
    ) -> OrderResult:
        validate_order_args(pair, side, quantity, order_type, price)
        if self.fail_next_orders > 0:
            self.fail_next_orders -= 1
            return OrderResult(success=False, side=side, error="simulated rejection")

        fill_price = price if order_type == "limit" and price else await self.get_price(pair)
        fee_rate = (self.config.maker_fee_pct if post_only else self.config.taker_fee_pct) / 100
        notional = quantity * fill_price
        fees = notional * fee_rate
        base, quote = self.config.base_currency, self.config.quote_currency

        if side == "BUY":
            cost = notional + fees
            if cost > self.balances.get(quote, 0.0) + 1e-9:
                raise InsufficientFundsError(
                    f"Insufficient {quote} balance: need {cost:.2f}, have {self.balances.get(quote, 0.0):.2f}"
                )
            self.balances[quote] = self.balances.get(quote, 0.0) - cost
            self.balances[base] = self.balances.get(base, 0.0) + quantity
        else:
            held = self.balances.get(base, 0.0)
            if quantity > held + 1e-9 and not self.allow_short:
                raise InsufficientFundsError(f"Insufficient {base} balance: need {quantity:.8f}, have {held:.8f}")
            self.balances[base] = held - quantity
            self.balances[quote] = self.balances.get(quote, 0.0) + notional - fees

        order_id = f"paper-{uuid.uuid4().hex[:12]}"
        self.orders.append({
            "order_id": order_id, "side": side, "quantity": quantity,
            "price": fill_price, "type": order_type, "fees": fees,
        })
        self._save_balances()
        logger.info("[ORDER] PAPER %s %.8f %s @ %.6f fee=%.4f", side, quantity, pair, fill_price, fees)
        return OrderResult(
            success=True,
            order_id=order_id,
            side=side,
            fill_price=fill_price,
            fill_qty=quantity,
            filled_value=notional,
            fees=fees,
            status="FILLED",
        )

    async def cancel_order(self, order_id: str) -> bool:
        # Paper orders fill instantly; nothing is ever resting
        return False

    async def get_open_orders(self, pair: Optional[str] = None) -> list[dict]:
        return []
