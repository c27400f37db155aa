"""Fakes shared by the engine tests."""

from typing import List, Optional

from core.events import EngineEvent
from core.models import Candle, Decision, SignalScores, TradeSignal
from execution.order_utils import ExchangeUnavailableError, OrderResult
from logic.patterns import PatternAnalysis

BASE_TS = 1_700_000_040 - (1_700_000_040 % 60)


def make_candles(
    closes: List[float],
    start: int = BASE_TS,
    step: int = 60,
    volume: float = 100.0,
    opens: Optional[List[float]] = None,
) -> List[Candle]:
    """Candles whose open is the previous close (or `opens[i]`), with a 0.1% wick either side."""
    candles = []
    for i, close in enumerate(closes):
        if opens is not None:
            open_ = opens[i]
        else:
            open_ = closes[i - 1] if i > 0 else close
        candles.append(Candle(
            start=start + i * step,
            open=open_,
            high=max(open_, close) * 1.001,
            low=min(open_, close) * 0.999,
            close=close,
            volume=volume,
        ))
    return candles


class FakeExchange:
    """In-memory IExchangeClient: fills at the last candle close and moves balances."""

    def __init__(self, candles=None, balances=None, pair="XRP-USDC"):
        self.candles: List[Candle] = list(candles or [])
        self.balances = dict(balances or {"USDC": 1000.0, "XRP": 0.0})
        self.base, self.quote = pair.split("-")
        self.orders = []
        self.fail_candles = False
        self.fail_balances = False
        self.order_error: Optional[Exception] = None
        self.candle_calls = 0
        self.fee_rate = 0.0

    @property
    def price(self) -> float:
        return self.candles[-1].close

    def add_candle(self, close: float, open_: Optional[float] = None, volume: float = 100.0) -> Candle:
        last = self.candles[-1]
        open_ = last.close if open_ is None else open_
        candle = Candle(
            start=last.start + 60,
            open=open_,
            high=max(open_, close) * 1.001,
            low=min(open_, close) * 0.999,
            close=close,
            volume=volume,
        )
        self.candles.append(candle)
        return candle

    async def get_candles(self, pair, granularity_s, start, end):
        self.candle_calls += 1
        if self.fail_candles:
            raise ExchangeUnavailableError("candles unavailable")
        return [c for c in self.candles if c.start >= start]

    async def get_price(self, pair):
        return self.price

    async def get_balances(self):
        if self.fail_balances:
            raise ExchangeUnavailableError("balances unavailable")
        return dict(self.balances)

    async def submit_order(self, pair, side, quantity, order_type="market", price=None, post_only=False):
        if self.order_error is not None:
            raise self.order_error
        fill_price = price if order_type == "limit" and price else self.price
        self.orders.append({"side": side, "quantity": quantity, "type": order_type, "price": fill_price})
        if side == "BUY":
            self.balances[self.quote] = self.balances.get(self.quote, 0.0) - quantity * fill_price
            self.balances[self.base] = self.balances.get(self.base, 0.0) + quantity
        else:
            self.balances[self.quote] = self.balances.get(self.quote, 0.0) + quantity * fill_price
            self.balances[self.base] = self.balances.get(self.base, 0.0) - quantity
        return OrderResult(
            success=True,
            order_id=f"fake-{len(self.orders)}",
            side=side,
            fill_price=fill_price,
            fill_qty=quantity,
            status="FILLED",
            fees=quantity * fill_price * self.fee_rate or None,
        )

    async def cancel_order(self, order_id):
        return False

    async def get_open_orders(self, pair=None):
        return []


class RecordingSink:
    def __init__(self):
        self.events: List[EngineEvent] = []

    def notify(self, event: EngineEvent):
        self.events.append(event)

    def types(self):
        return [e.type for e in self.events]


class FakeScorer:
    """Returns the same candidate every cycle."""

    def __init__(self, decision=Decision.NONE):
        self.decision = decision

    def score(self, snap, candles, patterns, position=None):
        return TradeSignal(self.decision, f"stub {self.decision.value}", SignalScores())


class FakeAnalyzer:
    def __init__(self, analysis: Optional[PatternAnalysis] = None):
        self.analysis = analysis or PatternAnalysis()

    def analyze(self, candles):
        return self.analysis
