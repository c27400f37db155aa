from datetime import datetime, timedelta, timezone

import pytest

from core.candle_store import CANDLE_CACHE_FILE, CandleStore
from core.config import Settings
from core.events import EventType
from core.logger import CYCLE_INFO_FILE, TradeLog
from core.models import Decision, Ok, Side, Skip, TransactionType
from core.persistence import PositionStore, ProfitStore
from core.state import EngineState
from execution.order_utils import InsufficientFundsError
from execution.position_ledger import PositionLedger
from execution.reconciliation import ReconcileAction
from execution.risk import RiskSizer
from execution.trading_cycle import TradingCycle
from logic.confirmation import ConfirmationGate
from logic.patterns import CandlePatternAnalyzer, DetectedPattern, PatternAnalysis, PatternSignal
from logic.scoring import SignalScorer
from tests.test_helpers import BASE_TS, FakeAnalyzer, FakeExchange, FakeScorer, make_candles

START = datetime.fromtimestamp(BASE_TS + 3600, tz=timezone.utc)


def build_cycle(config, exchange, data_dir, sink, decision=Decision.NONE):
    state = EngineState(
        ledger=PositionLedger(PositionStore(data_dir), config),
        candles=CandleStore(data_dir / CANDLE_CACHE_FILE, capacity=config.candle_cache_size),
        gate=ConfirmationGate(config),
        config=config,
    )
    cycle = TradingCycle(exchange, state, sink=sink, data_dir=data_dir, logs_dir=data_dir / "logs", config=config)
    cycle.scorer = FakeScorer(decision)
    cycle.analyzer = FakeAnalyzer()
    return cycle


def at(i):
    return START + timedelta(minutes=i)


@pytest.mark.asyncio
async def test_buy_after_required_confirmations(config, fake_exchange, tmp_path, sink):
    cycle = build_cycle(config, fake_exchange, tmp_path, sink, Decision.BUY)

    for i in range(3):
        result = await cycle.run_once(at(i))
        assert isinstance(result, Ok)
        assert fake_exchange.orders == []

    result = await cycle.run_once(at(3))
    assert result.value.actions == ["BUY"]
    assert len(fake_exchange.orders) == 1
    assert fake_exchange.orders[0]["side"] == "BUY"

    position = cycle.state.position
    assert position.side == Side.LONG
    assert position.weighted_entry_price == pytest.approx(fake_exchange.price)
    assert EventType.TRADE in sink.types()
    assert [r["action"] for r in TradeLog(tmp_path).records()] == ["BUY"]


@pytest.mark.asyncio
async def test_confirmed_take_profit_sell(config, fake_exchange, tmp_path, sink):
    entry = 1.0
    fake_exchange.balances["XRP"] = 100.0
    cycle = build_cycle(config, fake_exchange, tmp_path, sink, Decision.SELL)
    cycle.state.ledger.open(Side.LONG, entry, 100.0, now=START)

    for i in range(5):
        fake_exchange.add_candle(entry * 1.01, open_=entry * 1.012)
        await cycle.run_once(at(i))

    assert len(fake_exchange.orders) == 1
    assert fake_exchange.orders[0]["side"] == "SELL"
    assert cycle.state.position is None
    assert cycle.state.cumulative_profit == pytest.approx((entry * 1.01 - entry) * 100)
    assert ProfitStore(tmp_path).load() == pytest.approx(cycle.state.cumulative_profit)
    assert EventType.POSITION_CLOSED in sink.types()

    # Still SELL, but nothing left to sell
    fake_exchange.add_candle(entry * 1.01, open_=entry * 1.012)
    await cycle.run_once(at(5))
    assert len(fake_exchange.orders) == 1


@pytest.mark.asyncio
async def test_empty_wallet_closes_tracked_position(config, fake_exchange, tmp_path, sink):
    fake_exchange.balances["XRP"] = 0.0
    cycle = build_cycle(config, fake_exchange, tmp_path, sink)
    position = cycle.state.ledger.open(Side.LONG, 1.0, 100.0, now=START)
    fake_exchange.add_candle(1.02)

    result = await cycle.run_once(at(0))

    assert result.value.reconcile == ReconcileAction.CLOSED
    assert cycle.state.position is None
    assert position.transactions[-1].type == TransactionType.EXIT
    assert cycle.state.cumulative_profit == pytest.approx((1.02 - 1.0) * 100)
    assert fake_exchange.orders == []
    assert EventType.POSITION_CLOSED in sink.types()


@pytest.mark.asyncio
async def test_trades_on_stale_window_when_candles_fail(tmp_path, fake_exchange, sink):
    config = Settings(_env_file=None, data_dir=str(tmp_path), buy_confirmations_required=3)
    cycle = build_cycle(config, fake_exchange, tmp_path, sink, Decision.BUY)
    cycle.state.candles.merge(fake_exchange.candles)
    window = [c.start for c in cycle.state.candles.window()]
    fake_exchange.fail_candles = True

    results = [await cycle.run_once(at(i)) for i in range(3)]

    assert all(isinstance(r, Ok) for r in results)
    assert [c.start for c in cycle.state.candles.window()] == window
    assert fake_exchange.candle_calls == 3
    assert len(fake_exchange.orders) == 1
    assert cycle.state.position is not None


@pytest.mark.asyncio
async def test_insufficient_funds_is_reported(tmp_path, fake_exchange, sink):
    config = Settings(_env_file=None, data_dir=str(tmp_path), buy_confirmations_required=1)
    fake_exchange.order_error = InsufficientFundsError("not enough USDC")
    cycle = build_cycle(config, fake_exchange, tmp_path, sink, Decision.BUY)

    result = await cycle.run_once(at(0))

    assert isinstance(result, Ok)
    assert cycle.state.position is None
    assert EventType.INSUFFICIENT_FUNDS in sink.types()


@pytest.mark.asyncio
async def test_short_window_skips_cycle(config, tmp_path, sink):
    exchange = FakeExchange(make_candles([1.0] * 10))
    cycle = build_cycle(config, exchange, tmp_path, sink, Decision.BUY)
    result = await cycle.run_once(at(0))
    assert isinstance(result, Skip)
    assert exchange.orders == []


@pytest.mark.asyncio
async def test_balance_failure_skips_reconciliation(config, fake_exchange, tmp_path, sink):
    fake_exchange.fail_balances = True
    cycle = build_cycle(config, fake_exchange, tmp_path, sink)
    cycle.state.ledger.open(Side.LONG, 1.0, 100.0, now=START)

    result = await cycle.run_once(at(0))

    assert isinstance(result, Ok)
    assert result.value.reconcile is None
    assert cycle.state.position.quantity == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_average_in_skips_next_reconciliation(tmp_path, fake_exchange, sink):
    config = Settings(_env_file=None, data_dir=str(tmp_path), buy_confirmations_required=1)
    fake_exchange.balances["XRP"] = 100.0
    cycle = build_cycle(config, fake_exchange, tmp_path, sink, Decision.BUY)
    cycle.state.ledger.open(Side.LONG, 1.0, 100.0, now=START)
    fake_exchange.add_candle(0.97)

    result = await cycle.run_once(at(0))

    assert result.value.actions == ["AVERAGE_IN"]
    assert len(cycle.state.position.entry_transactions) == 2
    assert cycle.state.skip_reconcile

    result = await cycle.run_once(at(1))
    assert result.value.reconcile == ReconcileAction.SKIPPED
    assert not cycle.state.skip_reconcile


@pytest.mark.asyncio
async def test_pattern_event_once_per_candle(config, fake_exchange, tmp_path, sink):
    cycle = build_cycle(config, fake_exchange, tmp_path, sink)
    cycle.analyzer = FakeAnalyzer(PatternAnalysis(
        PatternSignal.BULLISH, 2.0, [DetectedPattern("bullish_engulfing", 2.0)]))

    await cycle.run_once(at(0))
    await cycle.run_once(at(1))
    assert sink.types().count(EventType.PATTERN) == 1

    fake_exchange.add_candle(1.0)
    await cycle.run_once(at(2))
    assert sink.types().count(EventType.PATTERN) == 2


@pytest.mark.asyncio
async def test_cycle_records_are_written(config, fake_exchange, tmp_path, sink):
    cycle = build_cycle(config, fake_exchange, tmp_path, sink)
    await cycle.run_once(at(0))

    assert (tmp_path / CYCLE_INFO_FILE).exists()
    assert cycle.cycle_info.read()["cycle"] == 1
    assert list((tmp_path / "logs").glob("decisions_*.jsonl"))
    assert len(cycle.price_history.entries()) == 1


@pytest.mark.asyncio
async def test_reconciled_cycle_does_not_average_in(tmp_path, fake_exchange, sink):
    config = Settings(_env_file=None, data_dir=str(tmp_path), buy_confirmations_required=1)
    fake_exchange.balances["XRP"] = 150.0
    cycle = build_cycle(config, fake_exchange, tmp_path, sink, Decision.BUY)
    cycle.state.ledger.open(Side.LONG, 1.0, 100.0, now=START)
    fake_exchange.add_candle(0.97)

    result = await cycle.run_once(at(0))

    assert result.value.reconcile == ReconcileAction.INCREASED
    assert result.value.actions == []
    assert fake_exchange.orders == []
    assert cycle.state.position.quantity == pytest.approx(150.0)
    assert len(cycle.state.position.entry_transactions) == 1

    # Wallet and ledger agree again, so the confirmed buy may average in
    result = await cycle.run_once(at(1))
    assert result.value.reconcile == ReconcileAction.NONE
    assert result.value.actions == ["AVERAGE_IN"]


@pytest.mark.asyncio
async def test_entry_fee_is_charged_to_profit(tmp_path, fake_exchange, sink):
    config = Settings(_env_file=None, data_dir=str(tmp_path), buy_confirmations_required=1)
    fake_exchange.fee_rate = 0.01
    cycle = build_cycle(config, fake_exchange, tmp_path, sink, Decision.BUY)

    result = await cycle.run_once(at(0))

    assert result.value.actions == ["BUY"]
    position = cycle.state.position
    fee = position.quantity * fake_exchange.price * 0.01
    assert position.weighted_entry_price == pytest.approx(fake_exchange.price)
    assert cycle.state.cumulative_profit == pytest.approx(-fee)
    assert TradeLog(tmp_path).records()[0]["pnl"] == pytest.approx(-fee)


@pytest.mark.asyncio
async def test_exit_fee_is_charged_to_profit(config, fake_exchange, tmp_path, sink):
    entry = 1.0
    exit_price = entry * 1.01
    fake_exchange.balances["XRP"] = 100.0
    fake_exchange.fee_rate = 0.01
    cycle = build_cycle(config, fake_exchange, tmp_path, sink, Decision.SELL)
    cycle.state.ledger.open(Side.LONG, entry, 100.0, now=START)

    for i in range(5):
        fake_exchange.add_candle(exit_price, open_=entry * 1.012)
        await cycle.run_once(at(i))

    assert cycle.state.position is None
    net = (exit_price - entry) * 100 - exit_price * 100 * 0.01
    assert cycle.state.cumulative_profit == pytest.approx(net)
    assert ProfitStore(tmp_path).load() == pytest.approx(net)
    assert TradeLog(tmp_path).records()[-1]["pnl"] == pytest.approx(net)


def _crash_then_drift(drift_candles):
    """Flat at 1.0, four-candle crash to 0.80, then a slow slide of gap-down green candles."""
    closes = [1.0] * 40 + [0.95, 0.90, 0.85, 0.80]
    opens = [1.0] * 41 + [0.95, 0.90, 0.85]
    for j in range(drift_candles):
        close = 0.80 - 0.0001 * (j + 1)
        closes.append(close)
        opens.append(close - 0.004)
    return make_candles(closes, opens=opens)


@pytest.mark.asyncio
async def test_oversold_bounce_opens_one_sized_long(config, tmp_path, sink):
    series = _crash_then_drift(20)
    exchange = FakeExchange(series[:config.min_required_candles])
    upcoming = series[config.min_required_candles:]
    cycle = build_cycle(config, exchange, tmp_path, sink)
    cycle.scorer = SignalScorer(config)
    cycle.analyzer = CandlePatternAnalyzer()

    signals = []
    for i in range(len(upcoming)):
        result = await cycle.run_once(at(i))
        assert isinstance(result, Ok)
        signals.append(result.value.signal)
        if exchange.orders:
            break
        exchange.candles.append(upcoming[i])

    assert len(exchange.orders) == 1
    assert exchange.orders[0]["side"] == "BUY"
    assert signals[-1] == Decision.BUY
    assert signals.count(Decision.BUY) >= config.buy_confirmations_required

    price = exchange.price
    expected_qty = RiskSizer(config).size(
        price, price * (1 - config.stop_loss_pct / 100), 1000.0, config.risk_percent_per_trade
    )
    position = cycle.state.position
    assert position.side == Side.LONG
    assert position.weighted_entry_price == pytest.approx(price)
    assert position.quantity == pytest.approx(expected_qty)
