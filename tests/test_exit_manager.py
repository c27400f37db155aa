from datetime import datetime, timedelta, timezone

import pytest

from core.config import Settings
from core.models import Decision, Side, SignalKind, SignalScores, TradeSignal
from execution.exit_manager import ExitManager, exit_side
from execution.position_ledger import PositionLedger
from logic.confirmation import ConfirmationGate
from logic.patterns import PatternAnalysis

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _signal(decision=Decision.NONE, reason="test"):
    return TradeSignal(decision, reason, SignalScores())


@pytest.fixture
def cfg():
    return Settings(_env_file=None)


@pytest.fixture
def gate(cfg):
    return ConfirmationGate(cfg)


@pytest.fixture
def manager(gate, cfg):
    return ExitManager(gate, cfg)


@pytest.fixture
def ledger(cfg):
    return PositionLedger(None, cfg)


def _prime_sell(gate, last_check):
    gate[SignalKind.SELL].count = 4
    gate.last_sell_check_price = last_check


class TestLongExits:
    def test_stop_loss_is_forced(self, manager, ledger, candle_factory):
        position = ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        decision = manager.evaluate(position, 0.95, candle_factory([0.95] * 6), _signal(), PatternAnalysis(), NOW)
        assert decision.should_exit
        assert decision.forced
        assert decision.quantity == pytest.approx(100.0)
        assert "stop loss" in decision.reason

    def test_stop_loss_ignores_grace_period(self, manager, ledger, candle_factory):
        position = ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        position.recently_loaded_until = NOW + timedelta(minutes=5)
        decision = manager.evaluate(position, 0.95, candle_factory([0.95] * 6), _signal(), PatternAnalysis(), NOW)
        assert decision.should_exit

    def test_trailing_stop(self, manager, ledger, candle_factory):
        position = ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        position.trailing_stop_price = 1.02
        decision = manager.evaluate(
            position, 1.01, candle_factory([1.0] * 5 + [1.01]), _signal(), PatternAnalysis(), NOW)
        assert decision.should_exit
        assert not decision.forced
        assert "trailing" in decision.reason

    def test_confirmed_sell(self, manager, gate, ledger, candle_factory):
        position = ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        _prime_sell(gate, 1.0295)
        decision = manager.evaluate(
            position, 1.03, candle_factory([1.0] * 5 + [1.03]), _signal(Decision.SELL), PatternAnalysis(), NOW)
        assert decision.should_exit
        assert not decision.is_partial
        assert decision.quantity == pytest.approx(100.0)

    def test_confirmation_without_sell_candidate_holds(self, manager, gate, ledger, candle_factory):
        position = ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        _prime_sell(gate, 1.0295)
        decision = manager.evaluate(
            position, 1.03, candle_factory([1.0] * 5 + [1.03]), _signal(Decision.HOLD), PatternAnalysis(), NOW)
        assert not decision.should_exit
        assert gate[SignalKind.SELL].confirmed

    def test_grace_period_defers_trailing_stop(self, manager, ledger, candle_factory):
        position = ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        position.recently_loaded_until = NOW + timedelta(minutes=5)
        position.trailing_stop_price = 1.02
        decision = manager.evaluate(
            position, 1.01, candle_factory([1.0] * 5 + [1.01]), _signal(), PatternAnalysis(), NOW)
        assert not decision.should_exit
        assert "recently loaded" in decision.reason

    def test_confirmed_sell_not_deferred_by_grace(self, manager, gate, ledger, candle_factory):
        position = ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        position.recently_loaded_until = NOW + timedelta(minutes=5)
        _prime_sell(gate, 1.0295)
        decision = manager.evaluate(
            position, 1.03, candle_factory([1.0] * 5 + [1.03]), _signal(Decision.SELL), PatternAnalysis(), NOW)
        assert decision.should_exit
        assert decision.confirmed

    def test_partial_exit_sells_profitable_entries(self, manager, gate, ledger, candle_factory):
        ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        position = ledger.average_in(0.9, 100.0, now=NOW)
        _prime_sell(gate, 0.9995)
        decision = manager.evaluate(
            position, 1.0, candle_factory([0.95] * 5 + [1.0]), _signal(Decision.SELL), PatternAnalysis(), NOW)
        assert decision.should_exit
        assert decision.is_partial
        assert decision.quantity == pytest.approx(100.0)


class TestShortExits:
    def test_short_stop_loss(self, manager, ledger, candle_factory):
        position = ledger.open(Side.SHORT, 1.0, 100.0, now=NOW)
        decision = manager.evaluate(position, 1.03, candle_factory([1.03] * 6), _signal(), PatternAnalysis(), NOW)
        assert decision.should_exit
        assert decision.forced

    def test_large_profit_covers(self, manager, ledger, candle_factory):
        position = ledger.open(Side.SHORT, 1.0, 100.0, now=NOW)
        decision = manager.evaluate(
            position, 0.97, candle_factory([1.0] * 5 + [0.97]), _signal(), PatternAnalysis(), NOW)
        assert decision.should_exit
        assert decision.quantity == pytest.approx(100.0)

    def test_underwater_short_holds(self, manager, ledger, candle_factory):
        position = ledger.open(Side.SHORT, 1.0, 100.0, now=NOW)
        decision = manager.evaluate(
            position, 1.01, candle_factory([1.0] * 5 + [1.01]), _signal(Decision.COVER), PatternAnalysis(), NOW)
        assert not decision.should_exit


def test_exit_side(ledger):
    assert exit_side(ledger.open(Side.LONG, 1.0, 1.0, now=NOW)) == "SELL"
    ledger.position = None
    assert exit_side(ledger.open(Side.SHORT, 1.0, 1.0, now=NOW)) == "BUY"
