from datetime import datetime, timedelta, timezone

import pytest

from core.config import Settings
from core.models import Side, TransactionType
from core.persistence import PositionStore
from execution.position_ledger import LedgerError, PositionExistsError, PositionLedger

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return PositionStore(tmp_path)


@pytest.fixture
def ledger(store):
    return PositionLedger(store, Settings(_env_file=None))


class TestOpenAndAverage:
    def test_open_sets_stops_and_persists(self, ledger, store):
        position = ledger.open(Side.LONG, 1.0, 100.0, order_id="o-1", now=NOW)
        assert position.stop_loss_price == pytest.approx(0.96)
        assert position.take_profit_price == pytest.approx(1.025)
        assert position.transactions[0].id == "o-1"
        assert store.path.exists()

    def test_open_short_stops(self, ledger):
        position = ledger.open(Side.SHORT, 1.0, 100.0, now=NOW)
        assert position.stop_loss_price == pytest.approx(1.02)
        assert position.take_profit_price == pytest.approx(0.98)

    def test_second_open_is_rejected(self, ledger):
        ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        with pytest.raises(PositionExistsError):
            ledger.open(Side.LONG, 1.0, 100.0, now=NOW)

    def test_invalid_open_is_rejected(self, ledger):
        with pytest.raises(LedgerError):
            ledger.open(Side.LONG, 0.0, 100.0)

    def test_average_in_updates_weighted_entry(self, ledger):
        ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        position = ledger.average_in(0.9, 100.0, now=NOW)
        assert position.quantity == pytest.approx(200.0)
        assert position.weighted_entry_price == pytest.approx(0.95)
        assert position.stop_loss_price == pytest.approx(0.95 * 0.96)
        assert [tx.type for tx in position.transactions] == [TransactionType.ENTRY, TransactionType.AVERAGE_IN]


class TestExits:
    def test_partial_exit_keeps_basis(self, ledger):
        ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        ledger.average_in(0.9, 100.0, now=NOW)
        result = ledger.partial_exit(50.0, 1.1, order_id="x-1", now=NOW)
        assert result.pnl == pytest.approx((1.1 - 0.95) * 50)
        assert not result.closed
        assert ledger.position.quantity == pytest.approx(150.0)
        assert ledger.position.weighted_entry_price == pytest.approx(0.95)

    def test_close_clears_persisted_state(self, ledger, store):
        ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        result = ledger.close(1.05, now=NOW)
        assert result.closed
        assert result.pnl == pytest.approx(5.0)
        assert ledger.position is None
        assert not store.path.exists()

    def test_short_pnl(self, ledger):
        ledger.open(Side.SHORT, 1.0, 100.0, now=NOW)
        assert ledger.close(0.98, now=NOW).pnl == pytest.approx(2.0)

    def test_exit_quantity_is_capped(self, ledger):
        ledger.open(Side.LONG, 1.0, 10.0, now=NOW)
        result = ledger.partial_exit(25.0, 1.0, now=NOW)
        assert result.quantity == pytest.approx(10.0)
        assert result.closed

    def test_mutation_without_position_raises(self, ledger):
        with pytest.raises(LedgerError):
            ledger.close(1.0)


class TestManualAdjustments:
    def test_increase_does_not_change_basis(self, ledger):
        ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        position = ledger.record_manual(20.0, 1.5, "external deposit", now=NOW)
        assert position.quantity == pytest.approx(120.0)
        assert position.weighted_entry_price == pytest.approx(1.0)
        assert position.transactions[-1].type == TransactionType.MANUAL

    def test_decrease_to_zero_closes(self, ledger):
        ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        assert ledger.record_manual(-100.0, 1.0, "sold elsewhere", now=NOW) is None
        assert not ledger.has_position

    def test_recover_uses_wide_stop(self, ledger):
        position = ledger.recover(2.0, 50.0, now=NOW)
        assert position.side == Side.LONG
        assert position.stop_loss_price == pytest.approx(1.9)


class TestTrailingStop:
    def test_activation_and_ratchet(self, ledger):
        ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        assert ledger.update_trailing_stop(1.01) is None
        assert ledger.update_trailing_stop(1.03) == pytest.approx(1.03 * 0.985)
        # Never loosens
        assert ledger.update_trailing_stop(1.02) == pytest.approx(1.03 * 0.985)
        assert ledger.update_trailing_stop(1.05) == pytest.approx(1.05 * 0.985)

    def test_short_trailing_moves_down(self, ledger):
        ledger.open(Side.SHORT, 1.0, 100.0, now=NOW)
        assert ledger.update_trailing_stop(0.97) == pytest.approx(0.97 * 1.015)
        assert ledger.update_trailing_stop(0.98) == pytest.approx(0.97 * 1.015)


class TestReload:
    def test_load_marks_recently_loaded(self, ledger, store):
        ledger.open(Side.LONG, 1.0, 100.0, order_id="o-1", now=NOW)
        later = NOW + timedelta(hours=1)

        fresh = PositionLedger(store, Settings(_env_file=None))
        position = fresh.load(now=later)
        assert position.quantity == pytest.approx(100.0)
        assert position.weighted_entry_price == pytest.approx(1.0)
        assert position.recently_loaded_until == later + timedelta(minutes=5)

    def test_corrupt_state_is_treated_as_flat(self, store):
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text('{"side": "LONG", "quantity": 0}')
        assert PositionLedger(store, Settings(_env_file=None)).load() is None
