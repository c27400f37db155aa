import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.candle_store import CANDLE_CACHE_FILE, CandleStore
from core.config import Settings
from core.models import Ok, Side, SignalKind, Skip, Fatal
from core.persistence import PositionStore
from core.scheduler import CycleScheduler, seconds_until_next_cycle
from core.state import EngineState
from execution.position_ledger import PositionLedger
from logic.confirmation import ConfirmationGate

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _state(config, data_dir):
    return EngineState(
        ledger=PositionLedger(PositionStore(data_dir), config),
        candles=CandleStore(data_dir / CANDLE_CACHE_FILE, capacity=config.candle_cache_size),
        gate=ConfirmationGate(config),
        config=config,
    )


class TestEngineState:
    def test_config_defaults_to_module_settings(self, config, tmp_path):
        from core.config import settings

        state = EngineState(
            ledger=PositionLedger(PositionStore(tmp_path), config),
            candles=CandleStore(tmp_path / CANDLE_CACHE_FILE),
            gate=ConfirmationGate(config),
        )
        assert state.config is settings

    def test_balances(self, config, tmp_path):
        state = _state(config, tmp_path)
        state.balances = {"XRP": 12.5, "USDC": None}
        assert state.base_balance() == 12.5
        assert state.quote_balance() == 0.0

    def test_long_reentry_rules(self, config, tmp_path):
        state = _state(config, tmp_path)
        assert state.long_reentry_allowed(1.0, NOW)
        state.record_sell(1.0, NOW)
        assert not state.long_reentry_allowed(1.005, NOW + timedelta(minutes=5))
        assert state.long_reentry_allowed(1.011, NOW + timedelta(minutes=5))
        assert state.long_reentry_allowed(0.9, NOW + timedelta(minutes=30))

    def test_short_reentry_rules(self, config, tmp_path):
        state = _state(config, tmp_path)
        state.record_cover(1.0, NOW)
        assert not state.short_reentry_allowed(0.995, NOW + timedelta(minutes=1))
        assert state.short_reentry_allowed(0.989, NOW + timedelta(minutes=1))

    def test_restart_restores_position_but_not_confirmations(self, config, tmp_path, candle_factory):
        state = _state(config, tmp_path)
        state.candles.merge(candle_factory([1.0] * 5))
        state.ledger.open(Side.LONG, 1.0, 100.0, now=NOW)
        state.gate[SignalKind.SELL].count = 3
        state.gate.last_sell_check_price = 1.02
        state.persist_confirmation()

        restarted = _state(config, tmp_path)
        position = restarted.restore(now=NOW + timedelta(hours=1))
        assert position is not None
        assert len(restarted.candles) == 5
        assert position.confirmation_state["SELL"]["count"] == 3
        assert restarted.gate.count(SignalKind.SELL) == 0
        assert restarted.gate.last_sell_check_price == 0.0
        assert position.is_recently_loaded(NOW + timedelta(hours=1, minutes=1))

    def test_cycle_info_shape(self, config, tmp_path):
        state = _state(config, tmp_path)
        state.balances = {"XRP": 0.0, "USDC": 1000.0}
        info = state.to_cycle_info(NOW)
        assert info["timestamp"] == "2024-03-01T12:00:00Z"
        assert info["position"] is None
        assert info["signal"] is None
        assert set(info["confirmations"]) >= {"BUY", "SELL", "SHORT", "COVER"}
        assert info["balances"]["USDC"] == 1000.0


class TestScheduling:
    def test_next_cycle_aligns_to_boundary(self):
        now = datetime(2024, 3, 1, 12, 0, 45, tzinfo=timezone.utc)
        assert seconds_until_next_cycle(now, 60, 500) == pytest.approx(15.5)

    def test_exact_boundary_waits_full_interval(self):
        assert seconds_until_next_cycle(NOW, 60, 0) == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_cycle_errors_never_escape(self):
        async def broken(now):
            raise RuntimeError("boom")

        scheduler = CycleScheduler(broken, Settings(_env_file=None))
        result = await scheduler.run_cycle(NOW)
        assert isinstance(result, Fatal)
        assert scheduler.cycles_failed == 1

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self):
        release = asyncio.Event()

        async def slow(now):
            await release.wait()
            return Ok("done")

        scheduler = CycleScheduler(slow, Settings(_env_file=None))
        first = asyncio.create_task(scheduler.run_cycle(NOW))
        await asyncio.sleep(0)
        second = await scheduler.run_cycle(NOW)
        release.set()
        assert isinstance(second, Skip)
        assert isinstance(await first, Ok)
        assert scheduler.cycles_run == 1

    @pytest.mark.asyncio
    async def test_delivery_runs_after_each_cycle(self):
        class Delivery:
            def __init__(self):
                self.calls = []

            async def deliver_pending(self, batch_size):
                self.calls.append(batch_size)
                if len(self.calls) > 1:
                    raise RuntimeError("telegram down")
                return 1

        async def cycle(now):
            return Ok(None)

        delivery = Delivery()
        scheduler = CycleScheduler(cycle, Settings(_env_file=None), delivery=delivery)
        assert isinstance(await scheduler.run_cycle(NOW), Ok)
        assert isinstance(await scheduler.run_cycle(NOW), Ok)
        assert delivery.calls == [20, 20]

    @pytest.mark.asyncio
    async def test_run_forever_stops(self):
        seen = []

        async def cycle(now):
            seen.append(now)
            scheduler.stop()
            return Ok(None)

        scheduler = CycleScheduler(cycle, Settings(_env_file=None))
        await asyncio.wait_for(scheduler.run_forever(), timeout=5)
        assert len(seen) == 1
        assert not scheduler.running
