"""
One pass of the trading engine.

Order of work:
1. fetch + merge candles (stale window kept on failure)
2. indicator snapshot (cycle skipped below the warm-up window)
3. candle patterns + scores -> candidate signal
4. balances
5. wallet reconciliation (skipped right after the engine averaged in); a
   cycle that adjusted the position places no new entries or averaging
6. trailing stop
7. exits (stop, trailing, confirmed sell / cover)
8. confirmation-gated entries (BUY, SHORT) and averaging-in
9. records: cycle info, price history, decision log, confirmation snapshot

Ledger PnL is gross. Order fees are taken out of cumulative profit and the
trade log here: entry fees when the entry fills, exit fees on the exit.

Exchange failures skip the dependent action. Ledger errors become error
events. Nothing here raises into the scheduler except programming errors.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from core.config import Settings, settings
from core.events import EngineEvent, EventType
from core.logger import CycleInfoWriter, PriceHistory, TradeLog, TradeRecord, log_decision, utc_iso_str
from core.logging_utils import get_logger
from core.models import Decision, Fatal, Ok, Result, Side, SignalKind, Skip, TradeSignal
from core.persistence import ProfitStore
from core.state import EngineState
from core.trading_interfaces import IEventSink, IExchangeClient
from execution.exit_manager import ExitDecision, ExitManager, exit_side
from execution.order_executor import OrderExecutor
from execution.order_utils import InsufficientFundsError, floor_to_lot
from execution.position_ledger import LedgerError
from execution.reconciliation import ReconcileAction, ReconciliationMonitor
from execution.risk import RiskSizer
from logic.confirmation import GateDecision
from logic.patterns import CandlePatternAnalyzer, PatternAnalysis
from logic.scoring import SignalScorer
from logic.snapshot import compute_snapshot

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CycleReport:
    """What one cycle saw and did."""
    price: float = 0.0
    signal: Optional[Decision] = None
    reason: str = ""
    actions: List[str] = field(default_factory=list)
    reconcile: Optional[ReconcileAction] = None


class TradingCycle:
    """Runs one engine pass against an exchange client and the engine state."""

    def __init__(
        self,
        client: IExchangeClient,
        state: EngineState,
        sink: Optional[IEventSink] = None,
        data_dir: Optional[Path] = None,
        logs_dir: Optional[Path] = None,
        config: Settings = settings,
    ):
        self.client = client
        self.state = state
        self.sink = sink
        self.config = config
        self.logs_dir = Path(logs_dir) if logs_dir else None

        self.scorer = SignalScorer(config)
        self.analyzer = CandlePatternAnalyzer()
        self.sizer = RiskSizer(config)
        self.executor = OrderExecutor(client, config)
        self.exits = ExitManager(state.gate, config)
        self.reconciler = ReconciliationMonitor(state.ledger, config)

        self.trade_log = TradeLog(data_dir) if data_dir else None
        self.profit_store = ProfitStore(data_dir) if data_dir else None
        self.cycle_info = CycleInfoWriter(data_dir) if data_dir else None
        self.price_history = PriceHistory(data_dir, config.price_history_hours) if data_dir else None
        self._last_pattern_candle: Optional[int] = None

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_once(self, now: Optional[datetime] = None) -> Result:
        """Ok(CycleReport), or Skip when there is not enough data to decide."""
        now = now or _utc_now()
        state = self.state
        cfg = self.config
        state.cycle_count += 1
        state.averaged_this_cycle = False
        report = CycleReport()

        await self._refresh_candles(now)
        window = state.candles.window()
        snap_result = compute_snapshot(window, cfg)
        if not isinstance(snap_result, Ok):
            logger.info("[CYCLE] Skipped: %s", snap_result.reason)
            return snap_result

        snap = snap_result.value
        price = snap.price
        state.last_snapshot = snap
        state.last_price = price
        report.price = price

        patterns = self.analyzer.analyze(window)
        self._emit_patterns(window[-1].start, patterns, price)

        balances_ok = await self._refresh_balances()

        # Reconcile before deciding anything so the ledger matches the wallet
        adjusted = False
        if balances_ok:
            outcome = self.reconciler.reconcile(
                state.base_balance(), price, skip=state.skip_reconcile, now=now
            )
            report.reconcile = outcome.action
            if outcome.pnl:
                self._realise(outcome.pnl)
            if outcome.changed:
                adjusted = True
                self._on_reconciled(outcome.action, outcome.message, price)
        state.skip_reconcile = False

        signal = self.scorer.score(snap, window, patterns, state.position)
        state.last_signal = signal
        report.signal = signal.decision
        report.reason = signal.reason
        logger.info("[CYCLE] Price %.6f signal %s: %s", price, signal.decision.value, signal.reason)

        closed_this_cycle = False
        if state.position is not None:
            self.state.ledger.update_trailing_stop(price)
            decision = self.exits.evaluate(state.position, price, window, signal, patterns, now)
            if decision.should_exit:
                closed_this_cycle = await self._exit(decision, price, now, report, balances_ok)

        if adjusted:
            logger.info("[CYCLE] Position adjusted by reconciliation (%s), no entries this cycle", report.reconcile.value)
        await self._entries(signal, patterns, price, now, report, skip_new=closed_this_cycle or adjusted)

        # Averaging-in this cycle means the wallet may lag the ledger next cycle
        state.skip_reconcile = state.averaged_this_cycle
        state.persist_confirmation()
        self._write_records(report, now)
        return Ok(report)

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def _refresh_candles(self, now: datetime) -> None:
        cfg = self.config
        end = int(now.timestamp())
        last = self.state.candles.last_start
        start = last if last is not None else end - cfg.initial_fetch_hours * 3600
        try:
            candles = await self.client.get_candles(cfg.trading_pair, cfg.candle_granularity_s, start, end)
        except Exception as e:
            logger.warning("[CANDLES] Fetch failed, keeping %d cached candles: %s", len(self.state.candles), e)
            return
        merged = self.state.candles.merge(candles)
        logger.debug("[CANDLES] Fetched %d, merged %d, window %d", len(candles), merged, len(self.state.candles))

    async def _refresh_balances(self) -> bool:
        try:
            balances = await self.client.get_balances()
        except Exception as e:
            logger.warning("[CYCLE] Balance fetch failed, skipping reconciliation: %s", e)
            return False
        self.state.balances = dict(balances)
        return True

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    async def _exit(
        self, decision: ExitDecision, price: float, now: datetime, report: CycleReport, balances_ok: bool
    ) -> bool:
        """Close (or partially close) the position. Returns True once flat."""
        state = self.state
        cfg = self.config
        position = state.position
        is_long = position.is_long
        kind = SignalKind.SELL if is_long else SignalKind.COVER
        side = exit_side(position)
        quantity = min(decision.quantity or position.quantity, position.quantity)

        if is_long and balances_ok:
            wallet = state.base_balance()
            if wallet < cfg.dust_threshold_base:
                try:
                    self._realise(state.ledger.realised_pnl(price, position.quantity))
                    state.ledger.record_manual(-position.quantity, price, reason="wallet empty at sell", now=now)
                except LedgerError as e:
                    self._ledger_failed("close empty position", e, price)
                    return False
                state.gate.reset_exit_counters()
                self._emit(EventType.POSITION_CLOSED, f"Wallet holds no {cfg.base_currency}; position closed without an order", price=price)
                report.actions.append("CLOSED_EMPTY")
                return True
            if wallet < quantity:
                shortfall = position.quantity - wallet
                logger.warning(
                    "[CYCLE] Wallet %.8f below sell quantity %.8f, adjusting position", wallet, quantity
                )
                try:
                    if shortfall > 0:
                        self._realise(state.ledger.realised_pnl(price, shortfall))
                        state.ledger.record_manual(-shortfall, price, reason="wallet below tracked quantity at sell", now=now)
                except LedgerError as e:
                    self._ledger_failed("adjust before sell", e, price)
                    return False
                quantity = wallet
                self._emit(
                    EventType.POSITION_ADJUSTED,
                    f"Selling wallet balance {wallet:.8f} instead of {decision.quantity:.8f}",
                    price=price, quantity=wallet,
                )
                if state.position is None:
                    return True
                position = state.position

        quantity = floor_to_lot(quantity, cfg.lot_decimals)
        # Forced exits always go out as market orders
        limit_price = None if decision.forced else price
        result = await self.executor.submit(kind, side, quantity, price=limit_price)
        if not self._order_ok(result, kind, side, quantity, price):
            return False

        order = result.value
        fill_price = order.fill_price or price
        fill_qty = min(order.fill_qty or quantity, position.quantity)
        entry_price = position.weighted_entry_price
        try:
            if fill_qty >= position.quantity:
                exit_result = state.ledger.close(fill_price, order_id=order.order_id, reason=decision.reason, now=now)
            else:
                exit_result = state.ledger.partial_exit(
                    fill_qty, fill_price, order_id=order.order_id, reason=decision.reason, now=now
                )
        except LedgerError as e:
            self._ledger_failed("record exit", e, price)
            return False

        pnl = exit_result.pnl - (order.fees or 0.0)
        self._realise(pnl)

        action = kind.value if exit_result.closed else f"PARTIAL_{kind.value}"
        report.actions.append(action)
        self._record_trade(action, fill_price, fill_qty, order.order_id, decision.reason, entry_price, pnl)
        self._emit(
            EventType.TRADE, decision.reason, action=action, price=fill_price, quantity=fill_qty,
            quote_amount=fill_price * fill_qty, order_id=order.order_id or "",
            entry_price=entry_price, pnl=pnl,
        )

        if exit_result.closed:
            state.gate.reset_exit_counters()
            if is_long:
                state.record_sell(fill_price, now)
            else:
                state.record_cover(fill_price, now)
            self._emit(
                EventType.POSITION_CLOSED,
                f"Position closed, realised {pnl:+.4f}, cumulative {state.cumulative_profit:+.4f}",
                price=fill_price, pnl=pnl,
            )
        else:
            state.gate.reset(kind, "partial exit filled")
        return exit_result.closed

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def _entries(
        self, signal: TradeSignal, patterns: PatternAnalysis, price: float, now: datetime,
        report: CycleReport, skip_new: bool,
    ) -> None:
        state = self.state
        position = state.position

        buy = self._gate_entry(SignalKind.BUY, signal, patterns, price, superseded_by=(Decision.SELL, Decision.SHORT))
        short = self._gate_entry(SignalKind.SHORT, signal, patterns, price, superseded_by=(Decision.BUY, Decision.COVER))

        if skip_new:
            return

        if buy.confirmed:
            if position is None:
                if state.long_reentry_allowed(price, now):
                    await self._open(Side.LONG, signal, price, now, report)
                else:
                    logger.info(
                        "[CYCLE] BUY confirmed but re-entry blocked: last sell %.6f at %s",
                        state.last_sell_price, state.last_sell_time,
                    )
            elif position.is_long:
                await self._average_in(signal, price, now, report)
        elif short.confirmed and position is None:
            if state.short_reentry_allowed(price, now):
                await self._open(Side.SHORT, signal, price, now, report)
            else:
                logger.info(
                    "[CYCLE] SHORT confirmed but re-entry blocked: last cover %.6f at %s",
                    state.last_cover_price, state.last_cover_time,
                )

    def _gate_entry(
        self, kind: SignalKind, signal: TradeSignal, patterns: PatternAnalysis, price: float, superseded_by
    ) -> GateDecision:
        gate = self.state.gate
        condition = signal.decision.value == kind.value
        decision = gate.evaluate_entry(
            kind,
            price,
            condition_met=condition,
            price_position_ok=signal.suppressed != kind,
            superseded=signal.decision in superseded_by,
        )
        if condition and not decision.confirmed and gate.accelerate(kind, patterns):
            counter = gate[kind]
            decision = GateDecision(counter.confirmed, f"{kind.value} accelerated to {counter.count}/{counter.required}", counter.count)
        return decision

    def _size(self, side: Side, price: float) -> Optional[float]:
        cfg = self.config
        if side == Side.LONG:
            stop = price * (1 - cfg.stop_loss_pct / 100)
        else:
            stop = price * (1 + cfg.short_stop_loss_pct / 100)
        sizing = self.sizer.size_detailed(price, stop, self.state.quote_balance(), cfg.risk_percent_per_trade, side)
        if not sizing.ok:
            logger.info("[RISK] No %s size: %s", side.value, sizing.reason)
            return None
        ok, reason = self.sizer.meets_minimums(sizing.quantity, price)
        if not ok:
            logger.info("[RISK] %s size %.8f rejected: %s", side.value, sizing.quantity, reason)
            return None
        return sizing.quantity

    async def _open(self, side: Side, signal: TradeSignal, price: float, now: datetime, report: CycleReport) -> None:
        state = self.state
        kind = SignalKind.BUY if side == Side.LONG else SignalKind.SHORT
        order_side = "BUY" if side == Side.LONG else "SELL"
        quantity = self._size(side, price)
        if quantity is None:
            return

        result = await self.executor.submit(kind, order_side, quantity)
        if not self._order_ok(result, kind, order_side, quantity, price):
            return

        order = result.value
        fill_price = order.fill_price or price
        fill_qty = order.fill_qty or quantity
        try:
            state.ledger.open(
                side, fill_price, fill_qty, quote_amount=order.quote_amount or None,
                order_id=order.order_id, reason=signal.reason, now=now,
            )
        except LedgerError as e:
            self._ledger_failed(f"open {side.value}", e, price)
            return

        fees = order.fees or 0.0
        if fees:
            self._realise(-fees)
        state.gate.reset(kind, "position opened")
        state.gate.reset_exit_counters()
        if side == Side.LONG:
            state.last_sell_time, state.last_sell_price = None, 0.0
        else:
            state.last_cover_time, state.last_cover_price = None, 0.0

        report.actions.append(kind.value)
        self._record_trade(kind.value, fill_price, fill_qty, order.order_id, signal.reason, fill_price, -fees)
        self._emit(
            EventType.TRADE, signal.reason, action=kind.value, price=fill_price, quantity=fill_qty,
            quote_amount=fill_price * fill_qty, order_id=order.order_id or "", entry_price=fill_price,
        )

    async def _average_in(self, signal: TradeSignal, price: float, now: datetime, report: CycleReport) -> None:
        state = self.state
        cfg = self.config
        position = state.position
        entry = position.weighted_entry_price
        if not cfg.averaging_enabled:
            return
        if price > entry * (1 - cfg.averaging_min_drop_pct / 100):
            logger.debug("[CYCLE] BUY confirmed with long open, price %.6f not %.1f%% below entry %.6f",
                         price, cfg.averaging_min_drop_pct, entry)
            return
        if len(position.entry_transactions) >= cfg.max_averaging_entries:
            logger.info("[CYCLE] Averaging skipped: %d entries already", len(position.entry_transactions))
            return

        quantity = self._size(Side.LONG, price)
        if quantity is None:
            return
        result = await self.executor.submit(SignalKind.BUY, "BUY", quantity)
        if not self._order_ok(result, SignalKind.BUY, "BUY", quantity, price):
            return

        order = result.value
        fill_price = order.fill_price or price
        fill_qty = order.fill_qty or quantity
        try:
            state.ledger.average_in(
                fill_price, fill_qty, quote_amount=order.quote_amount or None,
                order_id=order.order_id, reason=f"averaging: {signal.reason}", now=now,
            )
        except LedgerError as e:
            self._ledger_failed("average in", e, price)
            return

        fees = order.fees or 0.0
        if fees:
            self._realise(-fees)
        state.averaged_this_cycle = True
        state.gate.reset(SignalKind.BUY, "averaged in")
        new_entry = state.position.weighted_entry_price
        report.actions.append("AVERAGE_IN")
        self._record_trade("AVERAGE_IN", fill_price, fill_qty, order.order_id, signal.reason, new_entry, -fees)
        self._emit(
            EventType.TRADE, f"Averaged in, new entry {new_entry:.6f}", action="AVERAGE_IN",
            price=fill_price, quantity=fill_qty, quote_amount=fill_price * fill_qty,
            order_id=order.order_id or "", entry_price=new_entry,
        )

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _order_ok(self, result: Result, kind: SignalKind, side: str, quantity: float, price: float) -> bool:
        if isinstance(result, Ok):
            return True
        if isinstance(result, Skip):
            logger.info("[ORDER] %s %s skipped: %s", side, kind.value, result.reason)
            return False
        error = result.error
        if isinstance(error, InsufficientFundsError):
            self._emit(
                EventType.INSUFFICIENT_FUNDS, str(error), action=kind.value, price=price, quantity=quantity,
            )
        else:
            self._emit(
                EventType.ORDER_FAILED, f"{side} failed: {result.reason}", action=kind.value,
                price=price, quantity=quantity,
            )
        return False

    def _on_reconciled(self, action: ReconcileAction, message: str, price: float) -> None:
        if action == ReconcileAction.RECOVERED:
            self._emit(EventType.POSITION_RECOVERED, message, price=price)
        elif action == ReconcileAction.CLOSED or self.state.position is None:
            self.state.gate.reset_exit_counters()
            self._emit(EventType.POSITION_CLOSED, message, price=price)
        else:
            self._emit(EventType.POSITION_ADJUSTED, message, price=price)

    def _realise(self, pnl: float) -> None:
        self.state.cumulative_profit += pnl
        if self.profit_store is not None:
            self.profit_store.save(self.state.cumulative_profit)
        logger.info("[CYCLE] Realised %+.6f, cumulative %+.6f", pnl, self.state.cumulative_profit)

    def _ledger_failed(self, what: str, error: LedgerError, price: float) -> None:
        failure = Fatal(error)
        logger.error("[LEDGER] Could not %s: %s", what, failure.reason)
        self._emit(EventType.ERROR, f"Could not {what}: {failure.reason}", price=price)

    def _emit_patterns(self, candle_start: int, patterns: PatternAnalysis, price: float) -> None:
        if not (patterns.is_bullish or patterns.is_bearish):
            return
        if candle_start == self._last_pattern_candle:
            return
        self._last_pattern_candle = candle_start
        self._emit(
            EventType.PATTERN,
            f"{patterns.signal.value} patterns (net {patterns.net_score:+.2f}): {', '.join(patterns.names())}",
            price=price,
            details={"netScore": patterns.net_score, "patterns": patterns.names()},
        )

    def _emit(self, event_type: EventType, message: str, **kwargs) -> None:
        if self.sink is None:
            return
        self.sink.notify(EngineEvent(type=event_type, pair=self.config.trading_pair, message=message, **kwargs))

    def _record_trade(
        self, action: str, price: float, quantity: float, order_id: Optional[str], reason: str,
        entry_price: Optional[float], pnl: float,
    ) -> None:
        if self.trade_log is None:
            return
        self.trade_log.append(TradeRecord(
            action=action,
            pair=self.config.trading_pair,
            price=price,
            quantity=quantity,
            quote_amount=price * quantity,
            order_id=order_id or "",
            reason=reason,
            entry_price=entry_price,
            pnl=pnl,
        ))

    def _write_records(self, report: CycleReport, now: datetime) -> None:
        state = self.state
        if self.cycle_info is not None:
            self.cycle_info.write(state.to_cycle_info(now))
        if self.price_history is not None:
            self.price_history.record(report.price, now)
        if self.logs_dir is not None:
            signal = state.last_signal
            scores = signal.scores if signal else None
            log_decision(
                self.logs_dir,
                {
                    "ts": utc_iso_str(now),
                    "pair": self.config.trading_pair,
                    "price": report.price,
                    "signal": report.signal.value if report.signal else None,
                    "reason": report.reason,
                    "scores": {
                        "buy": scores.buy, "sell": scores.sell,
                        "short": scores.short_entry, "quality": scores.entry_quality,
                    } if scores else None,
                    "confirmations": {k.value: state.gate.count(k) for k in SignalKind},
                    "actions": report.actions,
                    "reconcile": report.reconcile.value if report.reconcile else None,
                },
                critical=bool(report.actions),
                ts=now,
            )
