#!/usr/bin/env python3
"""
Signal Trader - single-pair signal trading engine for Coinbase

Usage:
    python run.py                      # Paper trading, one cycle per candle close
    python run.py --mode live          # Live trading (needs API keys)
    python run.py --once               # Run a single cycle and exit
    python run.py --deliver-notifications   # Also push queued events to Telegram
"""

import argparse
import asyncio
import signal as sig
import sys

from core.alerts import NotificationQueue, TelegramConfig, TelegramDelivery
from core.candle_store import CANDLE_CACHE_FILE, CandleStore
from core.config import Settings, settings
from core.events import EventBus
from core.logging_utils import add_file_logging, get_logger, setup_logging
from core.mode_paths import get_logs_dir
from core.persistence import PositionStore, ProfitStore
from core.scheduler import CycleScheduler
from core.state import EngineState
from datafeeds.coinbase_client import CoinbaseExchangeClient
from execution.paper_exchange import PaperExchange
from execution.position_ledger import PositionLedger
from execution.trading_cycle import TradingCycle
from logic.confirmation import ConfirmationGate

logger = get_logger(__name__)


def build_client(config: Settings, data_dir):
    """Live: the Coinbase client. Paper: simulated fills over the live public feed."""
    market = CoinbaseExchangeClient(config)
    if config.is_live:
        return market
    return PaperExchange(config, market_data=market, data_dir=data_dir)


def build_state(config: Settings, data_dir) -> EngineState:
    state = EngineState(
        ledger=PositionLedger(PositionStore(data_dir), config),
        candles=CandleStore(data_dir / CANDLE_CACHE_FILE, config.candle_cache_size),
        gate=ConfirmationGate(config),
        config=config,
        cumulative_profit=ProfitStore(data_dir).load(),
    )
    state.restore()
    return state


async def run(config: Settings, once: bool, deliver: bool) -> int:
    data_dir = config.resolve_data_dir()
    logs_dir = get_logs_dir(config.trading_mode)

    try:
        client = build_client(config, data_dir)
    except Exception as e:
        logger.error("[BOT] Could not create exchange client: %s", e)
        return 1

    state = build_state(config, data_dir)
    bus = EventBus()
    queue = NotificationQueue(data_dir, keep_sent=config.notification_keep_sent)
    bus.subscribe(queue.notify)

    delivery = None
    if deliver:
        delivery = TelegramDelivery(queue, TelegramConfig(config.telegram_bot_token, config.telegram_chat_id))

    cycle = TradingCycle(client, state, sink=bus, data_dir=data_dir, logs_dir=logs_dir, config=config)
    scheduler = CycleScheduler(cycle.run_once, config, delivery=delivery)

    logger.info(
        "[BOT] %s mode, pair %s, data %s, position %s",
        config.trading_mode.upper(), config.trading_pair, data_dir,
        state.position.side.value if state.position else "none",
    )

    try:
        if once:
            await scheduler.run_cycle()
            return 0

        loop = asyncio.get_running_loop()
        shutdown_requested = False

        def handle_interrupt(signum, frame):
            nonlocal shutdown_requested
            if shutdown_requested:
                logger.error("[BOT] Force exit!")
                sys.exit(1)
            shutdown_requested = True
            logger.info("[BOT] Signal %s received - finishing current cycle and shutting down", signum)
            loop.call_soon_threadsafe(scheduler.stop)

        sig.signal(sig.SIGINT, handle_interrupt)
        sig.signal(sig.SIGTERM, handle_interrupt)

        await scheduler.run_forever()
        return 0
    finally:
        if delivery is not None:
            await delivery.close()


def main():
    parser = argparse.ArgumentParser(
        prog='signal-trader',
        description='Signal Trader - single-pair signal trading engine',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--mode', choices=['paper', 'live'], default=None,
                        help='Trading mode (default: TRADING_MODE env or paper)')
    parser.add_argument('--once', action='store_true',
                        help='Run one cycle and exit')
    parser.add_argument('--log-level', type=str, default=None,
                        help='Log level (default: LOG_LEVEL env or INFO)')
    parser.add_argument('--deliver-notifications', action='store_true',
                        help='Deliver queued notifications to Telegram after each cycle')
    args = parser.parse_args()

    config = settings
    if args.mode:
        config = settings.model_copy(update={"trading_mode": args.mode})

    setup_logging(args.log_level)
    add_file_logging(get_logs_dir(config.trading_mode))

    try:
        code = asyncio.run(run(config, once=args.once, deliver=args.deliver_notifications))
    except KeyboardInterrupt:
        logger.info("[BOT] Exiting...")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
