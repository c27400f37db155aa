"""Candle-aligned cycle scheduler.

Fires one trading cycle right after each candle closes (next interval
boundary plus a small buffer so the exchange has published the bucket).
An asyncio.Lock keeps cycles from overlapping, and no cycle error ever
escapes the loop.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from core.config import Settings, settings
from core.logging_utils import get_logger
from core.models import Fatal, Ok, Result, Skip

logger = get_logger(__name__)

CycleFn = Callable[[datetime], Awaitable[Result]]


def seconds_until_next_cycle(now: datetime, interval_s: int, buffer_ms: int) -> float:
    """Delay until the next interval boundary plus buffer."""
    ts = now.timestamp()
    next_boundary = (int(ts // interval_s) + 1) * interval_s
    return max(0.0, next_boundary + buffer_ms / 1000 - ts)


class CycleScheduler:
    def __init__(self, cycle: CycleFn, config: Settings = settings, delivery=None):
        self.cycle = cycle
        self.config = config
        self.delivery = delivery
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._running = False
        self.cycles_run = 0
        self.cycles_failed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run_cycle(self, now: Optional[datetime] = None) -> Result:
        """Run one cycle unless one is already in progress."""
        if self._lock.locked():
            logger.warning("[CYCLE] Previous cycle still running, skipping this tick")
            return Skip("cycle already running")

        async with self._lock:
            now = now or datetime.now(timezone.utc)
            try:
                result = await self.cycle(now)
            except Exception as e:
                self.cycles_failed += 1
                logger.exception("[CYCLE] Cycle failed: %s", e)
                result = Fatal(e)
            else:
                self.cycles_run += 1
            await self._deliver()
            return result

    async def _deliver(self) -> None:
        if self.delivery is None:
            return
        try:
            sent = await self.delivery.deliver_pending(self.config.notification_batch_size)
            if sent:
                logger.info("[ALERT] Delivered %d notifications", sent)
        except Exception as e:
            logger.warning("[ALERT] Delivery failed, will retry next cycle: %s", e)

    async def run_forever(self) -> None:
        self._running = True
        self._stop_event.clear()
        logger.info(
            "[CYCLE] Scheduler started: every %ds + %dms",
            self.config.candle_granularity_s, self.config.cycle_buffer_ms,
        )
        result = await self.run_cycle()
        self._log_result(result)

        while self._running:
            delay = seconds_until_next_cycle(
                datetime.now(timezone.utc), self.config.candle_granularity_s, self.config.cycle_buffer_ms
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            if not self._running:
                break
            result = await self.run_cycle()
            self._log_result(result)

        logger.info("[CYCLE] Scheduler stopped after %d cycles (%d failed)", self.cycles_run, self.cycles_failed)

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()

    @staticmethod
    def _log_result(result: Result) -> None:
        if isinstance(result, Ok):
            report = result.value
            actions = getattr(report, "actions", None)
            if actions:
                logger.info("[CYCLE] Actions: %s", ", ".join(actions))
        elif isinstance(result, Skip):
            logger.debug("[CYCLE] Skipped: %s", result.reason)
