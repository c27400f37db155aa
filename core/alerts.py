"""
Notification queue and Telegram delivery.

The engine appends rendered events to notification_queue.json
({id, message, timestamp, sent}). TelegramDelivery drains unsent records and
marks them sent only after the API accepted them, so delivery is
at-least-once. Only the most recent keep_sent delivered records are kept.

Setup:
1. Create a Telegram bot via @BotFather
2. Get your chat_id by messaging @userinfobot
3. Set environment variables:
   - TELEGRAM_BOT_TOKEN
   - TELEGRAM_CHAT_ID
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import httpx

from core.base_persistence import JsonFileStore
from core.events import EngineEvent
from core.logger import utc_iso_str
from core.logging_utils import get_logger

logger = get_logger(__name__)

QUEUE_FILE = "notification_queue.json"


class NotificationQueue:
    """File-backed outbound queue; subscribe `notify` to the EventBus."""

    def __init__(self, data_dir: Path, keep_sent: int = 200):
        self._store = JsonFileStore(Path(data_dir) / QUEUE_FILE)
        self.keep_sent = keep_sent

    def _records(self) -> list:
        data = self._store.read()
        return data if isinstance(data, list) else []

    def notify(self, event: EngineEvent) -> dict:
        record = {
            "id": uuid.uuid4().hex,
            "message": event.render(),
            "timestamp": utc_iso_str(event.ts),
            "sent": False,
        }
        records = self._without_old_sent(self._records(), self.keep_sent)
        records.append(record)
        if not self._store.write(records):
            logger.error("[ALERT] Could not queue %s notification", event.type.value)
        return record

    def pending(self, limit: Optional[int] = None) -> list:
        unsent = [r for r in self._records() if not r.get("sent")]
        return unsent[:limit] if limit else unsent

    def mark_sent(self, ids: list) -> int:
        if not ids:
            return 0
        wanted = set(ids)
        records = self._records()
        changed = 0
        for record in records:
            if record.get("id") in wanted and not record.get("sent"):
                record["sent"] = True
                changed += 1
        if changed:
            self._store.write(records)
        return changed

    def prune_sent(self, keep_last: Optional[int] = None) -> int:
        """Drop delivered records beyond the most recent keep_last. Returns how many went."""
        records = self._records()
        kept = self._without_old_sent(records, self.keep_sent if keep_last is None else keep_last)
        dropped = len(records) - len(kept)
        if dropped:
            self._store.write(kept)
        return dropped

    @staticmethod
    def _without_old_sent(records: list, keep_last: int) -> list:
        sent = [r for r in records if r.get("sent")]
        if len(sent) <= keep_last:
            return records
        drop = {r.get("id") for r in (sent[:-keep_last] if keep_last else sent)}
        return [r for r in records if not (r.get("sent") and r.get("id") in drop)]


@dataclass
class TelegramConfig:
    token: str = ""
    chat_id: str = ""
    min_interval_sec: float = 1.0

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_id)


class TelegramDelivery:
    """Drains the notification queue to a Telegram chat."""

    TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"

    def __init__(self, queue: NotificationQueue, config: TelegramConfig, client: Optional[httpx.AsyncClient] = None):
        self.queue = queue
        self.config = config
        self._client = client
        self._last_sent: Optional[datetime] = None

        if self.config.enabled:
            logger.info("[ALERT] Telegram delivery enabled")
        else:
            logger.info("[ALERT] Telegram not configured (set TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID)")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def send(self, message: str) -> bool:
        if not self.config.enabled:
            return False

        now = datetime.now(timezone.utc)
        if self._last_sent:
            elapsed = (now - self._last_sent).total_seconds()
            if elapsed < self.config.min_interval_sec:
                await asyncio.sleep(self.config.min_interval_sec - elapsed)

        try:
            client = await self._get_client()
            url = self.TELEGRAM_API.format(token=self.config.token)
            resp = await client.post(url, json={"chat_id": self.config.chat_id, "text": message})
            self._last_sent = datetime.now(timezone.utc)
        except httpx.HTTPError as e:
            logger.warning("[ALERT] Failed to send: %s", e)
            return False

        if resp.status_code == 200:
            return True
        logger.warning("[ALERT] Telegram error: %s", resp.status_code)
        return False

    async def deliver_pending(self, batch_size: int = 20) -> int:
        """Send unsent records in order; stop at the first failure."""
        if not self.config.enabled:
            return 0
        delivered = []
        for record in self.queue.pending(limit=batch_size):
            if not await self.send(record["message"]):
                break
            delivered.append(record["id"])
        self.queue.mark_sent(delivered)
        if delivered:
            logger.info("[ALERT] Delivered %d notification(s)", len(delivered))
            self.queue.prune_sent()
        return len(delivered)
