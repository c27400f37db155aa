"""Trade log, cycle snapshot and price history records.

- trader_history.json: append-only JSON array of executed actions
- cycle_info.json: latest cycle snapshot (overwritten each cycle)
- price_history.json: rolling window of {timestamp, price}
- logs/<mode>/decisions_<date>.jsonl: per-cycle decision audit trail

Critical appends (decisions that led to orders) use fsync so a crash right
after an order still leaves the record on disk.
"""

import json
import os
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from core.base_persistence import JsonFileStore
from core.logging_utils import get_logger

logger = get_logger(__name__)

TRADE_LOG_FILE = "trader_history.json"
CYCLE_INFO_FILE = "cycle_info.json"
PRICE_HISTORY_FILE = "price_history.json"


def utc_date_str(ts: datetime = None) -> str:
    """Return YYYY-MM-DD in UTC."""
    if ts is None:
        ts = datetime.now(timezone.utc)
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.strftime("%Y-%m-%d")


def utc_iso_str(ts: datetime = None) -> str:
    """Return ISO 8601 timestamp with Z suffix."""
    if ts is None:
        ts = datetime.now(timezone.utc)
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def append_jsonl(path: Path, record: dict, critical: bool = False):
    """Append a JSON record as a single line; fsync when critical."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, separators=(",", ":"), default=str) + "\n"

    if critical:
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
            try:
                os.write(fd, line.encode("utf-8"))
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError:
            with open(path, "a") as f:
                f.write(line)
    else:
        with open(path, "a") as f:
            f.write(line)


def log_decision(logs_dir: Path, record: dict, critical: bool = False, ts: datetime = None):
    """Audit one cycle's decision to logs/<mode>/decisions_<date>.jsonl."""
    append_jsonl(Path(logs_dir) / f"decisions_{utc_date_str(ts)}.jsonl", record, critical=critical)


@dataclass
class TradeRecord:
    """One executed action as written to the trade log."""
    action: str
    pair: str
    price: float
    quantity: float
    quote_amount: float
    order_id: str
    reason: str
    entry_price: Optional[float] = None
    pnl: float = 0.0
    timestamp: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            "timestamp": data["timestamp"] or utc_iso_str(),
            "action": data["action"],
            "pair": data["pair"],
            "price": data["price"],
            "quantity": data["quantity"],
            "quoteAmount": data["quote_amount"],
            "orderId": data["order_id"],
            "reason": data["reason"],
            "entryPrice": data["entry_price"],
            "pnl": data["pnl"],
        }


class TradeLog:
    """Append-only JSON array of executed actions."""

    def __init__(self, data_dir: Path):
        self._store = JsonFileStore(Path(data_dir) / TRADE_LOG_FILE)
        self._records: Optional[list] = None

    def _load(self) -> list:
        if self._records is None:
            data = self._store.read()
            if isinstance(data, list):
                self._records = data
            else:
                if data is not None:
                    logger.warning("[TRADELOG] Unexpected trade log shape, starting fresh")
                self._records = []
        return self._records

    def append(self, record: TradeRecord) -> dict:
        entry = record.to_dict()
        records = self._load()
        records.append(entry)
        if not self._store.write(records):
            logger.error("[TRADELOG] Failed to persist %s record for %s", record.action, record.order_id)
        logger.info(
            "[TRADELOG] %s %s qty=%.8f @ %.6f pnl=%.4f (%s)",
            record.action, record.pair, record.quantity, record.price, record.pnl, record.reason,
        )
        return entry

    def records(self) -> list:
        return list(self._load())


class CycleInfoWriter:
    """Overwrites cycle_info.json with the latest cycle snapshot."""

    def __init__(self, data_dir: Path):
        self._store = JsonFileStore(Path(data_dir) / CYCLE_INFO_FILE, backup=False)

    def write(self, snapshot: dict) -> None:
        self._store.write(snapshot)

    def read(self) -> Optional[dict]:
        return self._store.read()


class PriceHistory:
    """Rolling price history, trimmed to the configured number of hours."""

    def __init__(self, data_dir: Path, hours: int = 24):
        self._store = JsonFileStore(Path(data_dir) / PRICE_HISTORY_FILE, backup=False)
        self.hours = hours

    def record(self, price: float, now: Optional[datetime] = None) -> list:
        if price <= 0:
            return self.entries()
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=self.hours)
        kept = []
        for entry in self.entries():
            try:
                ts = datetime.fromisoformat(entry["timestamp"].replace("Z", "+00:00"))
            except (KeyError, AttributeError, ValueError):
                continue
            if ts >= cutoff:
                kept.append(entry)
        kept.append({"timestamp": utc_iso_str(now), "price": price})
        self._store.write(kept)
        return kept

    def entries(self) -> list:
        data = self._store.read()
        return data if isinstance(data, list) else []
