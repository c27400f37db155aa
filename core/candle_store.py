"""
Persistent candle window.

Keeps the newest N candles for the traded pair, merged from each cycle's
fetch and written to the candle cache file so a restart starts warm.

Merge rules:
- start newer than the last stored candle: appended
- start equal to the last stored candle: replaces it (bucket still forming)
- anything older: discarded
"""

from pathlib import Path
from typing import Iterable, List, Optional

from core.base_persistence import JsonFileStore
from core.logging_utils import get_logger
from core.models import Candle

logger = get_logger(__name__)

DEFAULT_CAPACITY = 200
CANDLE_CACHE_FILE = "candle_cache.json"


class CandleStore:
    """Capped, gap-tolerant, ascending-by-start candle cache."""

    def __init__(self, path: Optional[Path] = None, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._store = JsonFileStore(Path(path), backup=False) if path else None
        self._candles: List[Candle] = []

        # Stats
        self.candles_merged = 0
        self.candles_discarded = 0

    def __len__(self) -> int:
        return len(self._candles)

    @property
    def last_start(self) -> Optional[int]:
        return self._candles[-1].start if self._candles else None

    def window(self) -> List[Candle]:
        """Ordered copy of the cached candles."""
        return list(self._candles)

    def latest(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def merge(self, new_candles: Iterable[Candle]) -> int:
        """Merge fetched candles; returns how many were appended or replaced."""
        incoming = sorted(new_candles, key=lambda c: c.start)
        if not incoming:
            return 0

        changed = 0
        for candle in incoming:
            last = self.last_start
            if last is None or candle.start > last:
                self._candles.append(candle)
                changed += 1
            elif candle.start == last:
                self._candles[-1] = candle
                changed += 1
            else:
                self.candles_discarded += 1

        self._candles.sort(key=lambda c: c.start)
        if len(self._candles) > self.capacity:
            self._candles = self._candles[-self.capacity:]

        self.candles_merged += changed
        if changed:
            self.save()
        logger.debug("[CANDLES] Merged %d candle(s), window=%d", changed, len(self._candles))
        return changed

    def save(self) -> bool:
        if self._store is None:
            return True
        return self._store.write([c.to_dict() for c in self._candles])

    def load(self) -> int:
        """Rehydrate from the cache file; malformed content leaves the store empty."""
        if self._store is None:
            return 0
        data = self._store.read()
        if data is None:
            return 0
        if not isinstance(data, list):
            logger.warning("[CANDLES] Candle cache is not a list, ignoring")
            return 0

        candles = []
        for raw in data:
            try:
                candles.append(Candle.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("[CANDLES] Skipping malformed cached candle: %s", e)

        by_start = {c.start: c for c in candles}
        self._candles = sorted(by_start.values(), key=lambda c: c.start)[-self.capacity:]
        logger.info("[CANDLES] Loaded %d cached candle(s)", len(self._candles))
        return len(self._candles)

    def get_stats(self) -> dict:
        return {
            "size": len(self._candles),
            "capacity": self.capacity,
            "first_start": self._candles[0].start if self._candles else None,
            "last_start": self.last_start,
            "merged": self.candles_merged,
            "discarded": self.candles_discarded,
        }
