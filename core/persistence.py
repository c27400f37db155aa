"""Position and cumulative-profit persistence."""

from pathlib import Path
from typing import Optional

from core.base_persistence import JsonFileStore
from core.logging_utils import get_logger
from core.models import Position

logger = get_logger(__name__)

POSITION_FILE = "position_state.json"
PROFIT_FILE = "cumulative_profit.json"


class PositionStore:
    """The single open position, or no file at all when flat."""

    def __init__(self, data_dir: Path):
        self._store = JsonFileStore(Path(data_dir) / POSITION_FILE)

    @property
    def path(self) -> Path:
        return self._store.path

    def save(self, position: Optional[Position]) -> None:
        if position is None:
            self.clear()
            return
        if self._store.write(position.to_dict()):
            logger.debug("[PERSIST] Saved %s position qty=%.8f", position.side.value, position.quantity)
        else:
            logger.error("[PERSIST] FAILED to save %s position", position.side.value)

    def load(self) -> Optional[Position]:
        """Load the position; malformed state is discarded and treated as flat."""
        data = self._store.read()
        if data is None:
            return None
        try:
            position = Position.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("[PERSIST] Discarding malformed position state: %s", e)
            self._store.delete()
            return None
        logger.info(
            "[PERSIST] Loaded %s position qty=%.8f entry=%.6f",
            position.side.value, position.quantity, position.weighted_entry_price,
        )
        return position

    def clear(self) -> None:
        self._store.delete()
        logger.debug("[PERSIST] Cleared position state")


class ProfitStore:
    """Running realized PnL total, stored as {"profit": number}."""

    def __init__(self, data_dir: Path):
        self._store = JsonFileStore(Path(data_dir) / PROFIT_FILE)

    def load(self) -> float:
        data = self._store.read()
        if data is None:
            return 0.0
        try:
            if isinstance(data, dict):
                return float(data.get("profit", 0.0))
            return float(data)
        except (TypeError, ValueError) as e:
            logger.warning("[PERSIST] Cumulative profit unreadable (%s), starting from 0", e)
            return 0.0

    def save(self, profit: float) -> None:
        self._store.write({"profit": round(profit, 8)})
