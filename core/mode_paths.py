"""Mode-scoped data and log directories.

Paper and live runs keep their files apart (data/paper vs data/live) so a
paper session never picks up a live position_state.json.
"""

import os
from pathlib import Path
from typing import Optional

MODES = ("paper", "live")


def resolve_mode(mode: Optional[str] = None) -> str:
    """Explicit mode, else TRADING_MODE, else paper."""
    value = (mode or os.getenv("TRADING_MODE") or "paper").strip().lower()
    if value not in MODES:
        raise ValueError(f"Unknown trading mode {value!r}, expected one of {MODES}")
    return value


def _mode_dir(kind: str, mode: Optional[str], root: Optional[Path]) -> Path:
    path = Path(root or ".") / kind / resolve_mode(mode)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir(mode: Optional[str] = None, root: Optional[Path] = None) -> Path:
    """State files: position, candle cache, profit, trade log, queue."""
    return _mode_dir("data", mode, root)


def get_logs_dir(mode: Optional[str] = None, root: Optional[Path] = None) -> Path:
    """Decision audit trail and the rotating engine log."""
    return _mode_dir("logs", mode, root)
