"""Signal definitions."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class SignalKind(Enum):
    """Signal families that each get their own confirmation counter."""
    BUY = "BUY"
    SELL = "SELL"
    SHORT = "SHORT"
    COVER = "COVER"


class Decision(Enum):
    NONE = "NONE"
    HOLD = "HOLD"
    BUY = "BUY"
    SELL = "SELL"
    SHORT = "SHORT"
    COVER = "COVER"


@dataclass
class SignalScores:
    """Weighted-checklist scores for one cycle."""
    buy: int = 0
    sell: int = 0
    short_entry: int = 0
    entry_quality: int = 0
    stoch_buy_ok: bool = False
    is_uptrend: bool = False
    volume_confirmed: bool = False
    low_conviction_penalty: int = 0
    reasons: List[str] = field(default_factory=list)


@dataclass
class TradeSignal:
    """Scorer verdict before confirmation gating."""
    decision: Decision
    reason: str
    scores: SignalScores
    price_position_ok: bool = True
    suppressed: Optional[SignalKind] = None
