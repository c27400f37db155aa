"""Candle primitive."""

from dataclasses import dataclass
from datetime import datetime, timezone


def _field(raw, name: str, default=0):
    if isinstance(raw, dict):
        return raw.get(name, default)
    return getattr(raw, name, default)


@dataclass(frozen=True)
class Candle:
    """OHLCV candle keyed by bucket start (unix seconds)."""
    start: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def __post_init__(self):
        if self.high < self.low:
            raise ValueError(f"Candle {self.start}: high {self.high} < low {self.low}")

    @classmethod
    def from_api(cls, raw) -> "Candle":
        """Build from a Coinbase candle (SDK object or dict, string fields)."""
        return cls(
            start=int(_field(raw, "start")),
            open=float(_field(raw, "open") or 0),
            high=float(_field(raw, "high") or 0),
            low=float(_field(raw, "low") or 0),
            close=float(_field(raw, "close") or 0),
            volume=float(_field(raw, "volume") or 0),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "Candle":
        return cls.from_api(data)

    def to_dict(self) -> dict:
        return {
            "start": self.start,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.start, tz=timezone.utc)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def is_green(self) -> bool:
        return self.close > self.open

    @property
    def is_red(self) -> bool:
        return self.close < self.open

    @property
    def midpoint(self) -> float:
        return (self.high + self.low) / 2

    @property
    def upper_wick(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_wick(self) -> float:
        return min(self.open, self.close) - self.low
