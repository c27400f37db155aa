"""Typed data models for the trading engine."""

from core.models.candle import Candle
from core.models.position import Position, Side, Transaction, TransactionType
from core.models.result import Fatal, Ok, Result, Skip
from core.models.signal import Decision, SignalKind, SignalScores, TradeSignal

__all__ = [
    "Candle",
    "Decision",
    "Fatal",
    "Ok",
    "Position",
    "Result",
    "Side",
    "SignalKind",
    "SignalScores",
    "Skip",
    "TradeSignal",
    "Transaction",
    "TransactionType",
]
