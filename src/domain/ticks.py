from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Flag, StrEnum


class HistoryFlags(Flag):
    NONE = 0
    DIVIDEND = 1
    SPLIT = 2
    PRICE = 4
    ALL = DIVIDEND | SPLIT | PRICE


class HistoryKind(StrEnum):
    DIVIDEND = "div"
    SPLIT = "split"
    CANDLE = "history"


class Frequency(StrEnum):
    DAILY = "1d"
    WEEKLY = "1wk"
    MONTHLY = "1mo"


@dataclass(frozen=True)
class CandleTick:
    date: date
    open: float
    high: float
    low: float
    close: float
    adjusted_close: float
    volume: int


@dataclass(frozen=True)
class DividendTick:
    date: date
    dividend: float


@dataclass(frozen=True)
class SplitTick:
    date: date
    before_split: float
    after_split: float


@dataclass(frozen=True)
class ValueTick:
    """Single point of a price or rate series; ``instant`` is timezone-aware UTC."""

    instant: datetime
    value: float
    volume: int = 0


HistoryTick = CandleTick | DividendTick | SplitTick

HISTORY_KINDS_BY_FLAG: dict[HistoryFlags, HistoryKind] = {
    HistoryFlags.DIVIDEND: HistoryKind.DIVIDEND,
    HistoryFlags.SPLIT: HistoryKind.SPLIT,
    HistoryFlags.PRICE: HistoryKind.CANDLE,
}


__all__ = [
    "CandleTick",
    "DividendTick",
    "Frequency",
    "HISTORY_KINDS_BY_FLAG",
    "HistoryFlags",
    "HistoryKind",
    "HistoryTick",
    "SplitTick",
    "ValueTick",
]
