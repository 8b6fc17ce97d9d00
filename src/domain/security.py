from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from types import MappingProxyType
from typing import Any, Mapping

from .result import Result
from .symbol import Symbol
from .ticks import CandleTick, DividendTick, SplitTick, ValueTick


@dataclass(frozen=True)
class Snapshot:
    """Present-time quote fields of one instrument."""

    symbol: Symbol
    currency: str = ""
    exchange_timezone: str | None = None
    exchange_close_time: time | None = None
    regular_market_price: float | None = None
    regular_market_time: datetime | None = None
    regular_market_volume: int | None = None
    long_name: str | None = None
    short_name: str | None = None
    exchange_name: str | None = None
    quote_type: str | None = None
    fields: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}), repr=False, compare=False)

    @classmethod
    def for_currency(cls, symbol: Symbol) -> Snapshot:
        return cls(symbol=symbol, currency=symbol.currency)


@dataclass(frozen=True)
class Security:
    """Resolved instrument of one request.

    History fields are ``None`` when the corresponding history was not requested.
    ``price_history_base`` holds the own-currency series, or the base-relative
    series when a history base was requested.
    """

    snapshot: Snapshot
    dividend_history: Result[list[DividendTick]] | None = None
    split_history: Result[list[SplitTick]] | None = None
    price_history: Result[list[CandleTick]] | None = None
    price_history_base: Result[list[ValueTick]] | None = None

    @property
    def symbol(self) -> Symbol:
        return self.snapshot.symbol

    @property
    def currency(self) -> str:
        return self.snapshot.currency

    @property
    def regular_market_price(self) -> float | None:
        return self.snapshot.regular_market_price

    @property
    def regular_market_time(self) -> datetime | None:
        return self.snapshot.regular_market_time


class SecurityBuilder:
    """Collects the outputs of each fetch phase before exposing a finished ``Security``."""

    def __init__(self, snapshot: Snapshot) -> None:
        self.snapshot = snapshot
        self.dividend_history: Result[list[DividendTick]] | None = None
        self.split_history: Result[list[SplitTick]] | None = None
        self.price_history: Result[list[CandleTick]] | None = None
        self.price_history_base: Result[list[ValueTick]] | None = None

    @property
    def symbol(self) -> Symbol:
        return self.snapshot.symbol

    def build(self) -> Security:
        return Security(
            snapshot=self.snapshot,
            dividend_history=self.dividend_history,
            split_history=self.split_history,
            price_history=self.price_history,
            price_history_base=self.price_history_base,
        )


__all__ = ["Security", "SecurityBuilder", "Snapshot"]
