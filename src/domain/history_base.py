"""Price-history-base series.

An instrument's own-currency series is its candle history converted to instants
at the exchange close, anchored with one live point from the snapshot. The
composer re-expresses those series relative to a base currency or instrument by
interpolating up to four component series on a shared timeline:

    value(t) = stock(t) / usd_rate(t) * base_usd_rate(t) / base_stock(t)

where ``usd_rate`` is ``USD{ccy}=X`` for the symbol's currency and
``base_usd_rate`` is ``USD{ccy}=X`` for the base currency.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .interpolation import interpolate
from .result import Result
from .security import Security, Snapshot
from .symbol import Symbol
from .ticks import CandleTick, ValueTick

logger = logging.getLogger(__name__)

USD = "USD"
MIN_HISTORY_POINTS = 2


def own_currency_series(
    candles: Result[list[CandleTick]],
    snapshot: Snapshot,
    *,
    now: datetime,
    use_non_adjusted_close: bool = False,
) -> Result[list[ValueTick]]:
    if candles.has_error:
        return Result.fail(candles.error or f"Price history not available: '{snapshot.symbol}'.")
    if not snapshot.exchange_timezone:
        return Result.fail(f"Exchange timezone not found: '{snapshot.symbol}'.")
    if snapshot.exchange_close_time is None:
        return Result.fail(f"Exchange close time not found: '{snapshot.symbol}'.")
    try:
        zone = ZoneInfo(snapshot.exchange_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return Result.fail(f"Unknown exchange timezone '{snapshot.exchange_timezone}': '{snapshot.symbol}'.")

    close_time = snapshot.exchange_close_time.replace(tzinfo=zone)
    ticks = [
        ValueTick(
            instant=datetime.combine(candle.date, close_time).astimezone(timezone.utc),
            value=candle.close if use_non_adjusted_close else candle.adjusted_close,
            volume=candle.volume,
        )
        for candle in candles.unwrap()
    ]
    if not ticks:
        return Result.fail(f"No history available: '{snapshot.symbol}'.")

    snap_time = snapshot.regular_market_time
    snap_price = snapshot.regular_market_price
    if snap_time is None or snap_price is None:
        logger.debug("Regular market time or price unavailable for symbol %s", snapshot.symbol)
        return Result.fail(f"Snapshot price or time not available: '{snapshot.symbol}'.")

    if snap_time > now:
        logger.warning(
            "Snapshot time %s follows current time %s; adjusted for symbol %s",
            snap_time.isoformat(),
            now.isoformat(),
            snapshot.symbol,
        )
        snap_time = now

    if ticks[-1].instant >= snap_time:
        # history already contains the snapshot, or the exchange closed early
        removed = ticks.pop()
        logger.debug(
            "History tick at %s not before snapshot time %s removed for symbol %s",
            removed.instant.isoformat(),
            snap_time.isoformat(),
            snapshot.symbol,
        )
        if not ticks or ticks[-1].instant >= snap_time:
            return Result.fail(f"Invalid dates: '{snapshot.symbol}'.")

    volume = snapshot.regular_market_volume
    if volume is None:
        logger.debug("Regular market volume unavailable for symbol %s", snapshot.symbol)
        volume = 0
    ticks.append(ValueTick(instant=snap_time, value=float(snap_price), volume=volume))
    return Result.ok(ticks)


@dataclass(frozen=True)
class _Components:
    stock: Sequence[ValueTick] | None = None
    usd_rate: Sequence[ValueTick] | None = None
    base_usd_rate: Sequence[ValueTick] | None = None
    base_stock: Sequence[ValueTick] | None = None

    def timeline(self) -> Sequence[ValueTick] | None:
        for ticks in (self.stock, self.usd_rate, self.base_usd_rate, self.base_stock):
            if ticks:
                return ticks
        return None

    def value_at(self, instant: datetime) -> float:
        value = 1.0
        if self.stock:
            value *= interpolate(self.stock, instant)
        if self.usd_rate:
            value = _divide(value, interpolate(self.usd_rate, instant))
        if self.base_usd_rate:
            value *= interpolate(self.base_usd_rate, instant)
        if self.base_stock:
            value = _divide(value, interpolate(self.base_stock, instant))
        return value


def _divide(numerator: float, denominator: float) -> float:
    """IEEE 754 division: a zero divisor gives +/-inf, or NaN for 0/0 and NaN/0."""
    if denominator != 0:
        return numerator / denominator
    if numerator == 0 or math.isnan(numerator):
        return math.nan
    return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)


class _ComponentError(Exception):
    pass


def compose(
    symbols: Iterable[Symbol],
    base: Symbol,
    securities: Mapping[Symbol, Security | None],
) -> dict[Symbol, Result[list[ValueTick]] | None]:
    """Compose the base-relative series of every symbol.

    ``securities`` must contain the own-currency series of every stock and
    currency-rate security the symbols and the base depend on. A symbol whose
    security is ``None`` (not found upstream) maps to ``None``. Points that are
    not finite, such as those divided by a zero rate or base price, are dropped.
    """
    if base.is_empty or base.is_currency_rate:
        raise ValueError(f"Invalid base symbol: '{base}'.")

    composed: dict[Symbol, Result[list[ValueTick]] | None] = {}
    for symbol in symbols:
        if symbol.is_stock and securities.get(symbol) is None:
            if symbol not in securities:
                raise RuntimeError(f"Stock security missing from fetched securities: '{symbol}'.")
            composed[symbol] = None
            continue
        composed[symbol] = _compose_symbol(symbol, base, securities)
    return composed


def _compose_symbol(symbol: Symbol, base: Symbol, securities: Mapping[Symbol, Security | None]) -> Result[list[ValueTick]]:
    try:
        components = _resolve_components(symbol, base, securities)
    except _ComponentError as exc:
        return Result.fail(str(exc))

    timeline = components.timeline()
    if timeline is None:
        return Result.fail(f"No history ticks found: '{symbol}'.")

    ticks: list[ValueTick] = []
    for tick in timeline:
        value = components.value_at(tick.instant)
        if not math.isfinite(value):
            continue
        ticks.append(ValueTick(instant=tick.instant, value=value))
    return Result.ok(ticks)


def _resolve_components(symbol: Symbol, base: Symbol, securities: Mapping[Symbol, Security | None]) -> _Components:
    stock: Sequence[ValueTick] | None = None
    currency = symbol
    if symbol.is_stock:
        security = _required(securities, symbol)
        if security is None:
            raise _ComponentError(f"Stock security not available: '{symbol}'.")
        stock = _series(security, f"Stock '{symbol}'")
        currency = _currency_symbol(security, "Security")

    usd_rate = _usd_rate_series(currency, securities, "Currency rate")

    base_stock: Sequence[ValueTick] | None = None
    base_currency = base
    if base.is_stock:
        base_security = _required(securities, base)
        if base_security is None:
            raise _ComponentError(f"Base stock security not available: '{base}'.")
        base_stock = _series(base_security, f"Base stock '{base}'")
        base_currency = _currency_symbol(base_security, "Base security")

    base_usd_rate = _usd_rate_series(base_currency, securities, "Base currency rate")

    return _Components(stock=stock, usd_rate=usd_rate, base_usd_rate=base_usd_rate, base_stock=base_stock)


def _usd_rate_series(
    currency: Symbol, securities: Mapping[Symbol, Security | None], label: str
) -> Sequence[ValueTick] | None:
    if currency.currency == USD:
        return None
    rate_symbol = Symbol.for_currency_rate(USD, currency.currency)
    if rate_symbol is None:
        raise _ComponentError(f"Invalid {label.lower()} symbol for currency: '{currency}'.")
    security = _required(securities, rate_symbol)
    if security is None:
        raise _ComponentError(f"{label} not available: '{rate_symbol}'.")
    return _series(security, f"{label} '{rate_symbol}'")


def _required(securities: Mapping[Symbol, Security | None], symbol: Symbol) -> Security | None:
    if symbol not in securities:
        raise RuntimeError(f"Required security missing from fetched securities: '{symbol}'.")
    return securities[symbol]


def _series(security: Security, label: str) -> Sequence[ValueTick]:
    result = security.price_history_base
    if result is None:
        raise _ComponentError(f"{label} has no price history.")
    if result.has_error:
        raise _ComponentError(f"{label}: {result.error}")
    ticks = result.unwrap()
    if len(ticks) < MIN_HISTORY_POINTS:
        raise _ComponentError(f"{label} has not enough history items ({len(ticks)}).")
    return ticks


def _currency_symbol(security: Security, label: str) -> Symbol:
    code = security.currency
    if not code:
        raise _ComponentError(f"{label} currency not available: '{security.symbol}'.")
    currency = Symbol.for_currency(code)
    if currency is None:
        raise _ComponentError(f"Invalid {label.lower()} currency symbol format: '{code}'.")
    return currency


__all__ = ["MIN_HISTORY_POINTS", "USD", "compose", "own_currency_series"]
