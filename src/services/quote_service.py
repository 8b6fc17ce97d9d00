from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterable, Sequence

from config import AppSettings, config
from domain.history_base import USD, compose, own_currency_series
from domain.result import Result
from domain.security import Security, SecurityBuilder, Snapshot
from domain.symbol import Symbol
from domain.ticks import HISTORY_KINDS_BY_FLAG, Frequency, HistoryFlags, HistoryKind, HistoryTick

from .fetch_cache import FetchCache
from .quote_sources import QuoteSource, QuoteSourceAuthError, QuoteSourceError
from .yahoo_source import DEFAULT_USER_AGENT, YahooSource, _YahooClient

logger = logging.getLogger(__name__)

SNAPSHOT = "snapshot"

SnapshotKey = tuple[Symbol, str]
HistoryKey = tuple[Symbol, HistoryKind]


class QuoteService:
    """Resolves symbols into securities, optionally with history expressed in a base currency or instrument."""

    def __init__(
        self,
        source: QuoteSource,
        *,
        snapshot_cache: FetchCache[SnapshotKey, Snapshot | None] | None = None,
        history_cache: FetchCache[HistoryKey, Result[list[HistoryTick]]] | None = None,
        history_start: datetime | None = None,
        frequency: Frequency = Frequency.DAILY,
        use_non_adjusted_close: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        now = clock()
        if history_start is not None and history_start > now:
            raise ValueError("history_start must not be in the future")

        self.source = source
        self.snapshot_cache = snapshot_cache or FetchCache(timedelta(0), name="snapshot-cache")
        self.history_cache = history_cache or FetchCache(timedelta(0), name="history-cache")
        self.history_start = history_start
        self.frequency = frequency
        self.use_non_adjusted_close = use_non_adjusted_close
        self._clock = clock

    async def get_one(
        self,
        name: str,
        history_flags: HistoryFlags = HistoryFlags.NONE,
        history_base: str = "",
    ) -> Security | None:
        securities = await self.get_by_name([name], history_flags, history_base)
        return next(iter(securities.values()))

    async def get_by_name(
        self,
        names: Iterable[str],
        history_flags: HistoryFlags = HistoryFlags.NONE,
        history_base: str = "",
    ) -> dict[str, Security | None]:
        base = Symbol.try_parse(history_base, allow_empty=True)
        if base is None:
            raise ValueError(f"Invalid base symbol: '{history_base}'.")
        by_symbol: dict[Symbol, str] = {}
        for name in names:
            by_symbol.setdefault(Symbol.parse(name), name)

        securities = await self.get(list(by_symbol), history_flags, base)
        return {name: securities[symbol] for symbol, name in by_symbol.items()}

    async def get(
        self,
        symbols: Iterable[Symbol],
        history_flags: HistoryFlags = HistoryFlags.NONE,
        history_base: Symbol = Symbol.EMPTY,
    ) -> dict[Symbol, Security | None]:
        requested = list(dict.fromkeys(symbols))
        _validate_request(requested, history_flags, history_base)
        try:
            securities = await self._get_securities(requested, history_flags, history_base)
        except Exception:
            logger.critical("QuoteService.get failed for %s", [str(s) for s in requested], exc_info=True)
            raise
        return {symbol: securities[symbol] for symbol in requested}

    def close(self) -> None:
        self.snapshot_cache.clear()
        self.history_cache.clear()
        self.source.close()

    def __enter__(self) -> QuoteService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    async def _get_securities(
        self,
        symbols: Sequence[Symbol],
        history_flags: HistoryFlags,
        history_base: Symbol,
    ) -> dict[Symbol, Security | None]:
        fetch_symbols = [s for s in symbols if s.is_stock or s.is_currency_rate]
        if history_base.is_stock and history_base not in fetch_symbols:
            fetch_symbols.append(history_base)

        builders = await self._snapshots(fetch_symbols)

        if history_flags == HistoryFlags.NONE:
            return _build(builders)

        invalid_currencies: dict[Symbol, str] = {}
        if not history_base.is_empty:
            rate_symbols, invalid_currencies = _currency_rate_closure(symbols, history_base, builders)
            extra = [s for s in rate_symbols if s not in builders]
            if extra:
                builders.update(await self._snapshots(extra))

        await self._add_history(builders, history_flags)
        for symbol, error in invalid_currencies.items():
            builder = builders[symbol]
            if builder is not None and builder.price_history is not None:
                builder.price_history_base = Result.fail(error)

        securities = _build(builders)
        if history_base.is_empty:
            return securities

        composed = compose(symbols, history_base, securities)
        for symbol, result in composed.items():
            if result is None:
                continue
            security = securities.get(symbol)
            if security is None:
                security = Security(snapshot=Snapshot.for_currency(symbol))
            securities[symbol] = replace(security, price_history_base=result)
        return securities

    async def _snapshots(self, symbols: Sequence[Symbol]) -> dict[Symbol, SecurityBuilder | None]:
        if not symbols:
            return {}
        keys = [(symbol, SNAPSHOT) for symbol in symbols]
        snapshots = await self.snapshot_cache.get_many(keys, self._load_snapshots, default=None)
        return {
            symbol: SecurityBuilder(snapshot) if snapshot is not None else None
            for (symbol, _), snapshot in snapshots.items()
        }

    async def _load_snapshots(self, keys: list[SnapshotKey]) -> dict[SnapshotKey, Snapshot | None]:
        symbols = [symbol for symbol, _ in keys]
        snapshots = await asyncio.to_thread(self.source.fetch_snapshots, symbols)
        return {(symbol, SNAPSHOT): snapshot for symbol, snapshot in snapshots.items()}

    async def _add_history(self, builders: dict[Symbol, SecurityBuilder | None], history_flags: HistoryFlags) -> None:
        found = [builder for builder in builders.values() if builder is not None]
        for flag, kind in HISTORY_KINDS_BY_FLAG.items():
            if flag not in history_flags:
                continue
            results = await asyncio.gather(*(self._history(builder.symbol, kind) for builder in found))
            for builder, result in zip(found, results):
                if kind == HistoryKind.DIVIDEND:
                    builder.dividend_history = result  # type: ignore[assignment]
                elif kind == HistoryKind.SPLIT:
                    builder.split_history = result  # type: ignore[assignment]
                else:
                    builder.price_history = result  # type: ignore[assignment]
                    builder.price_history_base = own_currency_series(
                        result,  # type: ignore[arg-type]
                        builder.snapshot,
                        now=self._clock(),
                        use_non_adjusted_close=self.use_non_adjusted_close,
                    )

    async def _history(self, symbol: Symbol, kind: HistoryKind) -> Result[list[HistoryTick]]:
        return await self.history_cache.get((symbol, kind), self._load_history)

    async def _load_history(self, key: HistoryKey) -> Result[list[HistoryTick]]:
        symbol, kind = key
        start = self.history_start or self._clock() - timedelta(days=365)
        try:
            ticks = await asyncio.to_thread(self.source.fetch_history, symbol, kind, start, None, self.frequency)
        except QuoteSourceAuthError:
            raise
        except QuoteSourceError as exc:
            logger.warning("History request failed for %s (%s): %s", symbol, kind, exc)
            return Result.fail(f"History request failed: '{symbol}': {exc}")
        if ticks is None:
            return Result.not_found(f"History not found: '{symbol}'.")
        return Result.ok(ticks)


def _validate_request(symbols: Sequence[Symbol], history_flags: HistoryFlags, history_base: Symbol) -> None:
    if any(symbol.is_empty for symbol in symbols):
        raise ValueError("Empty symbol.")
    if history_base.is_currency_rate:
        raise ValueError(f"Invalid base symbol: '{history_base}'.")
    if not history_base.is_empty:
        rate = next((symbol for symbol in symbols if symbol.is_currency_rate), None)
        if rate is not None:
            raise ValueError(f"Invalid symbol: '{rate}'. Currency rates cannot be combined with a history base.")
        if HistoryFlags.PRICE not in history_flags:
            raise ValueError("HistoryFlags.PRICE must be enabled when history_base is specified.")
    else:
        currency = next((symbol for symbol in symbols if symbol.is_currency), None)
        if currency is not None:
            raise ValueError(f"Invalid symbol: '{currency}'. Currencies require a history base.")


def _currency_rate_closure(
    symbols: Sequence[Symbol],
    history_base: Symbol,
    builders: dict[Symbol, SecurityBuilder | None],
) -> tuple[list[Symbol], dict[Symbol, str]]:
    """``USD{ccy}=X`` rates for the requested currencies, the base and every listing currency.

    Also returns the failure message of every security whose listing currency is unusable.
    """
    currencies: dict[Symbol, None] = dict.fromkeys(s for s in symbols if s.is_currency)
    if history_base.is_currency:
        currencies[history_base] = None
    invalid: dict[Symbol, str] = {}
    for symbol, builder in builders.items():
        if builder is None:
            continue
        currency = Symbol.for_currency(builder.snapshot.currency)
        if currency is None:
            logger.warning("Invalid currency '%s' for symbol %s", builder.snapshot.currency, builder.symbol)
            invalid[symbol] = f"Invalid currency symbol: '{builder.snapshot.currency}'."
            continue
        currencies[currency] = None

    rates: list[Symbol] = []
    for currency in currencies:
        if currency.currency == USD:
            continue
        rate = Symbol.for_currency_rate(USD, currency.currency)
        if rate is not None:
            rates.append(rate)
    return rates, invalid


def _build(builders: dict[Symbol, SecurityBuilder | None]) -> dict[Symbol, Security | None]:
    return {symbol: builder.build() if builder is not None else None for symbol, builder in builders.items()}


def build_default_service(settings: AppSettings | None = None) -> QuoteService:
    settings = settings or config()
    client = _YahooClient(
        timeout=settings.http_timeout_seconds,
        retry_attempts=settings.http_retry_attempts,
        user_agent=settings.user_agent or DEFAULT_USER_AGENT,
    )
    history_start = None
    if settings.history_start_date is not None:
        history_start = _start_of_day(settings.history_start_date)
    return QuoteService(
        YahooSource(client=client),
        snapshot_cache=FetchCache(settings.snapshot_cache_duration, name="snapshot-cache"),
        history_cache=FetchCache(settings.history_cache_duration, name="history-cache"),
        history_start=history_start,
        frequency=settings.history_frequency,
        use_non_adjusted_close=settings.use_non_adjusted_close,
    )


def _start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


__all__ = ["QuoteService", "build_default_service"]
