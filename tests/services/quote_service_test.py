import asyncio
import logging
from datetime import date, time, timedelta

import pytest

from domain.history_base import own_currency_series
from domain.interpolation import interpolate
from domain.result import Result
from domain.symbol import Symbol
from domain.ticks import DividendTick, HistoryFlags, HistoryKind
from services.fetch_cache import FetchCache
from services.quote_service import QuoteService
from services.quote_sources import QuoteSourceAuthError, QuoteSourceError
from tests.helpers.market_data import NOW, StubQuoteSource, candles, rate_snapshot, stock_snapshot

ABC = Symbol.parse("ABC")
XYZ = Symbol.parse("XYZ.PA")
TOYOTA = Symbol.parse("7203.T")
EUR = Symbol.parse("EUR=X")
USD_EUR = Symbol.parse("USDEUR=X")
USD_JPY = Symbol.parse("USDJPY=X")
NOPE = Symbol.parse("NOPE")
ZERO = Symbol.parse("ZERO")
BAD = Symbol.parse("BAD")

ABC_SNAPSHOT = stock_snapshot("ABC", price=104)
XYZ_SNAPSHOT = stock_snapshot("XYZ.PA", currency="EUR", price=51, timezone_name="Europe/Paris", close_time=time(17, 30))
USD_EUR_SNAPSHOT = rate_snapshot("USDEUR=X", price=0.94)
ABC_CANDLES = candles([100, 101, 102, 103])
USD_EUR_CANDLES = candles([0.90, 0.92, 0.91, 0.93])


@pytest.fixture
def stub_source() -> StubQuoteSource:
    return StubQuoteSource(
        snapshots=[
            ABC_SNAPSHOT,
            XYZ_SNAPSHOT,
            USD_EUR_SNAPSHOT,
            stock_snapshot("7203.T", currency="JPY", timezone_name="Asia/Tokyo", close_time=time(15, 30)),
            rate_snapshot("USDJPY=X", price=150.0),
            stock_snapshot("ZERO", price=4),
            stock_snapshot("BAD", currency="EURO"),
        ],
        history={
            ("ABC", HistoryKind.CANDLE): ABC_CANDLES,
            ("ABC", HistoryKind.DIVIDEND): [DividendTick(date=date(2024, 3, 5), dividend=0.5)],
            ("ABC", HistoryKind.SPLIT): [],
            ("XYZ.PA", HistoryKind.CANDLE): candles([50, 49, 52, 51]),
            ("USDEUR=X", HistoryKind.CANDLE): USD_EUR_CANDLES,
            ("7203.T", HistoryKind.CANDLE): candles([2000, 2010, 2020, 2030]),
            ("USDJPY=X", HistoryKind.CANDLE): candles([149.0, 150.0, 151.0, 150.5]),
            ("ZERO", HistoryKind.CANDLE): candles([0, 0, 4, 4]),
            ("BAD", HistoryKind.CANDLE): candles([10, 11, 12, 13]),
        },
    )


@pytest.mark.asyncio
async def test_get_snapshots_only(quote_service: QuoteService, stub_source: StubQuoteSource) -> None:
    securities = await quote_service.get([ABC, XYZ])

    assert set(securities) == {ABC, XYZ}
    assert securities[ABC].regular_market_price == 104
    assert securities[XYZ].currency == "EUR"
    for security in securities.values():
        assert security.dividend_history is None
        assert security.split_history is None
        assert security.price_history is None
        assert security.price_history_base is None
    assert stub_source.history_calls == []


@pytest.mark.asyncio
async def test_unknown_symbol_maps_to_none(quote_service: QuoteService) -> None:
    securities = await quote_service.get([ABC, NOPE], HistoryFlags.ALL)

    assert securities[NOPE] is None
    assert securities[ABC] is not None


@pytest.mark.parametrize(
    ("symbols", "flags", "base"),
    [
        ([Symbol.EMPTY], HistoryFlags.NONE, Symbol.EMPTY),
        ([ABC], HistoryFlags.PRICE, Symbol.parse("EURUSD=X")),
        ([USD_JPY], HistoryFlags.PRICE, EUR),
        ([EUR], HistoryFlags.PRICE, Symbol.EMPTY),
        ([ABC], HistoryFlags.DIVIDEND, EUR),
    ],
)
@pytest.mark.asyncio
async def test_invalid_requests_fail_before_fetching(
    quote_service: QuoteService,
    stub_source: StubQuoteSource,
    symbols: list[Symbol],
    flags: HistoryFlags,
    base: Symbol,
) -> None:
    with pytest.raises(ValueError):
        await quote_service.get(symbols, flags, base)

    assert stub_source.snapshot_calls == []
    assert stub_source.history_calls == []


@pytest.mark.asyncio
async def test_all_history_without_base(quote_service: QuoteService) -> None:
    security = (await quote_service.get([ABC], HistoryFlags.ALL))[ABC]

    assert security.dividend_history.unwrap() == [DividendTick(date=date(2024, 3, 5), dividend=0.5)]
    assert security.split_history.unwrap() == []
    assert security.price_history.unwrap() == ABC_CANDLES
    own = security.price_history_base.unwrap()
    assert [tick.value for tick in own] == [100, 101, 102, 103, 104]
    assert own[-1].instant == ABC_SNAPSHOT.regular_market_time


@pytest.mark.asyncio
async def test_requested_history_kinds_only(quote_service: QuoteService, stub_source: StubQuoteSource) -> None:
    security = (await quote_service.get([ABC], HistoryFlags.DIVIDEND))[ABC]

    assert security.dividend_history is not None
    assert security.split_history is None
    assert security.price_history is None
    assert stub_source.history_calls == [(ABC, HistoryKind.DIVIDEND)]


@pytest.mark.asyncio
async def test_missing_history_is_reported_per_security(quote_service: QuoteService) -> None:
    security = (await quote_service.get([XYZ], HistoryFlags.DIVIDEND | HistoryFlags.PRICE))[XYZ]

    assert security.dividend_history.is_not_found
    assert security.dividend_history.error == "History not found: 'XYZ.PA'."
    assert not security.price_history.has_error


@pytest.mark.asyncio
async def test_price_history_in_base_currency(quote_service: QuoteService, stub_source: StubQuoteSource) -> None:
    securities = await quote_service.get([ABC, XYZ], HistoryFlags.PRICE, EUR)

    assert set(securities) == {ABC, XYZ}
    assert USD_EUR in stub_source.snapshot_symbols

    abc_own = own_currency_series(Result.ok(ABC_CANDLES), ABC_SNAPSHOT, now=NOW).unwrap()
    rate_own = own_currency_series(Result.ok(USD_EUR_CANDLES), USD_EUR_SNAPSHOT, now=NOW).unwrap()
    abc_base = securities[ABC].price_history_base.unwrap()
    assert [tick.instant for tick in abc_base] == [tick.instant for tick in abc_own]
    assert [tick.value for tick in abc_base] == pytest.approx(
        [tick.value * interpolate(rate_own, tick.instant) for tick in abc_own]
    )
    assert len({round(b.value / a.value, 6) for a, b in zip(abc_own, abc_base)}) > 1

    # a EUR listing expressed in EUR is its own series
    xyz = securities[XYZ]
    assert [tick.value for tick in xyz.price_history_base.unwrap()] == pytest.approx([50, 49, 52, 51, 51])
    assert xyz.price_history.unwrap()[0].close == 50


@pytest.mark.asyncio
async def test_currency_against_itself_is_one(quote_service: QuoteService) -> None:
    security = (await quote_service.get([EUR], HistoryFlags.PRICE, EUR))[EUR]

    assert security.symbol == EUR
    assert security.currency == "EUR"
    assert [tick.value for tick in security.price_history_base.unwrap()] == pytest.approx([1.0] * 5)


@pytest.mark.asyncio
async def test_base_stock_is_fetched_but_not_returned(quote_service: QuoteService, stub_source: StubQuoteSource) -> None:
    securities = await quote_service.get([ABC], HistoryFlags.PRICE, XYZ)

    assert list(securities) == [ABC]
    assert XYZ in stub_source.snapshot_symbols
    assert (XYZ, HistoryKind.CANDLE) in stub_source.history_calls
    assert not securities[ABC].price_history_base.has_error


@pytest.mark.asyncio
async def test_fetches_usd_rate_for_every_currency_involved(
    quote_service: QuoteService, stub_source: StubQuoteSource
) -> None:
    securities = await quote_service.get([ABC, TOYOTA], HistoryFlags.PRICE, EUR)

    assert {USD_EUR, USD_JPY} <= stub_source.snapshot_symbols
    assert Symbol.parse("USDUSD=X") not in stub_source.snapshot_symbols
    assert not securities[TOYOTA].price_history_base.has_error


@pytest.mark.asyncio
async def test_missing_rate_history_fails_only_dependent_symbols(
    quote_service: QuoteService, stub_source: StubQuoteSource
) -> None:
    del stub_source.history[(USD_JPY, HistoryKind.CANDLE)]

    securities = await quote_service.get([ABC, TOYOTA], HistoryFlags.PRICE, EUR)

    assert not securities[ABC].price_history_base.has_error
    assert "USDJPY=X" in securities[TOYOTA].price_history_base.error


@pytest.mark.asyncio
async def test_zero_base_price_drops_points_without_failing_request(quote_service: QuoteService) -> None:
    securities = await quote_service.get([ABC, XYZ], HistoryFlags.PRICE, ZERO)

    abc = securities[ABC].price_history_base.unwrap()
    assert [tick.value for tick in abc] == pytest.approx([25.5, 25.75, 26.0])
    assert len(securities[XYZ].price_history_base.unwrap()) == 3


@pytest.mark.asyncio
async def test_invalid_listing_currency_fails_only_that_security(
    quote_service: QuoteService, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.WARNING, logger="services.quote_service"):
        securities = await quote_service.get([ABC, BAD], HistoryFlags.PRICE, EUR)

    assert "Invalid currency symbol: 'EURO'." in securities[BAD].price_history_base.error
    assert not securities[BAD].price_history.has_error
    assert not securities[ABC].price_history_base.has_error
    assert "Invalid currency 'EURO'" in caplog.text


@pytest.mark.asyncio
async def test_repeated_requests_use_cache(quote_service: QuoteService, stub_source: StubQuoteSource) -> None:
    await quote_service.get([ABC], HistoryFlags.PRICE)
    await quote_service.get([ABC], HistoryFlags.PRICE)

    assert stub_source.snapshot_calls == [[ABC]]
    assert stub_source.history_calls == [(ABC, HistoryKind.CANDLE)]


@pytest.mark.asyncio
async def test_concurrent_requests_share_fetches(stub_source: StubQuoteSource) -> None:
    stub_source.delay_seconds = 0.02
    service = QuoteService(
        stub_source,
        snapshot_cache=FetchCache(timedelta(0)),
        history_cache=FetchCache(timedelta(0)),
        clock=lambda: NOW,
    )

    first, second = await asyncio.gather(
        service.get([ABC], HistoryFlags.PRICE),
        service.get([ABC], HistoryFlags.PRICE),
    )

    assert first[ABC] == second[ABC]
    assert stub_source.snapshot_calls == [[ABC]]
    assert stub_source.history_calls == [(ABC, HistoryKind.CANDLE)]


@pytest.mark.asyncio
async def test_source_error_becomes_history_failure(quote_service: QuoteService, stub_source: StubQuoteSource) -> None:
    stub_source.history_errors[(ABC, HistoryKind.CANDLE)] = QuoteSourceError("Bad Gateway", status_code=502)

    security = (await quote_service.get([ABC], HistoryFlags.PRICE))[ABC]

    assert security.price_history.has_error
    assert "History request failed" in security.price_history.error
    assert security.price_history_base.has_error


@pytest.mark.asyncio
async def test_auth_error_is_logged_and_raised(
    quote_service: QuoteService, stub_source: StubQuoteSource, caplog: pytest.LogCaptureFixture
) -> None:
    stub_source.history_errors[(ABC, HistoryKind.CANDLE)] = QuoteSourceAuthError("Invalid Crumb", status_code=401)

    with caplog.at_level(logging.CRITICAL, logger="services.quote_service"):
        with pytest.raises(QuoteSourceAuthError):
            await quote_service.get([ABC], HistoryFlags.PRICE)

    assert any(record.levelno == logging.CRITICAL for record in caplog.records)

    # auth failures are not cached
    del stub_source.history_errors[(ABC, HistoryKind.CANDLE)]
    security = (await quote_service.get([ABC], HistoryFlags.PRICE))[ABC]
    assert not security.price_history.has_error


@pytest.mark.asyncio
async def test_get_by_name_keeps_first_spelling(quote_service: QuoteService) -> None:
    securities = await quote_service.get_by_name(["abc", "ABC", "nope"])

    assert list(securities) == ["abc", "nope"]
    assert securities["abc"].symbol == ABC
    assert securities["nope"] is None


@pytest.mark.asyncio
async def test_get_one_with_base(quote_service: QuoteService) -> None:
    security = await quote_service.get_one("abc", HistoryFlags.PRICE, "eur=x")

    assert security is not None
    assert not security.price_history_base.has_error


@pytest.mark.parametrize("base", ["AB=X", "EURUSD=X"])
@pytest.mark.asyncio
async def test_get_by_name_rejects_invalid_base(quote_service: QuoteService, base: str) -> None:
    with pytest.raises(ValueError):
        await quote_service.get_by_name(["ABC"], HistoryFlags.PRICE, base)


def test_history_start_must_not_be_in_future(stub_source: StubQuoteSource) -> None:
    with pytest.raises(ValueError):
        QuoteService(stub_source, history_start=NOW + timedelta(days=1), clock=lambda: NOW)


@pytest.mark.asyncio
async def test_close_releases_source(quote_service: QuoteService, stub_source: StubQuoteSource) -> None:
    with quote_service as service:
        await service.get([ABC])

    assert stub_source.closed
    assert len(quote_service.snapshot_cache) == 0
