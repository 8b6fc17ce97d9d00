from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Callable, Iterator, Sequence, TypeVar
from urllib.parse import quote as url_quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from domain.exchanges import close_time_for
from domain.security import Snapshot
from domain.symbol import Symbol
from domain.ticks import CandleTick, DividendTick, Frequency, HistoryKind, HistoryTick, SplitTick

from .quote_sources import QuoteSource, QuoteSourceAuthError, QuoteSourceError

logger = logging.getLogger(__name__)

EventT = TypeVar("EventT", bound=BaseModel)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class YahooAPIError(QuoteSourceError):
    pass


class YahooAuthError(YahooAPIError, QuoteSourceAuthError):
    pass


class YahooQuoteRecord(BaseModel):
    """One entry of the ``/v7/finance/quote`` response."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    symbol: str
    currency: str | None = None
    exchange_timezone_name: str | None = Field(default=None, alias="exchangeTimezoneName")
    regular_market_price: float | None = Field(default=None, alias="regularMarketPrice")
    regular_market_time: datetime | None = Field(default=None, alias="regularMarketTime")
    regular_market_volume: int | None = Field(default=None, alias="regularMarketVolume")
    long_name: str | None = Field(default=None, alias="longName")
    short_name: str | None = Field(default=None, alias="shortName")
    full_exchange_name: str | None = Field(default=None, alias="fullExchangeName")
    quote_type: str | None = Field(default=None, alias="quoteType")

    def to_snapshot(self, symbol: Symbol, raw: dict[str, Any]) -> Snapshot:
        return Snapshot(
            symbol=symbol,
            currency=(self.currency or "").upper(),
            exchange_timezone=self.exchange_timezone_name,
            exchange_close_time=close_time_for(symbol),
            regular_market_price=self.regular_market_price,
            regular_market_time=self.regular_market_time,
            regular_market_volume=self.regular_market_volume,
            long_name=self.long_name,
            short_name=self.short_name,
            exchange_name=self.full_exchange_name,
            quote_type=self.quote_type,
            fields=dict(raw),
        )


class YahooDividendEvent(BaseModel):
    date: int
    amount: float


class YahooSplitEvent(BaseModel):
    date: int
    numerator: float
    denominator: float


class _YahooClient:
    def __init__(
        self,
        base_url: str = "https://query2.finance.yahoo.com",
        cookie_url: str = "https://fc.yahoo.com",
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 1,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.cookie_url = cookie_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})
        self._crumb: str | None = None
        self._crumb_lock = threading.Lock()

        retry = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist={429, 500, 502, 503, 504},
            allowed_methods={"GET"},
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get_quotes(self, symbols: Sequence[str]) -> list[dict[str, Any]]:
        if not symbols:
            raise ValueError("symbols must be provided")
        payload = self._request("/v7/finance/quote", params={"symbols": ",".join(symbols)})
        if payload is None:
            return []

        response = payload.get("quoteResponse")
        if not isinstance(response, dict):
            raise YahooAPIError("Yahoo Finance quote payload missing quoteResponse", payload=payload)
        error = response.get("error")
        if error:
            raise YahooAPIError(_error_message(error, "Yahoo Finance quote error"), payload=payload)
        return [entry for entry in response.get("result") or [] if isinstance(entry, dict)]

    def get_chart(
        self,
        symbol: str,
        *,
        period_start: int,
        period_end: int,
        interval: str,
        events: str | None = None,
    ) -> dict[str, Any] | None:
        if not symbol:
            raise ValueError("symbol must be provided")
        if period_start > period_end:
            raise ValueError("period_start must not follow period_end")

        params: dict[str, Any] = {
            "period1": period_start,
            "period2": period_end,
            "interval": interval,
            "includeAdjustedClose": "true",
        }
        if events:
            params["events"] = events
        payload = self._request(f"/v8/finance/chart/{url_quote(symbol, safe='')}", params=params)
        if payload is None:
            return None

        chart = payload.get("chart")
        if not isinstance(chart, dict):
            raise YahooAPIError("Yahoo Finance chart payload missing chart", payload=payload)
        error = chart.get("error")
        if error:
            if isinstance(error, dict) and error.get("code") == "Not Found":
                return None
            raise YahooAPIError(_error_message(error, "Yahoo Finance chart error"), payload=payload)
        results = chart.get("result") or []
        return results[0] if results else None

    def close(self) -> None:
        self._session.close()

    def _request(self, path: str, *, params: dict[str, Any]) -> dict[str, Any] | None:
        url = f"{self.base_url}{path}"
        stale_crumb: str | None = None
        while True:
            crumb = self._get_crumb(stale_crumb)
            logger.info("GET %s %s", url, params)
            try:
                response = self._session.request("GET", url, params={**params, "crumb": crumb}, timeout=self.timeout)
            except requests.RequestException as exc:
                status_code = getattr(getattr(exc, "response", None), "status_code", None)
                raise YahooAPIError("Yahoo Finance request failed", status_code=status_code) from exc

            if response.status_code == 401:
                if stale_crumb is not None:
                    message, payload = self._extract_error(response)
                    raise YahooAuthError(message, status_code=401, payload=payload)
                logger.debug("Unauthorized response from %s; refreshing session and retrying", url)
                stale_crumb = crumb
                continue
            if response.status_code == 404:
                return None

            try:
                response.raise_for_status()
            except requests.HTTPError as exc:
                message, payload = self._extract_error(response)
                raise YahooAPIError(message, status_code=response.status_code, payload=payload) from exc

            try:
                payload_raw = response.json()
            except ValueError as exc:
                raise YahooAPIError("Yahoo Finance returned invalid JSON", payload=response.text) from exc
            if not isinstance(payload_raw, dict):
                raise YahooAPIError("Yahoo Finance returned unexpected payload type", payload=payload_raw)
            return payload_raw

    def _get_crumb(self, stale: str | None) -> str:
        with self._crumb_lock:
            if self._crumb is None or self._crumb == stale:
                self._crumb = self._fetch_crumb()
            return self._crumb

    def _fetch_crumb(self) -> str:
        try:
            # sets the session cookie; the response status itself is irrelevant
            self._session.get(self.cookie_url, timeout=self.timeout)
            response = self._session.get(f"{self.base_url}/v1/test/getcrumb", timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise YahooAuthError("Yahoo Finance session could not be established", status_code=status_code) from exc

        crumb = response.text.strip()
        if not crumb or "<" in crumb:
            raise YahooAuthError("Yahoo Finance returned an invalid crumb", payload=response.text)
        return crumb

    @staticmethod
    def _extract_error(response: Response) -> tuple[str, Any]:
        message = "Yahoo Finance request failed"
        try:
            payload = response.json()
        except ValueError:
            return message, response.text
        if isinstance(payload, dict):
            for section in ("finance", "chart", "quoteResponse"):
                body = payload.get(section)
                if isinstance(body, dict) and body.get("error"):
                    message = _error_message(body["error"], message)
                    break
        return message, payload


class YahooSource(QuoteSource):
    def __init__(
        self,
        *,
        client: _YahooClient | None = None,
        chunk_size: int = 100,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self.client = client or _YahooClient()
        self.chunk_size = chunk_size
        self._clock = clock

    def fetch_snapshots(self, symbols: Sequence[Symbol]) -> dict[Symbol, Snapshot]:
        snapshots: dict[Symbol, Snapshot] = {}
        for chunk in _chunks(list(dict.fromkeys(symbols)), self.chunk_size):
            by_key = {symbol.key: symbol for symbol in chunk}
            for raw in self.client.get_quotes([symbol.name for symbol in chunk]):
                try:
                    record = YahooQuoteRecord.model_validate(raw)
                except ValidationError as exc:
                    raise YahooAPIError("Yahoo Finance quote record is malformed", payload=raw) from exc
                symbol = by_key.get(record.symbol.upper())
                if symbol is None:
                    logger.debug("Ignoring unrequested quote for %s", record.symbol)
                    continue
                snapshots[symbol] = record.to_snapshot(symbol, raw)

        for symbol in symbols:
            if symbol not in snapshots:
                logger.info("Symbol not found: %s", symbol)
        return snapshots

    def fetch_history(
        self,
        symbol: Symbol,
        kind: HistoryKind,
        start: datetime,
        end: datetime | None,
        frequency: Frequency,
    ) -> list[HistoryTick] | None:
        chart = self.client.get_chart(
            symbol.name,
            period_start=int(start.timestamp()),
            period_end=int((end or self._clock()).timestamp()),
            interval=frequency.value,
            events=_HISTORY_EVENTS[kind],
        )
        if chart is None:
            logger.info("History not found: %s (%s)", symbol, kind)
            return None
        return _HISTORY_PARSERS[kind](chart)

    def close(self) -> None:
        self.client.close()


def _parse_candles(chart: dict[str, Any]) -> list[HistoryTick]:
    zone = _chart_zone(chart)
    timestamps = chart.get("timestamp") or []
    indicators = chart.get("indicators") or {}
    quote = (indicators.get("quote") or [{}])[0]
    adjusted = ((indicators.get("adjclose") or [{}])[0]).get("adjclose") or []

    by_date: dict[date, CandleTick] = {}
    for index, ts in enumerate(timestamps):
        open_, high, low, close = (_at(quote.get(name), index) for name in ("open", "high", "low", "close"))
        if open_ is None or high is None or low is None or close is None:
            continue
        adjusted_close = _at(adjusted, index)
        volume = _at(quote.get("volume"), index)
        tick_date = _local_date(ts, zone)
        # later rows replace earlier ones on the same date (live bar)
        by_date[tick_date] = CandleTick(
            date=tick_date,
            open=float(open_),
            high=float(high),
            low=float(low),
            close=float(close),
            adjusted_close=float(adjusted_close if adjusted_close is not None else close),
            volume=int(volume or 0),
        )
    return [by_date[key] for key in sorted(by_date)]


def _parse_dividends(chart: dict[str, Any]) -> list[HistoryTick]:
    zone = _chart_zone(chart)
    ticks: list[DividendTick] = []
    for entry in _chart_events(chart, "dividends"):
        event = _validate_event(YahooDividendEvent, entry, "dividend")
        ticks.append(DividendTick(date=_local_date(event.date, zone), dividend=event.amount))
    return sorted(ticks, key=lambda tick: tick.date)


def _parse_splits(chart: dict[str, Any]) -> list[HistoryTick]:
    zone = _chart_zone(chart)
    ticks: list[SplitTick] = []
    for entry in _chart_events(chart, "splits"):
        event = _validate_event(YahooSplitEvent, entry, "split")
        ticks.append(
            SplitTick(
                date=_local_date(event.date, zone),
                before_split=event.denominator,
                after_split=event.numerator,
            )
        )
    return sorted(ticks, key=lambda tick: tick.date)


def _chart_events(chart: dict[str, Any], name: str) -> list[Any]:
    section = chart.get("events") or {}
    events = (section.get(name) if isinstance(section, dict) else section) or {}
    if not isinstance(events, dict):
        raise YahooAPIError(f"Yahoo Finance chart {name} are malformed", payload=events)
    return list(events.values())


def _validate_event(model: type[EventT], entry: Any, label: str) -> EventT:
    try:
        return model.model_validate(entry)
    except ValidationError as exc:
        raise YahooAPIError(f"Yahoo Finance {label} event is malformed", payload=entry) from exc


_HISTORY_PARSERS: dict[HistoryKind, Callable[[dict[str, Any]], list[HistoryTick]]] = {
    HistoryKind.CANDLE: _parse_candles,
    HistoryKind.DIVIDEND: _parse_dividends,
    HistoryKind.SPLIT: _parse_splits,
}

_HISTORY_EVENTS: dict[HistoryKind, str | None] = {
    HistoryKind.CANDLE: None,
    HistoryKind.DIVIDEND: "div",
    HistoryKind.SPLIT: "split",
}


def _chart_zone(chart: dict[str, Any]) -> tzinfo:
    name = (chart.get("meta") or {}).get("exchangeTimezoneName")
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown exchange timezone %s; using UTC", name)
        return timezone.utc


def _local_date(ts: int, zone: tzinfo) -> date:
    return datetime.fromtimestamp(int(ts), tz=zone).date()


def _at(values: list[Any] | None, index: int) -> Any:
    if not values or index >= len(values):
        return None
    return values[index]


def _chunks(items: list[Symbol], size: int) -> Iterator[list[Symbol]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _error_message(error: Any, default: str) -> str:
    if isinstance(error, dict):
        return str(error.get("description") or error.get("code") or default)
    return str(error)


__all__ = ["YahooAPIError", "YahooAuthError", "YahooDividendEvent", "YahooQuoteRecord", "YahooSource", "YahooSplitEvent"]
