from datetime import timedelta

import pytest

from services.fetch_cache import FetchCache
from services.quote_service import QuoteService
from tests.helpers.market_data import NOW, StubQuoteSource


@pytest.fixture(scope="function")
def stub_source() -> StubQuoteSource:
    return StubQuoteSource()


@pytest.fixture(scope="function")
def quote_service(stub_source: StubQuoteSource) -> QuoteService:
    return QuoteService(
        stub_source,
        snapshot_cache=FetchCache(timedelta(minutes=5), name="snapshot-cache"),
        history_cache=FetchCache(timedelta(hours=1), name="history-cache"),
        history_start=NOW - timedelta(days=30),
        clock=lambda: NOW,
    )
