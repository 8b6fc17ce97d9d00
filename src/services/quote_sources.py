from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, Sequence

from domain.security import Snapshot
from domain.symbol import Symbol
from domain.ticks import Frequency, HistoryKind, HistoryTick


class QuoteSourceError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class QuoteSourceAuthError(QuoteSourceError):
    """Session rejected even after one refresh; transient, never cached."""


class QuoteSource(Protocol):
    """Blocking network collaborator; calls run on worker threads."""

    def fetch_snapshots(self, symbols: Sequence[Symbol]) -> dict[Symbol, Snapshot]:
        """Snapshots of the symbols found upstream; unknown symbols are absent."""
        ...

    def fetch_history(
        self,
        symbol: Symbol,
        kind: HistoryKind,
        start: datetime,
        end: datetime | None,
        frequency: Frequency,
    ) -> list[HistoryTick] | None:
        """Ordered ticks of ``kind``, or ``None`` when the symbol is not found."""
        ...

    def close(self) -> None: ...


__all__ = ["QuoteSource", "QuoteSourceAuthError", "QuoteSourceError"]
