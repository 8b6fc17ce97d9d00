from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeVar

T = TypeVar("T")


class ResultError(RuntimeError):
    pass


class ResultStatus(StrEnum):
    OK = "OK"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a per-symbol operation whose failure is expected data, not a bug."""

    status: ResultStatus
    value: T | None = None
    error: str = ""

    @classmethod
    def ok(cls, value: T) -> Result[T]:
        return cls(status=ResultStatus.OK, value=value)

    @classmethod
    def fail(cls, error: str) -> Result[T]:
        if not error:
            raise ValueError("error message must be non-empty")
        return cls(status=ResultStatus.ERROR, error=error)

    @classmethod
    def not_found(cls, error: str) -> Result[T]:
        return cls(status=ResultStatus.NOT_FOUND, error=error)

    @property
    def has_error(self) -> bool:
        return self.status != ResultStatus.OK

    @property
    def is_not_found(self) -> bool:
        return self.status == ResultStatus.NOT_FOUND

    def unwrap(self) -> T:
        if self.status != ResultStatus.OK:
            raise ResultError(self.error)
        return self.value  # type: ignore[return-value]


__all__ = ["Result", "ResultError", "ResultStatus"]
