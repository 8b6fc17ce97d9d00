from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from functools import total_ordering
from typing import ClassVar

_CURRENCY_MARKER = "=X"
_CURRENCY_PATTERN = re.compile(r"^(?P<base>[A-Z]{3})(?P<quote>[A-Z]{3})?=X$")


class InvalidSymbolError(ValueError):
    def __init__(self, message: str, *, name: str | None = None) -> None:
        super().__init__(message)
        self.name = name


class SymbolKind(StrEnum):
    EMPTY = "EMPTY"
    STOCK = "STOCK"
    CURRENCY = "CURRENCY"
    CURRENCY_RATE = "CURRENCY_RATE"


@total_ordering
@dataclass(frozen=True, eq=False)
class Symbol:
    """Instrument or currency identifier.

    Kinds:
    - ``ABC`` / ``ABC.DEF``: stock, optionally suffixed with an exchange code.
    - ``ABC=X``: currency.
    - ``ABCDEF=X``: currency rate, converting from ``ABC`` to ``DEF``.
    - ``""``: the empty symbol, used as "no base requested".

    Equality, hashing and ordering ignore case; ``name`` keeps the original casing.
    """

    EMPTY: ClassVar[Symbol]

    name: str = ""
    kind: SymbolKind = field(init=False, default=SymbolKind.EMPTY)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _classify(self.name))

    @classmethod
    def parse(cls, text: str | None) -> Symbol:
        if text is None:
            raise InvalidSymbolError("Symbol must be provided")
        if not text.strip():
            raise InvalidSymbolError("Symbol must be non-empty", name=text)
        return cls(text)

    @classmethod
    def try_parse(cls, text: str | None, allow_empty: bool = False) -> Symbol | None:
        if text is None:
            return None
        if allow_empty and not text:
            return cls.EMPTY
        try:
            return cls.parse(text)
        except InvalidSymbolError:
            return None

    @classmethod
    def for_currency(cls, code: str | None) -> Symbol | None:
        if not code:
            return None
        symbol = cls.try_parse(f"{code}{_CURRENCY_MARKER}")
        if symbol is None or not symbol.is_currency:
            return None
        return symbol

    @classmethod
    def for_currency_rate(cls, from_code: str, to_code: str) -> Symbol | None:
        symbol = cls.try_parse(f"{from_code}{to_code}{_CURRENCY_MARKER}")
        if symbol is None or not symbol.is_currency_rate:
            return None
        return symbol

    @property
    def key(self) -> str:
        return self.name.upper()

    @property
    def is_empty(self) -> bool:
        return self.kind == SymbolKind.EMPTY

    @property
    def is_stock(self) -> bool:
        return self.kind == SymbolKind.STOCK

    @property
    def is_currency(self) -> bool:
        return self.kind == SymbolKind.CURRENCY

    @property
    def is_currency_rate(self) -> bool:
        return self.kind == SymbolKind.CURRENCY_RATE

    @property
    def suffix(self) -> str:
        _, dot, tail = self.name.rpartition(".")
        return tail if dot else ""

    @property
    def currency(self) -> str:
        """Currency code of a currency symbol, or the target code of a rate."""
        if self.is_currency:
            return self.key[:3]
        if self.is_currency_rate:
            return self.key[3:6]
        return ""

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Symbol):
            return self.key == other.key
        return NotImplemented

    def __lt__(self, other: object) -> bool:
        if isinstance(other, Symbol):
            return self.key < other.key
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.key)

    def __str__(self) -> str:
        return self.name


def _classify(name: str) -> SymbolKind:
    if name == "":
        return SymbolKind.EMPTY
    if any(ch.isspace() for ch in name):
        raise InvalidSymbolError(f"Symbol contains whitespace: '{name}'", name=name)

    upper = name.upper()
    if _CURRENCY_MARKER not in upper:
        return SymbolKind.STOCK

    match = _CURRENCY_PATTERN.match(upper)
    if match is None:
        raise InvalidSymbolError(f"Invalid currency symbol format: '{name}'", name=name)
    quote = match.group("quote")
    if quote is None:
        return SymbolKind.CURRENCY
    if quote == match.group("base"):
        raise InvalidSymbolError(f"Currency rate converts to itself: '{name}'", name=name)
    return SymbolKind.CURRENCY_RATE


Symbol.EMPTY = Symbol()


__all__ = ["InvalidSymbolError", "Symbol", "SymbolKind"]
