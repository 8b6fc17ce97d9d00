from __future__ import annotations

from datetime import time

from .symbol import Symbol

# Local regular-session close, keyed by the Yahoo symbol suffix. "" covers US listings.
CLOSE_TIMES_BY_SUFFIX: dict[str, time] = {
    "": time(16, 0),
    "TO": time(16, 0),
    "V": time(16, 0),
    "NE": time(16, 0),
    "L": time(16, 30),
    "IL": time(16, 30),
    "IR": time(16, 30),
    "AS": time(17, 30),
    "BR": time(17, 30),
    "CO": time(17, 0),
    "DE": time(17, 30),
    "F": time(17, 30),
    "HE": time(17, 30),
    "LS": time(17, 30),
    "MC": time(17, 30),
    "MI": time(17, 30),
    "OL": time(16, 20),
    "PA": time(17, 30),
    "ST": time(17, 30),
    "SW": time(17, 30),
    "VI": time(17, 30),
    "AX": time(16, 0),
    "NZ": time(16, 45),
    "HK": time(16, 0),
    "SI": time(17, 0),
    "SS": time(15, 0),
    "SZ": time(15, 0),
    "KS": time(15, 30),
    "T": time(15, 30),
    "NS": time(15, 30),
    "BO": time(15, 30),
    "KQ": time(15, 30),
    "TW": time(13, 30),
    "TWO": time(13, 30),
    "BK": time(16, 30),
    "JK": time(16, 0),
    "KL": time(17, 0),
    "SA": time(17, 0),
    "MX": time(15, 0),
    "BA": time(17, 0),
    "JO": time(17, 0),
    "TA": time(17, 25),
    "WA": time(17, 0),
    "PR": time(16, 20),
    "AT": time(17, 20),
    "IS": time(18, 0),
    "SR": time(15, 0),
}

# Currency-rate bars are stamped at the start of the trading day; the day closes at midnight.
CURRENCY_RATE_CLOSE_TIME = time(23, 59, 59)


def close_time_for(symbol: Symbol) -> time | None:
    if symbol.is_currency_rate:
        return CURRENCY_RATE_CLOSE_TIME
    if not symbol.is_stock:
        return None
    return CLOSE_TIMES_BY_SUFFIX.get(symbol.suffix.upper())


__all__ = ["CLOSE_TIMES_BY_SUFFIX", "CURRENCY_RATE_CLOSE_TIME", "close_time_for"]
