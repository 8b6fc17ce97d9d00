from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Sequence

from domain.result import Result
from domain.security import Security
from domain.ticks import HistoryFlags
from services.quote_service import build_default_service

HISTORY_CHOICES: dict[str, HistoryFlags] = {
    "dividend": HistoryFlags.DIVIDEND,
    "split": HistoryFlags.SPLIT,
    "price": HistoryFlags.PRICE,
    "all": HistoryFlags.ALL,
}


async def run(symbols: Sequence[str], *, history_flags: HistoryFlags, history_base: str) -> None:
    with build_default_service() as service:
        securities = await service.get_by_name(symbols, history_flags, history_base)

    for name, security in securities.items():
        if security is None:
            print(f"{name}: not found")
            continue
        print(render_security(name, security))


def render_security(name: str, security: Security) -> str:
    snapshot = security.snapshot
    parts = [f"{name}:"]
    if snapshot.regular_market_price is not None:
        parts.append(f"{snapshot.regular_market_price} {snapshot.currency}".strip())
    if snapshot.long_name:
        parts.append(f"({snapshot.long_name})")
    parts.append(_render_result("dividends", security.dividend_history))
    parts.append(_render_result("splits", security.split_history))
    parts.append(_render_result("prices", security.price_history))
    if security.price_history_base is not None:
        result = security.price_history_base
        if result.has_error:
            parts.append(f"base: error ({result.error})")
        elif result.unwrap():
            last = result.unwrap()[-1]
            parts.append(f"base: {last.value:.6g} @ {last.instant.isoformat()}")
    return " ".join(part for part in parts if part)


def _render_result(label: str, result: Result | None) -> str:
    if result is None:
        return ""
    if result.has_error:
        return f"{label}: error ({result.error})"
    return f"{label}: {len(result.unwrap())}"


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Fetch quotes and history, optionally relative to a base symbol.")
    parser.add_argument("symbols", nargs="+", help="Symbols such as MSFT, TUR.PA, EUR=X or USDJPY=X.")
    parser.add_argument(
        "--history",
        action="append",
        choices=sorted(HISTORY_CHOICES),
        default=[],
        help="History to fetch; can be repeated.",
    )
    parser.add_argument("--base", default="", help="Currency (e.g. EUR=X) or stock to express price history in.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    history_flags = HistoryFlags.NONE
    for choice in args.history:
        history_flags |= HISTORY_CHOICES[choice]
    if args.base:
        history_flags |= HistoryFlags.PRICE

    asyncio.run(run(args.symbols, history_flags=history_flags, history_base=args.base))


if __name__ == "__main__":
    main()
