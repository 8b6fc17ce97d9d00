"""Domain models and pure computations for market quotes.

This package holds symbols, snapshots, history ticks and the price-history-base
composition. Nothing here performs I/O, so the series arithmetic can be tested
without a quote provider.
"""

__all__ = [
    "exchanges",
    "history_base",
    "interpolation",
    "result",
    "security",
    "symbol",
    "ticks",
]
