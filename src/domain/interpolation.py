from __future__ import annotations

from bisect import bisect_left
from datetime import datetime
from operator import attrgetter
from typing import Sequence

from .ticks import ValueTick

_instant = attrgetter("instant")


def interpolate(ticks: Sequence[ValueTick], instant: datetime) -> float:
    """Value of a strictly time-ordered series at ``instant``.

    Linear in time between the bracketing points; clamped to the first/last value
    outside the series domain.
    """
    if not ticks:
        raise ValueError("Cannot interpolate an empty series")

    first = ticks[0]
    if instant <= first.instant:
        return first.value
    last = ticks[-1]
    if instant >= last.instant:
        return last.value

    index = bisect_left(ticks, instant, key=_instant)
    after = ticks[index]
    if after.instant == instant:
        return after.value
    before = ticks[index - 1]
    fraction = (instant - before.instant) / (after.instant - before.instant)
    return before.value + (after.value - before.value) * fraction


__all__ = ["interpolate"]
