"""Interval arithmetic over half-open ``[start, end)`` datetime ranges."""

from __future__ import annotations

import datetime as dt
from typing import Iterable

from slotengine.domain import Interval


def normalize_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort, drop empty ranges and merge overlapping or adjacent ones."""
    merged: list[Interval] = []
    for current in sorted(i for i in intervals if not i.is_empty):
        if merged and current.start <= merged[-1].end:
            if current.end > merged[-1].end:
                merged[-1] = Interval(merged[-1].start, current.end)
        else:
            merged.append(current)
    return merged


def intersect_interval_lists(a: Iterable[Interval], b: Iterable[Interval]) -> list[Interval]:
    left = normalize_intervals(a)
    right = normalize_intervals(b)
    result: list[Interval] = []
    i = j = 0

    while i < len(left) and j < len(right):
        start = max(left[i].start, right[j].start)
        end = min(left[i].end, right[j].end)
        if start < end:
            result.append(Interval(start, end))

        if left[i].end < right[j].end:
            i += 1
        else:
            j += 1

    return result


def subtract_interval(source: Iterable[Interval], block: Interval) -> list[Interval]:
    """Remove ``block`` from every interval in ``source``.

    Each interval yields zero, one or two pieces depending on where the block
    falls (covers it, clips one end, or splits it in the middle).
    """
    result: list[Interval] = []
    for interval in source:
        if not interval.overlaps(block):
            result.append(interval)
            continue
        if block.start > interval.start:
            result.append(Interval(interval.start, block.start))
        if block.end < interval.end:
            result.append(Interval(block.end, interval.end))
    return normalize_intervals(result)


def subtract_interval_list(source: Iterable[Interval], blocks: Iterable[Interval]) -> list[Interval]:
    current = normalize_intervals(source)
    for block in normalize_intervals(blocks):
        if not current:
            break
        current = subtract_interval(current, block)
    return current


def clip_interval(interval: Interval, bounds: Interval) -> Interval | None:
    start = max(interval.start, bounds.start)
    end = min(interval.end, bounds.end)
    if start >= end:
        return None
    return Interval(start, end)


def pad_interval(interval: Interval, minutes: float) -> Interval:
    padding = dt.timedelta(minutes=max(minutes, 0))
    return Interval(interval.start - padding, interval.end + padding)


def round_up_to_grid(value: dt.datetime, origin: dt.datetime, step: dt.timedelta) -> dt.datetime:
    """First grid point ``origin + k * step`` (k >= 0) that is not before ``value``."""
    if value <= origin:
        return origin
    steps, remainder = divmod(value - origin, step)
    if remainder:
        steps += 1
    return origin + steps * step
