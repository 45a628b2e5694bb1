from __future__ import annotations

import datetime as dt
from typing import Iterable

from slotengine.domain import Interval, Slot
from slotengine.intervals import normalize_intervals, round_up_to_grid, subtract_interval_list


def free_intervals(windows: Iterable[Interval], exclusions: Iterable[Interval]) -> list[tuple[Interval, Interval]]:
    """``(window, free piece)`` pairs; the window is kept as the grid origin."""
    exclusions = normalize_intervals(exclusions)
    pairs: list[tuple[Interval, Interval]] = []
    for window in normalize_intervals(windows):
        for piece in subtract_interval_list([window], exclusions):
            pairs.append((window, piece))
    return pairs


def generate_slots(
    station_id: str,
    windows: Iterable[Interval],
    exclusions: Iterable[Interval],
    *,
    duration_minutes: int,
    slot_interval_minutes: int,
    now: dt.datetime | None = None,
    requires_staff_approval: bool = False,
) -> list[Slot]:
    """Candidate start times for one station.

    Inside every free piece, candidates sit on a grid of
    ``slot_interval_minutes`` anchored at the start of the open window the
    piece belongs to (a station opening at 09:07 steps from 09:07). A
    candidate is kept only if the whole service fits before the piece ends and
    it starts strictly after ``now``.
    """
    if duration_minutes <= 0:
        return []

    duration = dt.timedelta(minutes=duration_minutes)
    step = dt.timedelta(minutes=slot_interval_minutes if slot_interval_minutes > 0 else duration_minutes)

    slots: list[Slot] = []
    for window, piece in free_intervals(windows, exclusions):
        start = round_up_to_grid(piece.start, window.start, step)
        while start + duration <= piece.end:
            if now is None or start > now:
                slots.append(
                    Slot(
                        start=start,
                        station_id=station_id,
                        duration_minutes=duration_minutes,
                        requires_staff_approval=requires_staff_approval,
                    )
                )
            start += step

    return slots
