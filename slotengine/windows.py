from __future__ import annotations

import datetime as dt
from typing import Iterable

from slotengine.clock import BusinessClock
from slotengine.domain import BusinessHour, Interval, WorkingShift, weekday_name
from slotengine.intervals import intersect_interval_lists, normalize_intervals


def business_windows(business_hours: Iterable[BusinessHour], day: dt.date, clock: BusinessClock) -> list[Interval]:
    weekday = weekday_name(day)
    return normalize_intervals(
        clock.time_range(day, bh.open_time, bh.close_time) for bh in business_hours if bh.weekday == weekday
    )


def build_working_windows(
    shifts: Iterable[WorkingShift],
    business_hours: Iterable[BusinessHour],
    day: dt.date,
    clock: BusinessClock,
) -> list[Interval]:
    """Open intervals of one station on ``day``.

    Every shift for the weekday is clipped to the global business hours and the
    pieces are unioned into sorted, disjoint intervals. No shifts, or no
    business hours for the weekday, means closed all day.
    """
    weekday = weekday_name(day)
    station_windows = [
        clock.time_range(day, shift.open_time, shift.close_time)
        for shift in sorted(shifts, key=lambda s: s.shift_order)
        if shift.weekday == weekday
    ]
    if not station_windows:
        return []

    ceiling = business_windows(business_hours, day, clock)
    if not ceiling:
        return []

    return intersect_interval_lists(station_windows, ceiling)
