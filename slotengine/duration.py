from __future__ import annotations

import math


def resolve_duration(
    base_time_minutes: float,
    duration_modifier_minutes: float | None,
    slot_interval_minutes: int,
) -> int:
    """Effective service duration at a station, in whole minutes.

    ``max(base + modifier, 0)``, never under-allocated: fractional minutes are
    rounded up, and a modifier that leaves the total off the station's slot grid
    rounds it up to the next grid multiple. A result of 0 means the station
    cannot take the booking.
    """
    modifier = duration_modifier_minutes or 0
    minutes = math.ceil(max(base_time_minutes + modifier, 0))

    if modifier and slot_interval_minutes > 0:
        remainder = minutes % slot_interval_minutes
        if remainder:
            minutes += slot_interval_minutes - remainder

    return minutes
