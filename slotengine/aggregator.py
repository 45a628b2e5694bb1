from __future__ import annotations

from typing import Iterable, Mapping, Sequence

from slotengine.clock import BusinessClock
from slotengine.domain import EligibleStation, Slot, TimeOption


def merge_station_slots(
    per_station: Iterable[tuple[EligibleStation, Sequence[Slot]]],
) -> list[Slot]:
    """Flatten per-station slot lists into one deterministic, time-ordered list.

    Equal start times on different stations are distinct options and are all
    kept; they are ordered by station display order.
    """
    keyed: list[tuple[object, Slot]] = []
    for candidate, slots in per_station:
        order = (candidate.station.display_order, candidate.station_id)
        for slot in slots:
            keyed.append(((slot.start, order), slot))

    keyed.sort(key=lambda pair: pair[0])
    return [slot for _, slot in keyed]


def is_day_available(slots: Sequence[Slot]) -> bool:
    return len(slots) > 0


def to_time_options(
    slots: Iterable[Slot],
    stations: Mapping[str, EligibleStation],
    clock: BusinessClock,
) -> list[TimeOption]:
    options: list[TimeOption] = []
    for slot in slots:
        candidate = stations[slot.station_id]
        options.append(
            TimeOption(
                station_id=slot.station_id,
                station_name=candidate.station.name,
                time=clock.localize(slot.start),
                duration_minutes=slot.duration_minutes,
                requires_staff_approval=slot.requires_staff_approval,
            )
        )
    return options
