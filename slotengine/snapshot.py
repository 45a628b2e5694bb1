from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Iterable, Mapping, TypeVar

from slotengine.domain import (
    Appointment,
    AvailabilityRequest,
    BusinessHour,
    CapacityBooking,
    CapacityLimits,
    EligibleStation,
    ExcludedStation,
    StationUnavailability,
    WorkingShift,
)

T = TypeVar("T")


def index_by_station(rows: Iterable[T]) -> dict[str, tuple[T, ...]]:
    grouped: dict[str, list[T]] = {}
    for row in rows:
        grouped.setdefault(row.station_id, []).append(row)  # type: ignore[attr-defined]
    return {station_id: tuple(items) for station_id, items in grouped.items()}


@dataclass(frozen=True)
class RequestSnapshot:
    """Everything one request reads, loaded once and indexed by station id."""

    request: AvailabilityRequest
    now: dt.datetime
    # Eligible stations with a bookable duration, keyed by station id.
    candidates: Mapping[str, EligibleStation]
    durations: Mapping[str, int]
    excluded: tuple[ExcludedStation, ...] = ()
    shifts: Mapping[str, tuple[WorkingShift, ...]] = field(default_factory=dict)
    business_hours: tuple[BusinessHour, ...] = ()
    appointments: Mapping[str, tuple[Appointment, ...]] = field(default_factory=dict)
    unavailability: Mapping[str, tuple[StationUnavailability, ...]] = field(default_factory=dict)
    capacity_limits: Mapping[dt.date, CapacityLimits | None] = field(default_factory=dict)
    capacity_bookings: tuple[CapacityBooking, ...] = ()

    def shifts_for(self, station_id: str) -> tuple[WorkingShift, ...]:
        return self.shifts.get(station_id, ())

    def appointments_for(self, station_id: str) -> tuple[Appointment, ...]:
        return self.appointments.get(station_id, ())

    def unavailability_for(self, station_id: str) -> tuple[StationUnavailability, ...]:
        return self.unavailability.get(station_id, ())
