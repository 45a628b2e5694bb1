from __future__ import annotations

import datetime as dt
from abc import ABC, abstractmethod
from typing import Iterable, Sequence

from slotengine.capacity import select_effective_limits
from slotengine.domain import (
    Appointment,
    BusinessHour,
    CapacityBooking,
    CapacityLimits,
    EligibilityInputs,
    Interval,
    Service,
    ServiceStationMatrixRow,
    Station,
    StationAllowedCustomerType,
    StationTreatmentTypeRule,
    StationUnavailability,
    Treatment,
    WorkingShift,
)


class DataProvider(ABC):
    """Black-box source of the entities one availability request reads.

    Implementations raise DataFetchError on I/O failure; they never return an
    empty list in place of data they could not load.
    """

    @abstractmethod
    def fetch_eligibility_inputs(self, service_id: str, treatment_type_id: str | None) -> EligibilityInputs: ...

    @abstractmethod
    def fetch_working_shifts(self, station_ids: Sequence[str], weekday: str) -> list[WorkingShift]: ...

    @abstractmethod
    def fetch_business_hours(self, weekday: str) -> list[BusinessHour]: ...

    @abstractmethod
    def fetch_appointments(self, station_ids: Sequence[str], day_range: Interval) -> list[Appointment]: ...

    @abstractmethod
    def fetch_unavailability(self, station_ids: Sequence[str], day_range: Interval) -> list[StationUnavailability]: ...

    @abstractmethod
    def fetch_capacity_limits(self, category: str, effective_date: dt.date) -> CapacityLimits | None: ...

    @abstractmethod
    def fetch_capacity_bookings(self, category: str, day_range: Interval) -> list[CapacityBooking]: ...

    @abstractmethod
    def fetch_treatment(self, treatment_id: str) -> Treatment | None: ...

    @abstractmethod
    def fetch_service(self, service_id: str) -> Service | None: ...

    @abstractmethod
    def fetch_open_days_ahead(self) -> int | None: ...


class InMemoryProvider(DataProvider):
    """Serves a fixed snapshot of rows (tests, JSON snapshot files)."""

    def __init__(
        self,
        *,
        stations: Iterable[Station] = (),
        working_shifts: Iterable[WorkingShift] = (),
        business_hours: Iterable[BusinessHour] = (),
        appointments: Iterable[Appointment] = (),
        unavailability: Iterable[StationUnavailability] = (),
        service_station_matrix: Iterable[ServiceStationMatrixRow] = (),
        treatment_type_rules: Iterable[StationTreatmentTypeRule] = (),
        allowed_customer_types: Iterable[StationAllowedCustomerType] = (),
        treatments: Iterable[Treatment] = (),
        services: Iterable[Service] = (),
        capacity_limits: Iterable[CapacityLimits] = (),
        capacity_bookings: Iterable[CapacityBooking] = (),
        open_days_ahead: int | None = None,
    ):
        self.stations = tuple(stations)
        self.working_shifts = tuple(working_shifts)
        self.business_hours = tuple(business_hours)
        self.appointments = tuple(appointments)
        self.unavailability = tuple(unavailability)
        self.service_station_matrix = tuple(service_station_matrix)
        self.treatment_type_rules = tuple(treatment_type_rules)
        self.allowed_customer_types = tuple(allowed_customer_types)
        self.treatments = tuple(treatments)
        self.services = tuple(services)
        self.capacity_limits = tuple(capacity_limits)
        self.capacity_bookings = tuple(capacity_bookings)
        self.open_days_ahead = open_days_ahead

    def fetch_eligibility_inputs(self, service_id: str, treatment_type_id: str | None) -> EligibilityInputs:
        return EligibilityInputs(
            stations=self.stations,
            matrix=tuple(r for r in self.service_station_matrix if r.service_id == service_id),
            rules=tuple(r for r in self.treatment_type_rules if r.treatment_type_id == treatment_type_id),
            allowed_customer_types=self.allowed_customer_types,
        )

    def fetch_working_shifts(self, station_ids: Sequence[str], weekday: str) -> list[WorkingShift]:
        wanted = set(station_ids)
        return [s for s in self.working_shifts if s.station_id in wanted and s.weekday == weekday]

    def fetch_business_hours(self, weekday: str) -> list[BusinessHour]:
        return [bh for bh in self.business_hours if bh.weekday == weekday]

    def fetch_appointments(self, station_ids: Sequence[str], day_range: Interval) -> list[Appointment]:
        wanted = set(station_ids)
        return [
            a
            for a in self.appointments
            if a.station_id in wanted and a.start_at < day_range.end and a.end_at > day_range.start
        ]

    def fetch_unavailability(self, station_ids: Sequence[str], day_range: Interval) -> list[StationUnavailability]:
        wanted = set(station_ids)
        return [
            u
            for u in self.unavailability
            if u.station_id in wanted and u.start_time < day_range.end and u.end_time > day_range.start
        ]

    def fetch_capacity_limits(self, category: str, effective_date: dt.date) -> CapacityLimits | None:
        return select_effective_limits(self.capacity_limits, effective_date)

    def fetch_capacity_bookings(self, category: str, day_range: Interval) -> list[CapacityBooking]:
        return [b for b in self.capacity_bookings if day_range.start <= b.start_at < day_range.end]

    def fetch_treatment(self, treatment_id: str) -> Treatment | None:
        return next((t for t in self.treatments if t.id == treatment_id), None)

    def fetch_service(self, service_id: str) -> Service | None:
        return next((s for s in self.services if s.id == service_id), None)

    def fetch_open_days_ahead(self) -> int | None:
        return self.open_days_ahead
