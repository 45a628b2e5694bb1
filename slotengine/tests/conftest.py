from __future__ import annotations

import datetime as dt
from typing import Callable

import pytest

from slotengine.clock import FixedClock
from slotengine.domain import (
    WEEKDAYS,
    BusinessHour,
    ServiceStationMatrixRow,
    Station,
    StationTreatmentTypeRule,
    WorkingShift,
)
from slotengine.engine import AvailabilityEngine
from slotengine.provider import InMemoryProvider

# Sunday noon, business time. Monday 2025-03-03 is "tomorrow" in most tests.
NOW = dt.datetime(2025, 3, 2, 12, 0)
MONDAY = dt.date(2025, 3, 3)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def monday() -> dt.date:
    return MONDAY


@pytest.fixture
def at(clock: FixedClock) -> Callable[..., dt.datetime]:
    """``at("10:30")`` is Monday 10:30 in business time; pass ``day=`` for other dates."""

    def _at(hhmm: str, day: dt.date = MONDAY) -> dt.datetime:
        return clock.at(day, dt.time.fromisoformat(hhmm))

    return _at


@pytest.fixture
def make_provider() -> Callable[..., InMemoryProvider]:
    """Snapshot with one or more stations bookable for service "svc" / treatment type "tt".

    Defaults: every station works Monday 09:00-17:00 inside 08:00-20:00
    business hours, base time 45 minutes, an active remote-bookable rule.
    """

    def _make(
        *,
        stations: list[Station] | None = None,
        working_shifts: list[WorkingShift] | None = None,
        business_hours: list[BusinessHour] | None = None,
        service_station_matrix: list[ServiceStationMatrixRow] | None = None,
        treatment_type_rules: list[StationTreatmentTypeRule] | None = None,
        **extra,
    ) -> InMemoryProvider:
        if stations is None:
            stations = [Station(id="s1", name="Station 1", slot_interval_minutes=30, break_between_appointments=10)]
        if working_shifts is None:
            working_shifts = [WorkingShift(s.id, "monday", dt.time(9), dt.time(17)) for s in stations]
        if business_hours is None:
            business_hours = [BusinessHour(w, dt.time(8), dt.time(20)) for w in WEEKDAYS]
        if service_station_matrix is None:
            service_station_matrix = [ServiceStationMatrixRow("svc", s.id, 45) for s in stations]
        if treatment_type_rules is None:
            treatment_type_rules = [StationTreatmentTypeRule(s.id, "tt") for s in stations]

        return InMemoryProvider(
            stations=stations,
            working_shifts=working_shifts,
            business_hours=business_hours,
            service_station_matrix=service_station_matrix,
            treatment_type_rules=treatment_type_rules,
            **extra,
        )

    return _make


@pytest.fixture
def make_engine(clock: FixedClock, make_provider: Callable[..., InMemoryProvider]) -> Callable[..., AvailabilityEngine]:
    def _make(provider: InMemoryProvider | None = None, **kwargs) -> AvailabilityEngine:
        kwargs.setdefault("max_workers", 4)
        kwargs.setdefault("request_timeout_seconds", 5.0)
        return AvailabilityEngine(provider or make_provider(), clock=clock, **kwargs)

    return _make
