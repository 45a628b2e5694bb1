from __future__ import annotations

import datetime as dt
import json
import time
from unittest.mock import patch

import pytest

from slotengine.config import Settings
from slotengine.domain import (
    Appointment,
    AvailabilityCancelled,
    AvailabilityRequest,
    AvailabilityTimeout,
    CapacityBooking,
    CapacityLimits,
    DataFetchError,
    Service,
    Station,
    StationAllowedCustomerType,
    StationTreatmentTypeRule,
    StationUnavailability,
    Treatment,
    WorkingShift,
)
from slotengine.engine import AvailabilityEngine, CancellationToken
from slotengine.rows import capacity_booking_from_row

TWO_STATIONS = [
    Station(id="s1", name="Station 1", slot_interval_minutes=30, break_between_appointments=10, display_order=0),
    Station(id="s2", name="Station 2", slot_interval_minutes=30, break_between_appointments=10, display_order=1),
]


def _times(engine: AvailabilityEngine, day: dt.date, customer_type_id: str | None = None):
    return engine.get_available_times("svc", day, customer_type_id, treatment_type_id="tt")


def test_single_station_day_lists_every_grid_start(make_engine, monday) -> None:
    options = _times(make_engine(), monday)

    assert [o.time.strftime("%H:%M") for o in options][:3] == ["09:00", "09:30", "10:00"]
    assert len(options) == 15
    assert {o.station_name for o in options} == {"Station 1"}
    assert all(o.duration_minutes == 45 for o in options)


def test_equal_start_times_on_two_stations_are_both_kept(make_engine, make_provider, monday) -> None:
    options = _times(make_engine(make_provider(stations=TWO_STATIONS)), monday)

    assert len(options) == 30
    assert [(o.time.strftime("%H:%M"), o.station_id) for o in options[:2]] == [("09:00", "s1"), ("09:00", "s2")]


def test_fully_booked_station_does_not_hide_free_one(make_engine, make_provider, monday, at) -> None:
    provider = make_provider(
        stations=TWO_STATIONS,
        unavailability=[StationUnavailability("s2", at("08:00"), at("18:00"), reason="closed")],
    )
    engine = make_engine(provider)

    [flag] = engine.get_available_dates("svc", (monday, monday), treatment_type_id="tt")
    options = _times(engine, monday)

    assert flag.available is True
    assert options
    assert {o.station_id for o in options} == {"s1"}


def test_booked_appointment_and_break_are_excluded(make_engine, make_provider, monday, at) -> None:
    provider = make_provider(appointments=[Appointment("a1", "s1", at("10:00"), at("10:45"))])

    options = _times(make_engine(provider), monday)

    assert [o.time.strftime("%H:%M") for o in options[:2]] == ["09:00", "11:00"]
    for option in options:
        end = option.time + dt.timedelta(minutes=option.duration_minutes)
        assert end <= at("09:50") or option.time >= at("10:55")


def test_customer_type_outside_allow_list_gets_no_slots(make_engine, make_provider, monday) -> None:
    provider = make_provider(allowed_customer_types=[StationAllowedCustomerType("s1", "vip")])
    engine = make_engine(provider)

    assert _times(engine, monday, customer_type_id="regular") == []
    assert len(_times(engine, monday, customer_type_id="vip")) == 15


def test_identical_snapshot_gives_identical_output(make_engine, make_provider, monday, at) -> None:
    provider = make_provider(
        stations=TWO_STATIONS,
        appointments=[
            Appointment("a1", "s1", at("11:00"), at("12:00")),
            Appointment("a2", "s2", at("09:30"), at("10:15")),
        ],
    )

    first = json.dumps([o.to_dict() for o in _times(make_engine(provider, max_workers=1), monday)])
    second = json.dumps([o.to_dict() for o in _times(make_engine(provider, max_workers=8), monday)])

    assert first == second


def test_adding_an_appointment_never_adds_slots(make_engine, make_provider, monday, at) -> None:
    before = len(_times(make_engine(make_provider()), monday))
    after = len(
        _times(make_engine(make_provider(appointments=[Appointment("a1", "s1", at("13:00"), at("13:45"))])), monday)
    )

    assert after < before


def test_corrupt_station_is_excluded_without_failing_request(make_engine, make_provider, monday, at) -> None:
    provider = make_provider(
        stations=TWO_STATIONS,
        appointments=[
            Appointment("a1", "s1", at("10:00"), at("11:00")),
            Appointment("a2", "s1", at("10:30"), at("11:30")),
        ],
    )
    request = AvailabilityRequest(service_id="svc", treatment_type_id="tt")

    result = make_engine(provider).compute_day(request, monday)

    assert result.available is True
    assert {s.station_id for s in result.slots} == {"s2"}
    assert [(e.station_id, e.reason) for e in result.excluded] == [("s1", "invariant-violation")]


def test_zero_duration_station_is_reported(make_engine, make_provider, monday) -> None:
    provider = make_provider(
        stations=TWO_STATIONS,
        treatment_type_rules=[
            StationTreatmentTypeRule("s1", "tt", duration_modifier_minutes=-45),
            StationTreatmentTypeRule("s2", "tt"),
        ],
    )
    request = AvailabilityRequest(service_id="svc", treatment_type_id="tt")

    result = make_engine(provider).compute_day(request, monday)

    assert [(e.station_id, e.reason) for e in result.excluded] == [("s1", "zero-duration")]
    assert {s.station_id for s in result.slots} == {"s2"}


def test_modifier_and_staff_approval_flow_into_options(make_engine, make_provider, monday) -> None:
    provider = make_provider(
        treatment_type_rules=[
            StationTreatmentTypeRule("s1", "tt", requires_staff_approval=True, duration_modifier_minutes=10)
        ]
    )

    options = _times(make_engine(provider), monday)

    # 45 + 10 rounds up to the 30 minute grid.
    assert options[0].duration_minutes == 60
    assert options[-1].time.strftime("%H:%M") == "16:00"
    assert all(o.requires_staff_approval for o in options)


def test_fetch_failure_is_not_reported_as_fully_booked(make_engine, make_provider, monday) -> None:
    provider = make_provider()

    with patch.object(provider, "fetch_appointments", side_effect=DataFetchError("database unavailable")):
        with pytest.raises(DataFetchError, match="database unavailable") as exc:
            _times(make_engine(provider), monday)
    assert exc.value.retryable is True


def test_slow_fetch_times_out(make_engine, make_provider, monday) -> None:
    provider = make_provider()

    def slow(*args, **kwargs):
        time.sleep(1.0)
        return []

    with patch.object(provider, "fetch_appointments", side_effect=slow):
        with pytest.raises(AvailabilityTimeout):
            _times(make_engine(provider, request_timeout_seconds=0.2), monday)


def test_zero_timeout_fails_fast_instead_of_using_default(make_engine, monday) -> None:
    engine = make_engine(request_timeout_seconds=30.0)

    with pytest.raises(AvailabilityTimeout, match=r"within 0\.0s"):
        engine.get_available_times("svc", monday, treatment_type_id="tt", timeout=0)


def test_cancelled_token_stops_the_request(make_engine, monday) -> None:
    token = CancellationToken()
    token.cancel()

    with pytest.raises(AvailabilityCancelled):
        make_engine().get_available_times("svc", monday, treatment_type_id="tt", cancel_token=token)


def test_cancel_during_fetch(make_engine, make_provider, monday) -> None:
    provider = make_provider()
    token = CancellationToken()

    def cancel_then_wait(*args, **kwargs):
        token.cancel()
        time.sleep(0.5)
        return []

    with patch.object(provider, "fetch_unavailability", side_effect=cancel_then_wait):
        with pytest.raises(AvailabilityCancelled):
            make_engine(provider).get_available_times("svc", monday, treatment_type_id="tt", cancel_token=token)


def test_dates_outside_booking_window_are_unavailable(make_engine, make_provider, monday) -> None:
    tuesday = monday + dt.timedelta(days=1)
    shifts = [WorkingShift("s1", w, dt.time(9), dt.time(17)) for w in ("sunday", "monday", "tuesday")]
    saturday = monday - dt.timedelta(days=2)

    narrow = make_engine(make_provider(working_shifts=shifts, open_days_ahead=1))
    wide = make_engine(make_provider(working_shifts=shifts))

    narrow_flags = {f.date: f.available for f in narrow.get_available_dates("svc", (saturday, tuesday), treatment_type_id="tt")}
    wide_flags = {f.date: f.available for f in wide.get_available_dates("svc", (saturday, tuesday), treatment_type_id="tt")}

    assert narrow_flags == {saturday: False, saturday + dt.timedelta(days=1): True, monday: True, tuesday: False}
    assert wide_flags[tuesday] is True


def test_today_only_offers_future_times(make_engine, make_provider) -> None:
    sunday = dt.date(2025, 3, 2)
    shifts = [WorkingShift("s1", "sunday", dt.time(9), dt.time(17))]

    options = _times(make_engine(make_provider(working_shifts=shifts)), sunday)

    # "now" is 12:00; a slot starting exactly now is already gone.
    assert options[0].time.strftime("%H:%M") == "12:30"


def test_invalid_date_range_is_rejected(make_engine, monday) -> None:
    with pytest.raises(ValueError, match="Invalid date range"):
        make_engine().get_available_dates("svc", (monday, monday - dt.timedelta(days=1)), treatment_type_id="tt")


def test_capacity_bounded_service_applies_hourly_ceiling(make_engine, make_provider, monday, at) -> None:
    provider = make_provider(
        stations=TWO_STATIONS,
        services=[Service("svc", "Daycare", capacity_category="regular")],
        capacity_limits=[CapacityLimits(effective_date=dt.date(2025, 1, 1), hourly_limit=2)],
        capacity_bookings=[
            CapacityBooking("b1", at("09:00"), "regular"),
            CapacityBooking("b2", at("09:15"), "trial"),
        ],
    )

    options = _times(make_engine(provider), monday)
    starts = [o.time.strftime("%H:%M") for o in options]

    assert not [s for s in starts if s.startswith("09:")]
    assert starts[:2] == ["10:00", "10:00"]
    assert "10:30" not in starts


def test_full_day_booking_row_fills_regular_places(make_engine, make_provider, monday) -> None:
    row = {"id": "b1", "start_at": "2025-03-03T07:00:00+02:00", "service_type": "full_day", "status": "scheduled"}

    def provider_with(*bookings: dict):
        return make_provider(
            stations=TWO_STATIONS,
            services=[Service("svc", "Daycare", capacity_category="regular")],
            capacity_limits=[CapacityLimits(effective_date=dt.date(2025, 1, 1), regular_limit=1)],
            capacity_bookings=[capacity_booking_from_row(b) for b in bookings],
        )

    assert _times(make_engine(provider_with(row)), monday) == []
    assert len(_times(make_engine(provider_with({**row, "service_type": "hourly"})), monday)) == 1


def test_full_day_limit_applies_to_trial_requests(make_engine, make_provider, monday, at) -> None:
    provider = make_provider(
        stations=TWO_STATIONS,
        services=[Service("svc", "Daycare", capacity_category="trial")],
        capacity_limits=[CapacityLimits(effective_date=dt.date(2025, 1, 1), full_day_limit=2)],
        capacity_bookings=[CapacityBooking("b1", at("08:00"), "full_day")],
    )

    options = _times(make_engine(provider), monday)

    assert [(o.time.strftime("%H:%M"), o.station_id) for o in options] == [("09:00", "s1")]


def test_resolve_request_reads_treatment_and_service(make_engine, make_provider) -> None:
    provider = make_provider(
        treatments=[Treatment("t1", "Rex", treatment_type_id="tt", customer_type_id="vip")],
        services=[Service("svc", "Grooming")],
    )

    request = make_engine(provider).resolve_request("t1", "svc")

    assert request == AvailabilityRequest(service_id="svc", treatment_type_id="tt", customer_type_id="vip")


def test_resolve_request_unknown_treatment(make_engine) -> None:
    with pytest.raises(ValueError, match="Treatment missing not found"):
        make_engine().resolve_request("missing", "svc")


def test_engine_from_settings(make_provider) -> None:
    settings = Settings(max_workers=3, request_timeout_seconds=7.5, default_open_days_ahead=14)

    engine = AvailabilityEngine.from_settings(make_provider(), settings)

    assert engine.max_workers == 3
    assert engine.request_timeout_seconds == 7.5
    assert engine.default_open_days_ahead == 14
    assert engine.clock.timezone.zone == "Asia/Jerusalem"
