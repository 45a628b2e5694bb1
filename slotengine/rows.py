"""Conversion of raw table rows (REST responses, snapshot files) into domain objects."""

from __future__ import annotations

import datetime as dt
from typing import Any, Mapping

import pytz

from slotengine.domain import (
    Appointment,
    BusinessHour,
    CapacityBooking,
    CapacityLimits,
    Service,
    ServiceStationMatrixRow,
    Station,
    StationAllowedCustomerType,
    StationTreatmentTypeRule,
    StationUnavailability,
    Treatment,
    WorkingShift,
    normalize_weekday,
)

Row = Mapping[str, Any]


def parse_datetime(raw: Any) -> dt.datetime:
    if isinstance(raw, dt.datetime):
        value = raw
    else:
        text = str(raw).strip()
        # fromisoformat() on older interpreters rejects the "Z" suffix.
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = dt.datetime.fromisoformat(text)
    if value.tzinfo is None:
        # Timestamps without an offset are stored in UTC.
        value = pytz.utc.localize(value)
    return value


def parse_time(raw: Any) -> dt.time:
    if isinstance(raw, dt.time):
        return raw
    parts = str(raw).strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time value: {raw!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(float(parts[2])) if len(parts) == 3 else 0
    if hour == 24 and minute == 0 and second == 0:
        return dt.time(0, 0)
    return dt.time(hour, minute, second)


def parse_date(raw: Any) -> dt.date:
    if isinstance(raw, dt.datetime):
        return raw.date()
    if isinstance(raw, dt.date):
        return raw
    return dt.date.fromisoformat(str(raw).strip()[:10])


def _opt_int(raw: Any) -> int | None:
    if raw is None or raw == "":
        return None
    return int(raw)


def _number(raw: Any, default: float = 0) -> float:
    if raw is None or raw == "":
        return default
    return float(raw)


def _bool(raw: Any, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, str):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return bool(raw)


def _opt_str(raw: Any) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def station_from_row(row: Row, *, default_slot_interval_minutes: int = 60, display_order: int = 0) -> Station:
    interval = _opt_int(row.get("slot_interval_minutes"))
    order = _opt_int(row.get("display_order"))
    return Station(
        id=str(row["id"]),
        name=str(row.get("name") or row["id"]),
        is_active=_bool(row.get("is_active"), True),
        break_between_appointments=_opt_int(row.get("break_between_appointments")) or 0,
        slot_interval_minutes=interval if interval and interval > 0 else default_slot_interval_minutes,
        display_order=display_order if order is None else order,
    )


def working_shift_from_row(row: Row) -> WorkingShift:
    return WorkingShift(
        station_id=str(row["station_id"]),
        weekday=normalize_weekday(str(row["weekday"])),
        open_time=parse_time(row["open_time"]),
        close_time=parse_time(row["close_time"]),
        shift_order=_opt_int(row.get("shift_order")) or 0,
    )


def business_hour_from_row(row: Row) -> BusinessHour:
    return BusinessHour(
        weekday=normalize_weekday(str(row["weekday"])),
        open_time=parse_time(row["open_time"]),
        close_time=parse_time(row["close_time"]),
    )


def appointment_from_row(row: Row) -> Appointment:
    return Appointment(
        id=str(row["id"]),
        station_id=str(row["station_id"]),
        start_at=parse_datetime(row["start_at"]),
        end_at=parse_datetime(row["end_at"]),
        status=str(row.get("status") or "scheduled"),
    )


def unavailability_from_row(row: Row) -> StationUnavailability:
    return StationUnavailability(
        station_id=str(row["station_id"]),
        start_time=parse_datetime(row["start_time"]),
        end_time=parse_datetime(row["end_time"]),
        reason=str(row.get("reason") or ""),
        is_active=_bool(row.get("is_active"), True),
    )


def matrix_row_from_row(row: Row) -> ServiceStationMatrixRow:
    return ServiceStationMatrixRow(
        service_id=str(row["service_id"]),
        station_id=str(row["station_id"]),
        base_time_minutes=_number(row.get("base_time_minutes")),
        price=_number(row.get("price")),
    )


def treatment_type_rule_from_row(row: Row) -> StationTreatmentTypeRule:
    return StationTreatmentTypeRule(
        station_id=str(row["station_id"]),
        treatment_type_id=str(row["treatment_type_id"]),
        is_active=_bool(row.get("is_active"), True),
        remote_booking_allowed=_bool(row.get("remote_booking_allowed"), True),
        requires_staff_approval=_bool(row.get("requires_staff_approval"), False),
        duration_modifier_minutes=_number(row.get("duration_modifier_minutes")),
    )


def allowed_customer_type_from_row(row: Row) -> StationAllowedCustomerType:
    return StationAllowedCustomerType(
        station_id=str(row["station_id"]),
        customer_type_id=str(row["customer_type_id"]),
    )


def treatment_from_row(row: Row) -> Treatment:
    # The customer join comes back either as an object or a one-element list.
    customer = row.get("customer")
    if isinstance(customer, list):
        customer = customer[0] if customer else None
    customer_type_id = row.get("customer_type_id")
    if customer_type_id is None and isinstance(customer, Mapping):
        customer_type_id = customer.get("customer_type_id")

    return Treatment(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        treatment_type_id=_opt_str(row.get("treatment_type_id")),
        customer_id=_opt_str(row.get("customer_id")),
        customer_type_id=_opt_str(customer_type_id),
    )


def service_from_row(row: Row) -> Service:
    return Service(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        capacity_category=_opt_str(row.get("capacity_category")),
    )


def capacity_limits_from_row(row: Row) -> CapacityLimits:
    daily = row.get("daily_limit", row.get("total_limit"))
    return CapacityLimits(
        effective_date=parse_date(row["effective_date"]),
        hourly_limit=_opt_int(row.get("hourly_limit")),
        daily_limit=_opt_int(daily),
        full_day_limit=_opt_int(row.get("full_day_limit")),
        trial_limit=_opt_int(row.get("trial_limit")),
        regular_limit=_opt_int(row.get("regular_limit")),
    )


def capacity_booking_from_row(row: Row) -> CapacityBooking:
    return CapacityBooking(
        id=str(row["id"]),
        start_at=parse_datetime(row["start_at"]),
        category=str(row.get("category") or row.get("service_type") or ""),
        status=str(row.get("status") or "scheduled"),
    )
