from __future__ import annotations

import json
import os
import tempfile
from typing import Any, Callable, TypeVar

from slotengine.provider import InMemoryProvider
from slotengine.rows import (
    allowed_customer_type_from_row,
    appointment_from_row,
    business_hour_from_row,
    capacity_booking_from_row,
    capacity_limits_from_row,
    matrix_row_from_row,
    service_from_row,
    station_from_row,
    treatment_from_row,
    treatment_type_rule_from_row,
    unavailability_from_row,
    working_shift_from_row,
)

T = TypeVar("T")


def _rows(raw: dict[str, Any], key: str, parser: Callable[[dict[str, Any]], T]) -> list[T]:
    items = raw.get(key, [])
    if not isinstance(items, list):
        raise ValueError(f"Snapshot key {key!r} must be a list")
    try:
        return [parser(item) for item in items]
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed {key} row in snapshot: {e}") from e


def load_snapshot(path: str, *, default_slot_interval_minutes: int = 60) -> InMemoryProvider:
    """Load a JSON dump of the scheduling tables (keys are table names)."""
    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Snapshot {path} is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise ValueError(f"Snapshot {path} must contain a JSON object")

    # File order is the tie-break order unless a row says otherwise.
    positions = iter(range(len(raw.get("stations") or [])))
    stations = _rows(
        raw,
        "stations",
        lambda row: station_from_row(
            row, default_slot_interval_minutes=default_slot_interval_minutes, display_order=next(positions)
        ),
    )

    open_days_ahead = raw.get("open_days_ahead")
    return InMemoryProvider(
        stations=stations,
        working_shifts=_rows(raw, "station_working_hours", working_shift_from_row),
        business_hours=_rows(raw, "business_hours", business_hour_from_row),
        appointments=_rows(raw, "appointments", appointment_from_row),
        unavailability=_rows(raw, "station_unavailability", unavailability_from_row),
        service_station_matrix=_rows(raw, "service_station_matrix", matrix_row_from_row),
        treatment_type_rules=_rows(raw, "station_treatment_type_rules", treatment_type_rule_from_row),
        allowed_customer_types=_rows(raw, "station_allowed_customer_types", allowed_customer_type_from_row),
        treatments=_rows(raw, "treatments", treatment_from_row),
        services=_rows(raw, "services", service_from_row),
        capacity_limits=_rows(raw, "capacity_limits", capacity_limits_from_row),
        capacity_bookings=_rows(raw, "capacity_bookings", capacity_booking_from_row),
        open_days_ahead=int(open_days_ahead) if open_days_ahead is not None else None,
    )


def save_result(path: str, payload: Any) -> None:
    folder = os.path.dirname(os.path.abspath(path))
    if folder and not os.path.exists(folder):
        os.makedirs(folder, exist_ok=True)

    # Atomic write
    with tempfile.NamedTemporaryFile("w", delete=False, encoding="utf-8", dir=folder, suffix=".tmp") as tf:
        json.dump(payload, tf, ensure_ascii=False, indent=2)
        tmp_name = tf.name

    os.replace(tmp_name, path)
