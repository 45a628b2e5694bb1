from __future__ import annotations

from typing import Iterable

from slotengine.domain import Appointment, Interval, InvariantViolation, StationUnavailability
from slotengine.intervals import clip_interval, normalize_intervals, pad_interval


def live_appointments(appointments: Iterable[Appointment], day_range: Interval) -> list[Appointment]:
    return sorted(
        (a for a in appointments if not a.is_cancelled and Interval(a.start_at, a.end_at).overlaps(day_range)),
        key=lambda a: (a.start_at, a.end_at, a.id),
    )


def check_no_overlaps(station_id: str, appointments: Iterable[Appointment]) -> None:
    """Raise InvariantViolation if two live appointments on a station overlap."""
    previous: Appointment | None = None
    for appointment in sorted(appointments, key=lambda a: (a.start_at, a.end_at, a.id)):
        if appointment.end_at < appointment.start_at:
            raise InvariantViolation(station_id, f"appointment {appointment.id} ends before it starts")
        if previous is not None and appointment.start_at < previous.end_at:
            raise InvariantViolation(
                station_id,
                f"appointments {previous.id} and {appointment.id} overlap",
            )
        if previous is None or appointment.end_at > previous.end_at:
            previous = appointment


def busy_intervals(
    appointments: Iterable[Appointment],
    unavailability: Iterable[StationUnavailability],
    day_range: Interval,
) -> list[Interval]:
    """Coalesced busy runs for the day: live appointments plus active blocks."""
    raw: list[Interval] = []
    for appointment in appointments:
        if appointment.is_cancelled:
            continue
        clipped = clip_interval(Interval(appointment.start_at, appointment.end_at), day_range)
        if clipped is not None:
            raw.append(clipped)

    for block in unavailability:
        if not block.is_active:
            continue
        clipped = clip_interval(Interval(block.start_time, block.end_time), day_range)
        if clipped is not None:
            raw.append(clipped)

    return normalize_intervals(raw)


def pad_busy_intervals(intervals: Iterable[Interval], break_minutes: float) -> list[Interval]:
    return normalize_intervals(pad_interval(interval, break_minutes) for interval in intervals)


def project_occupancy(
    station_id: str,
    appointments: Iterable[Appointment],
    unavailability: Iterable[StationUnavailability],
    day_range: Interval,
    break_minutes: float,
) -> list[Interval]:
    """Exclusion zones for slot generation on one station and day.

    Busy intervals are padded by the station's break on both sides so that a
    new booking is separated from its neighbours, not merely adjacent to them.
    """
    live = live_appointments(appointments, day_range)
    check_no_overlaps(station_id, live)
    return pad_busy_intervals(busy_intervals(live, unavailability, day_range), break_minutes)
