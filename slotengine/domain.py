from __future__ import annotations

import datetime as dt
from dataclasses import dataclass

CANCELLED_STATUS = "cancelled"

# Index matches datetime.date.weekday().
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def weekday_name(day: dt.date) -> str:
    return WEEKDAYS[day.weekday()]


def normalize_weekday(raw: str) -> str:
    value = raw.strip().lower()
    if value not in WEEKDAYS:
        raise ValueError(f"Unknown weekday: {raw!r}")
    return value


@dataclass(frozen=True)
class Station:
    id: str
    name: str
    is_active: bool = True
    # Buffer enforced before and after every booking.
    break_between_appointments: int = 0
    # Granularity of candidate start times.
    slot_interval_minutes: int = 60
    # Creation order; used as a deterministic tie-break.
    display_order: int = 0


@dataclass(frozen=True)
class WorkingShift:
    station_id: str
    weekday: str
    open_time: dt.time
    # 00:00 means midnight at the end of the day.
    close_time: dt.time
    shift_order: int = 0


@dataclass(frozen=True)
class BusinessHour:
    weekday: str
    open_time: dt.time
    close_time: dt.time


@dataclass(frozen=True)
class Appointment:
    id: str
    station_id: str
    start_at: dt.datetime
    end_at: dt.datetime
    status: str = "scheduled"

    @property
    def is_cancelled(self) -> bool:
        return self.status.strip().lower() == CANCELLED_STATUS


@dataclass(frozen=True)
class StationUnavailability:
    station_id: str
    start_time: dt.datetime
    end_time: dt.datetime
    reason: str = ""
    is_active: bool = True


@dataclass(frozen=True)
class ServiceStationMatrixRow:
    service_id: str
    station_id: str
    base_time_minutes: float
    price: float = 0.0


@dataclass(frozen=True)
class StationTreatmentTypeRule:
    station_id: str
    treatment_type_id: str
    is_active: bool = True
    remote_booking_allowed: bool = True
    requires_staff_approval: bool = False
    duration_modifier_minutes: float = 0


@dataclass(frozen=True)
class StationAllowedCustomerType:
    station_id: str
    customer_type_id: str


@dataclass(frozen=True)
class Treatment:
    id: str
    name: str
    treatment_type_id: str | None = None
    customer_id: str | None = None
    customer_type_id: str | None = None


@dataclass(frozen=True)
class Service:
    id: str
    name: str
    # None for station-bound services; e.g. "trial" / "regular" for capacity-bounded ones.
    capacity_category: str | None = None


@dataclass(frozen=True)
class CapacityLimits:
    """Booking ceilings effective from ``effective_date`` onwards.

    A limit of ``None`` (or ``0``) means "no ceiling" for that dimension.
    """

    effective_date: dt.date
    hourly_limit: int | None = None
    daily_limit: int | None = None
    full_day_limit: int | None = None
    trial_limit: int | None = None
    regular_limit: int | None = None

    def bucket_limit(self, bucket: str) -> int | None:
        return {
            FULL_DAY_BUCKET: self.full_day_limit,
            TRIAL_BUCKET: self.trial_limit,
            REGULAR_BUCKET: self.regular_limit,
        }.get(bucket)


HOURLY_BUCKET = "hourly"
FULL_DAY_BUCKET = "full_day"
TRIAL_BUCKET = "trial"
REGULAR_BUCKET = "regular"


def usage_buckets(category: str | None) -> tuple[str, ...]:
    """Usage buckets a booking of ``category`` counts towards.

    Anything that is not "hourly" is a full-day booking; full-day bookings are
    either "trial" or regular.
    """
    normalized = (category or "").strip().lower()
    if normalized == HOURLY_BUCKET:
        return (HOURLY_BUCKET,)
    if normalized == TRIAL_BUCKET:
        return (FULL_DAY_BUCKET, TRIAL_BUCKET)
    return (FULL_DAY_BUCKET, REGULAR_BUCKET)


@dataclass(frozen=True)
class CapacityBooking:
    id: str
    start_at: dt.datetime
    category: str
    status: str = "scheduled"

    @property
    def is_cancelled(self) -> bool:
        return self.status.strip().lower() == CANCELLED_STATUS


@dataclass(frozen=True, order=True)
class Interval:
    """Half-open ``[start, end)`` range of aware datetimes."""

    start: dt.datetime
    end: dt.datetime

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start

    def overlaps(self, other: Interval) -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: Interval) -> bool:
        return self.start <= other.start and other.end <= self.end


@dataclass(frozen=True)
class EligibilityInputs:
    """Raw rows the eligibility filter works from."""

    stations: tuple[Station, ...] = ()
    matrix: tuple[ServiceStationMatrixRow, ...] = ()
    rules: tuple[StationTreatmentTypeRule, ...] = ()
    allowed_customer_types: tuple[StationAllowedCustomerType, ...] = ()


@dataclass(frozen=True)
class EligibleStation:
    station: Station
    base_time_minutes: float
    duration_modifier_minutes: float = 0
    requires_staff_approval: bool = False

    @property
    def station_id(self) -> str:
        return self.station.id


@dataclass(frozen=True)
class AvailabilityRequest:
    service_id: str
    treatment_type_id: str | None
    customer_type_id: str | None = None
    capacity_category: str | None = None


@dataclass(frozen=True, order=True)
class Slot:
    start: dt.datetime
    station_id: str
    duration_minutes: int
    requires_staff_approval: bool = False

    @property
    def end(self) -> dt.datetime:
        return self.start + dt.timedelta(minutes=self.duration_minutes)

    @property
    def interval(self) -> Interval:
        return Interval(self.start, self.end)


@dataclass(frozen=True)
class ExcludedStation:
    station_id: str
    reason: str
    detail: str = ""


@dataclass(frozen=True)
class DateAvailability:
    date: dt.date
    available: bool

    def to_dict(self) -> dict:
        return {"date": self.date.isoformat(), "available": self.available}


@dataclass(frozen=True)
class TimeOption:
    station_id: str
    station_name: str
    time: dt.datetime
    duration_minutes: int
    requires_staff_approval: bool = False

    def to_dict(self) -> dict:
        return {
            "stationId": self.station_id,
            "stationName": self.station_name,
            "time": self.time.strftime("%H:%M"),
            "startAt": self.time.isoformat(),
            "durationMinutes": self.duration_minutes,
            "requiresStaffApproval": self.requires_staff_approval,
        }


class AvailabilityError(RuntimeError):
    """Base class for failures the caller must not read as "fully booked"."""

    retryable = False


class DataFetchError(AvailabilityError):
    """A collaborator could not deliver the data the computation needs."""

    retryable = True


class InvariantViolation(AvailabilityError):
    """Corrupt input for one station (e.g. overlapping live appointments).

    The engine excludes the station for the affected date instead of failing
    the whole request.
    """

    def __init__(self, station_id: str, message: str):
        super().__init__(f"Station {station_id}: {message}")
        self.station_id = station_id


class AvailabilityTimeout(AvailabilityError):
    retryable = True


class AvailabilityCancelled(AvailabilityError):
    retryable = True
