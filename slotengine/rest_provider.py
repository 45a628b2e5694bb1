from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Callable, Iterable, Sequence, TypeVar

import httpx
from tenacity import RetryCallState, retry, retry_if_exception, stop_after_attempt, wait_exponential

from slotengine.config import Settings
from slotengine.domain import (
    CANCELLED_STATUS,
    Appointment,
    BusinessHour,
    CapacityBooking,
    CapacityLimits,
    DataFetchError,
    EligibilityInputs,
    Interval,
    Service,
    StationUnavailability,
    Treatment,
    WorkingShift,
)
from slotengine.provider import DataProvider
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

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TREATMENT_COLUMNS = "id,name,treatment_type_id,customer_id,customer:customers!left(customer_type_id)"


def _in_filter(values: Iterable[str]) -> str:
    quoted = ",".join(f'"{v}"' for v in values)
    return f"in.({quoted})"


def _iso(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).isoformat()


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    return False


def _short_exc(retry_state: RetryCallState) -> str | None:
    if retry_state.outcome is None or not retry_state.outcome.failed:
        return None
    exc = retry_state.outcome.exception()
    if exc is None:
        return None
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


def _log_after_attempt(retry_state: RetryCallState) -> None:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        logger.warning("Fetch attempt %s failed (%s)", retry_state.attempt_number, _short_exc(retry_state))


def _log_before_sleep(retry_state: RetryCallState) -> None:
    sleep_seconds = getattr(retry_state.next_action, "sleep", None)
    if sleep_seconds is None:
        logger.info("Retrying fetch (attempt %s)", retry_state.attempt_number + 1)
        return
    logger.info("Retrying fetch (attempt %s) in %.1f sec.", retry_state.attempt_number + 1, sleep_seconds)


class RestProvider(DataProvider):
    """Reads scheduling tables through the PostgREST API of the hosted database.

    Transport failures, 429 and 5xx responses are retried with exponential
    backoff; anything still failing is raised as DataFetchError. Other 4xx
    responses fail on the first attempt.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        default_slot_interval_minutes: int = 60,
        transport: httpx.BaseTransport | None = None,
    ):
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.default_slot_interval_minutes = default_slot_interval_minutes
        self._client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> RestProvider:
        if not settings.supabase_url or not settings.supabase_key:
            raise RuntimeError("Missing required environment variable: SUPABASE_URL")
        return cls(
            settings.supabase_url,
            settings.supabase_key,
            timeout_seconds=settings.fetch_timeout_seconds,
            retry_attempts=settings.fetch_retry_attempts,
            default_slot_interval_minutes=settings.default_slot_interval_minutes,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> RestProvider:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _get_once(self, table: str, params: Sequence[tuple[str, str]]) -> list[dict[str, Any]]:
        r = self._client.get(f"/{table}", params=list(params))
        r.raise_for_status()
        data = r.json()
        if not isinstance(data, list):
            raise ValueError(f"Expected a JSON array from {table}, got {type(data).__name__}")
        return data

    def _select(self, table: str, params: Sequence[tuple[str, str]]) -> list[dict[str, Any]]:
        decorated = retry(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff_seconds, max=4),
            after=_log_after_attempt,
            before_sleep=_log_before_sleep,
            reraise=True,
        )(self._get_once)

        try:
            rows = decorated(table, params)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Fetch from %s failed (%s: %s)", table, type(e).__name__, e)
            raise DataFetchError(f"Failed to fetch {table}: {e}") from e

        logger.debug("Fetched %d rows from %s", len(rows), table)
        return rows

    def _parse(self, table: str, rows: Iterable[dict[str, Any]], parser: Callable[[dict[str, Any]], T]) -> list[T]:
        try:
            return [parser(row) for row in rows]
        except (KeyError, TypeError, ValueError) as e:
            raise DataFetchError(f"Malformed row in {table}: {e}") from e

    def fetch_eligibility_inputs(self, service_id: str, treatment_type_id: str | None) -> EligibilityInputs:
        station_rows = self._select(
            "stations",
            [
                ("select", "id,name,is_active,break_between_appointments,slot_interval_minutes"),
                ("is_active", "eq.true"),
                ("order", "created_at.asc"),
            ],
        )
        # Creation order becomes the tie-break order.
        positions = iter(range(len(station_rows)))
        stations = self._parse(
            "stations",
            station_rows,
            lambda row: station_from_row(
                row, default_slot_interval_minutes=self.default_slot_interval_minutes, display_order=next(positions)
            ),
        )

        matrix = self._parse(
            "service_station_matrix",
            self._select(
                "service_station_matrix",
                [("select", "service_id,station_id,base_time_minutes,price"), ("service_id", f"eq.{service_id}")],
            ),
            matrix_row_from_row,
        )

        rules = []
        if treatment_type_id is not None:
            rules = self._parse(
                "station_treatmentType_rules",
                self._select(
                    "station_treatmentType_rules",
                    [
                        (
                            "select",
                            "station_id,treatment_type_id,is_active,remote_booking_allowed,"
                            "requires_staff_approval,duration_modifier_minutes",
                        ),
                        ("treatment_type_id", f"eq.{treatment_type_id}"),
                    ],
                ),
                treatment_type_rule_from_row,
            )

        allowed = self._parse(
            "station_allowed_customer_types",
            self._select("station_allowed_customer_types", [("select", "station_id,customer_type_id")]),
            allowed_customer_type_from_row,
        )

        return EligibilityInputs(
            stations=tuple(stations),
            matrix=tuple(matrix),
            rules=tuple(rules),
            allowed_customer_types=tuple(allowed),
        )

    def fetch_working_shifts(self, station_ids: Sequence[str], weekday: str) -> list[WorkingShift]:
        if not station_ids:
            return []
        rows = self._select(
            "station_working_hours",
            [
                ("select", "station_id,weekday,open_time,close_time,shift_order"),
                ("station_id", _in_filter(station_ids)),
                ("weekday", f"eq.{weekday}"),
                ("order", "station_id,shift_order"),
            ],
        )
        return self._parse("station_working_hours", rows, working_shift_from_row)

    def fetch_business_hours(self, weekday: str) -> list[BusinessHour]:
        rows = self._select(
            "business_hours",
            [("select", "weekday,open_time,close_time"), ("weekday", f"eq.{weekday}")],
        )
        return self._parse("business_hours", rows, business_hour_from_row)

    def fetch_appointments(self, station_ids: Sequence[str], day_range: Interval) -> list[Appointment]:
        if not station_ids:
            return []
        rows = self._select(
            "grooming_appointments",
            [
                ("select", "id,station_id,start_at,end_at,status"),
                ("station_id", _in_filter(station_ids)),
                ("start_at", f"lt.{_iso(day_range.end)}"),
                ("end_at", f"gt.{_iso(day_range.start)}"),
                ("status", f"neq.{CANCELLED_STATUS}"),
            ],
        )
        return self._parse("grooming_appointments", rows, appointment_from_row)

    def fetch_unavailability(self, station_ids: Sequence[str], day_range: Interval) -> list[StationUnavailability]:
        if not station_ids:
            return []
        rows = self._select(
            "station_unavailability",
            [
                ("select", "station_id,start_time,end_time,reason,is_active"),
                ("station_id", _in_filter(station_ids)),
                ("start_time", f"lt.{_iso(day_range.end)}"),
                ("end_time", f"gt.{_iso(day_range.start)}"),
            ],
        )
        return self._parse("station_unavailability", rows, unavailability_from_row)

    def fetch_capacity_limits(self, category: str, effective_date: dt.date) -> CapacityLimits | None:
        rows = self._select(
            "daycare_capacity_limits",
            [
                ("select", "effective_date,total_limit,hourly_limit,full_day_limit,trial_limit,regular_limit"),
                ("effective_date", f"lte.{effective_date.isoformat()}"),
                ("order", "effective_date.desc"),
                ("limit", "1"),
            ],
        )
        limits = self._parse("daycare_capacity_limits", rows, capacity_limits_from_row)
        return limits[0] if limits else None

    def fetch_capacity_bookings(self, category: str, day_range: Interval) -> list[CapacityBooking]:
        # Daily and hourly ceilings count every category, so all of them are loaded.
        rows = self._select(
            "daycare_appointments",
            [
                ("select", "id,start_at,service_type,status"),
                ("start_at", f"gte.{_iso(day_range.start)}"),
                ("start_at", f"lt.{_iso(day_range.end)}"),
                ("status", f"neq.{CANCELLED_STATUS}"),
            ],
        )
        return self._parse("daycare_appointments", rows, capacity_booking_from_row)

    def fetch_treatment(self, treatment_id: str) -> Treatment | None:
        rows = self._select(
            "treatments",
            [("select", _TREATMENT_COLUMNS), ("id", f"eq.{treatment_id}"), ("limit", "1")],
        )
        treatments = self._parse("treatments", rows, treatment_from_row)
        return treatments[0] if treatments else None

    def fetch_service(self, service_id: str) -> Service | None:
        rows = self._select("services", [("select", "*"), ("id", f"eq.{service_id}"), ("limit", "1")])
        services = self._parse("services", rows, service_from_row)
        return services[0] if services else None

    def fetch_open_days_ahead(self) -> int | None:
        rows = self._select(
            "calendar_settings",
            [("select", "open_days_ahead"), ("order", "updated_at.desc"), ("limit", "1")],
        )
        if not rows or rows[0].get("open_days_ahead") is None:
            return None
        try:
            return max(0, round(float(rows[0]["open_days_ahead"])))
        except (TypeError, ValueError) as e:
            raise DataFetchError(f"Malformed open_days_ahead in calendar_settings: {e}") from e
