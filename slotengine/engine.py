from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from typing import Callable, Iterator, Mapping, Sequence

from slotengine.aggregator import is_day_available, merge_station_slots, to_time_options
from slotengine.capacity import CapacityLimiter
from slotengine.clock import BusinessClock
from slotengine.config import Settings
from slotengine.domain import (
    AvailabilityCancelled,
    AvailabilityRequest,
    AvailabilityTimeout,
    DateAvailability,
    EligibleStation,
    ExcludedStation,
    Interval,
    InvariantViolation,
    Slot,
    TimeOption,
    weekday_name,
)
from slotengine.duration import resolve_duration
from slotengine.eligibility import filter_eligible_stations
from slotengine.occupancy import project_occupancy
from slotengine.provider import DataProvider
from slotengine.slots import generate_slots
from slotengine.snapshot import RequestSnapshot, index_by_station
from slotengine.windows import build_working_windows

logger = logging.getLogger(__name__)

# How often a waiting request re-checks its cancellation token.
_POLL_SECONDS = 0.05


class CancellationToken:
    """Cooperative cancellation; a child is cancelled with its parent."""

    def __init__(self, parent: CancellationToken | None = None):
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise AvailabilityCancelled("Availability computation was cancelled")


class _Deadline:
    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return self._expires_at - time.monotonic()


@dataclass(frozen=True)
class DayResult:
    date: dt.date
    slots: tuple[Slot, ...] = ()
    options: tuple[TimeOption, ...] = ()
    excluded: tuple[ExcludedStation, ...] = ()

    @property
    def available(self) -> bool:
        return is_day_available(self.slots)


@dataclass(frozen=True)
class _StationDay:
    station_id: str
    date: dt.date
    slots: tuple[Slot, ...] = ()
    excluded: ExcludedStation | None = None


def _date_span(start: dt.date, end: dt.date) -> list[dt.date]:
    if end < start:
        raise ValueError(f"Invalid date range: {start.isoformat()} > {end.isoformat()}")
    return [start + dt.timedelta(days=offset) for offset in range((end - start).days + 1)]


class AvailabilityEngine:
    """Computes bookable start times for a service across the station fleet.

    Every call loads a fresh snapshot from the provider, fans the per-station
    work out on a bounded thread pool and merges the results in a fixed order,
    so identical snapshots give identical output. Nothing is kept between
    calls.
    """

    def __init__(
        self,
        provider: DataProvider,
        *,
        clock: BusinessClock | None = None,
        max_workers: int = 8,
        request_timeout_seconds: float = 30.0,
        default_open_days_ahead: int = 30,
        capacity_limiter: CapacityLimiter | None = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.provider = provider
        self.clock = clock or BusinessClock()
        self.max_workers = max_workers
        self.request_timeout_seconds = request_timeout_seconds
        self.default_open_days_ahead = default_open_days_ahead
        self.capacity_limiter = capacity_limiter or CapacityLimiter()

    @classmethod
    def from_settings(
        cls,
        provider: DataProvider,
        settings: Settings,
        *,
        clock: BusinessClock | None = None,
    ) -> AvailabilityEngine:
        return cls(
            provider,
            clock=clock or BusinessClock(settings.business_timezone),
            max_workers=settings.max_workers,
            request_timeout_seconds=settings.request_timeout_seconds,
            default_open_days_ahead=settings.default_open_days_ahead,
        )

    def resolve_request(
        self,
        treatment_id: str,
        service_id: str,
        *,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AvailabilityRequest:
        """Build a request from a treatment record (treatment type + customer type)."""
        token = CancellationToken(cancel_token)
        deadline = _Deadline(self.request_timeout_seconds if timeout is None else timeout)

        with self._pool() as pool:
            fetched = self._gather(
                pool,
                {
                    "treatment": partial(self.provider.fetch_treatment, treatment_id),
                    "service": partial(self.provider.fetch_service, service_id),
                },
                deadline,
                token,
            )

        treatment = fetched["treatment"]
        if treatment is None:
            raise ValueError(f"Treatment {treatment_id} not found")
        if treatment.treatment_type_id is None:
            logger.warning("Treatment %s has no treatment type; no station can serve it", treatment_id)

        service = fetched["service"]
        return AvailabilityRequest(
            service_id=service_id,
            treatment_type_id=treatment.treatment_type_id,
            customer_type_id=treatment.customer_type_id,
            capacity_category=service.capacity_category if service is not None else None,
        )

    def get_available_dates(
        self,
        service_id: str,
        date_range: tuple[dt.date, dt.date],
        *,
        treatment_type_id: str | None,
        customer_type_id: str | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> list[DateAvailability]:
        """Day-level flags for calendar rendering, one entry per date in the range."""
        days = _date_span(*date_range)
        request = AvailabilityRequest(
            service_id=service_id,
            treatment_type_id=treatment_type_id,
            customer_type_id=customer_type_id,
        )
        results = self.compute_days(request, days, timeout=timeout, cancel_token=cancel_token)
        return [DateAvailability(date=day, available=results[day].available) for day in days]

    def get_available_times(
        self,
        service_id: str,
        date: dt.date,
        customer_type_id: str | None = None,
        *,
        treatment_type_id: str | None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> list[TimeOption]:
        """Flattened, time-sorted options of every station for one date."""
        request = AvailabilityRequest(
            service_id=service_id,
            treatment_type_id=treatment_type_id,
            customer_type_id=customer_type_id,
        )
        return list(self.compute_day(request, date, timeout=timeout, cancel_token=cancel_token).options)

    def compute_day(
        self,
        request: AvailabilityRequest,
        date: dt.date,
        *,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DayResult:
        return self.compute_days(request, [date], timeout=timeout, cancel_token=cancel_token)[date]

    def compute_days(
        self,
        request: AvailabilityRequest,
        days: Sequence[dt.date],
        *,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> dict[dt.date, DayResult]:
        """Full per-day results, including stations excluded and why."""
        token = CancellationToken(cancel_token)
        deadline = _Deadline(self.request_timeout_seconds if timeout is None else timeout)

        with self._pool() as pool:
            try:
                return self._compute_days(pool, request, sorted(set(days)), deadline, token)
            except BaseException:
                # Abandon in-flight station work; no partial result escapes.
                token.cancel()
                raise

    def _compute_days(
        self,
        pool: ThreadPoolExecutor,
        request: AvailabilityRequest,
        days: list[dt.date],
        deadline: _Deadline,
        token: CancellationToken,
    ) -> dict[dt.date, DayResult]:
        now = self.clock.now()
        results = {day: DayResult(date=day) for day in days}

        first = self._gather(
            pool,
            {
                "eligibility": partial(
                    self.provider.fetch_eligibility_inputs, request.service_id, request.treatment_type_id
                ),
                "service": partial(self.provider.fetch_service, request.service_id),
                "open_days_ahead": self.provider.fetch_open_days_ahead,
            },
            deadline,
            token,
        )

        service = first["service"]
        if request.capacity_category is None and service is not None and service.capacity_category:
            request = AvailabilityRequest(
                service_id=request.service_id,
                treatment_type_id=request.treatment_type_id,
                customer_type_id=request.customer_type_id,
                capacity_category=service.capacity_category,
            )

        bookable = self._bookable_days(days, now, first["open_days_ahead"])
        if not bookable:
            logger.info("No requested date falls inside the booking window (service=%s)", request.service_id)
            return results

        eligible = filter_eligible_stations(
            first["eligibility"],
            service_id=request.service_id,
            treatment_type_id=request.treatment_type_id,
            customer_type_id=request.customer_type_id,
        )
        candidates, durations, excluded = self._resolve_durations(eligible)
        if not candidates:
            return {day: DayResult(date=day, excluded=tuple(excluded)) for day in days}

        snapshot = self._load_snapshot(pool, request, now, candidates, durations, excluded, bookable, deadline, token)

        station_days = self._run_station_days(pool, snapshot, bookable, deadline, token)
        for day in bookable:
            results[day] = self._aggregate_day(snapshot, day, station_days[day])

        logger.info(
            "Availability computed: service=%s days=%d available_days=%d stations=%d",
            request.service_id,
            len(bookable),
            sum(1 for day in bookable if results[day].available),
            len(candidates),
        )
        return results

    def _bookable_days(self, days: list[dt.date], now: dt.datetime, open_days_ahead: int | None) -> list[dt.date]:
        window = self.default_open_days_ahead if open_days_ahead is None else max(0, int(open_days_ahead))
        first, last = now.date(), now.date() + dt.timedelta(days=window)
        return [day for day in days if first <= day <= last]

    def _resolve_durations(
        self, eligible: Sequence[EligibleStation]
    ) -> tuple[dict[str, EligibleStation], dict[str, int], list[ExcludedStation]]:
        candidates: dict[str, EligibleStation] = {}
        durations: dict[str, int] = {}
        excluded: list[ExcludedStation] = []

        for candidate in eligible:
            minutes = resolve_duration(
                candidate.base_time_minutes,
                candidate.duration_modifier_minutes,
                candidate.station.slot_interval_minutes,
            )
            if minutes <= 0:
                logger.warning(
                    "Station %s resolves to a zero duration (base=%s modifier=%s), excluding",
                    candidate.station_id,
                    candidate.base_time_minutes,
                    candidate.duration_modifier_minutes,
                )
                excluded.append(
                    ExcludedStation(
                        station_id=candidate.station_id,
                        reason="zero-duration",
                        detail=f"base={candidate.base_time_minutes} modifier={candidate.duration_modifier_minutes}",
                    )
                )
                continue
            candidates[candidate.station_id] = candidate
            durations[candidate.station_id] = minutes

        return candidates, durations, excluded

    def _load_snapshot(
        self,
        pool: ThreadPoolExecutor,
        request: AvailabilityRequest,
        now: dt.datetime,
        candidates: dict[str, EligibleStation],
        durations: dict[str, int],
        excluded: list[ExcludedStation],
        days: list[dt.date],
        deadline: _Deadline,
        token: CancellationToken,
    ) -> RequestSnapshot:
        station_ids = list(candidates)
        weekdays = sorted({weekday_name(day) for day in days})
        span = Interval(self.clock.day_range(days[0]).start, self.clock.day_range(days[-1]).end)

        calls: dict[str, Callable[[], object]] = {
            "appointments": partial(self.provider.fetch_appointments, station_ids, span),
            "unavailability": partial(self.provider.fetch_unavailability, station_ids, span),
        }
        for weekday in weekdays:
            calls[f"shifts:{weekday}"] = partial(self.provider.fetch_working_shifts, station_ids, weekday)
            calls[f"business:{weekday}"] = partial(self.provider.fetch_business_hours, weekday)

        category = request.capacity_category
        if category:
            calls["capacity_bookings"] = partial(self.provider.fetch_capacity_bookings, category, span)
            for day in days:
                calls[f"limits:{day.isoformat()}"] = partial(self.provider.fetch_capacity_limits, category, day)

        fetched = self._gather(pool, calls, deadline, token)

        shifts = [s for weekday in weekdays for s in fetched[f"shifts:{weekday}"]]
        business_hours = tuple(bh for weekday in weekdays for bh in fetched[f"business:{weekday}"])
        if not business_hours:
            logger.warning("No global business hours for weekdays %s", ",".join(weekdays))

        return RequestSnapshot(
            request=request,
            now=now,
            candidates=candidates,
            durations=durations,
            excluded=tuple(excluded),
            shifts=index_by_station(shifts),
            business_hours=business_hours,
            appointments=index_by_station(fetched["appointments"]),
            unavailability=index_by_station(fetched["unavailability"]),
            capacity_limits={day: fetched[f"limits:{day.isoformat()}"] for day in days} if category else {},
            capacity_bookings=tuple(fetched["capacity_bookings"]) if category else (),
        )

    def _run_station_days(
        self,
        pool: ThreadPoolExecutor,
        snapshot: RequestSnapshot,
        days: list[dt.date],
        deadline: _Deadline,
        token: CancellationToken,
    ) -> dict[dt.date, list[_StationDay]]:
        futures: list[Future] = [
            pool.submit(self._compute_station_day, snapshot, candidate, day, token)
            for day in days
            for candidate in snapshot.candidates.values()
        ]
        self._wait(futures, deadline, token, what="station computation")

        by_day: dict[dt.date, list[_StationDay]] = {day: [] for day in days}
        for future in futures:
            outcome: _StationDay = future.result()
            by_day[outcome.date].append(outcome)
        return by_day

    def _compute_station_day(
        self,
        snapshot: RequestSnapshot,
        candidate: EligibleStation,
        day: dt.date,
        token: CancellationToken,
    ) -> _StationDay:
        station = candidate.station

        token.raise_if_cancelled()
        windows = build_working_windows(snapshot.shifts_for(station.id), snapshot.business_hours, day, self.clock)
        if not windows:
            return _StationDay(station_id=station.id, date=day)

        token.raise_if_cancelled()
        try:
            exclusions = project_occupancy(
                station.id,
                snapshot.appointments_for(station.id),
                snapshot.unavailability_for(station.id),
                self.clock.day_range(day),
                station.break_between_appointments,
            )
        except InvariantViolation as e:
            logger.error("Excluding station %s on %s: %s", station.id, day.isoformat(), e)
            return _StationDay(
                station_id=station.id,
                date=day,
                excluded=ExcludedStation(station_id=station.id, reason="invariant-violation", detail=str(e)),
            )

        token.raise_if_cancelled()
        slots = generate_slots(
            station.id,
            windows,
            exclusions,
            duration_minutes=snapshot.durations[station.id],
            slot_interval_minutes=station.slot_interval_minutes,
            now=snapshot.now,
            requires_staff_approval=candidate.requires_staff_approval,
        )
        return _StationDay(station_id=station.id, date=day, slots=tuple(slots))

    def _aggregate_day(self, snapshot: RequestSnapshot, day: dt.date, outcomes: list[_StationDay]) -> DayResult:
        slots = merge_station_slots(
            (snapshot.candidates[outcome.station_id], outcome.slots) for outcome in outcomes if outcome.excluded is None
        )

        category = snapshot.request.capacity_category
        if category:
            day_range = self.clock.day_range(day)
            slots = self.capacity_limiter.limit(
                slots,
                limits=snapshot.capacity_limits.get(day),
                bookings=[b for b in snapshot.capacity_bookings if day_range.start <= b.start_at < day_range.end],
                category=category,
                clock=self.clock,
            )

        excluded = list(snapshot.excluded)
        excluded.extend(sorted((o.excluded for o in outcomes if o.excluded is not None), key=lambda e: e.station_id))

        logger.debug("date=%s slots=%d excluded=%d", day.isoformat(), len(slots), len(excluded))
        return DayResult(
            date=day,
            slots=tuple(slots),
            options=tuple(to_time_options(slots, snapshot.candidates, self.clock)),
            excluded=tuple(excluded),
        )

    @contextmanager
    def _pool(self) -> Iterator[ThreadPoolExecutor]:
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="slotengine")
        try:
            yield pool
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _gather(
        self,
        pool: ThreadPoolExecutor,
        calls: Mapping[str, Callable[[], object]],
        deadline: _Deadline,
        token: CancellationToken,
    ) -> dict[str, object]:
        futures = {name: pool.submit(call) for name, call in calls.items()}
        self._wait(list(futures.values()), deadline, token, what="data fetch")
        return {name: future.result() for name, future in futures.items()}

    def _wait(self, futures: list[Future], deadline: _Deadline, token: CancellationToken, *, what: str) -> None:
        pending = set(futures)
        try:
            while pending:
                token.raise_if_cancelled()
                remaining = deadline.remaining()
                if remaining <= 0:
                    raise AvailabilityTimeout(f"{what} did not finish within {deadline.seconds:.1f}s")

                done, pending = wait(pending, timeout=min(remaining, _POLL_SECONDS), return_when=FIRST_EXCEPTION)
                for future in done:
                    if future.exception() is not None:
                        # Re-raises the collaborator's own exception (e.g. DataFetchError).
                        future.result()
        except BaseException:
            for future in pending:
                future.cancel()
            raise
