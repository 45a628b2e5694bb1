from __future__ import annotations

import datetime as dt
import logging
from abc import ABC, abstractmethod
from collections import Counter
from typing import Iterable, Sequence

from slotengine.clock import BusinessClock
from slotengine.domain import CapacityBooking, CapacityLimits, Slot, usage_buckets

logger = logging.getLogger(__name__)


def select_effective_limits(rows: Iterable[CapacityLimits], target: dt.date) -> CapacityLimits | None:
    """Most recent limits whose effective date is on or before ``target``."""
    effective: CapacityLimits | None = None
    for row in rows:
        if row.effective_date > target:
            continue
        if effective is None or row.effective_date >= effective.effective_date:
            effective = row
    return effective


def _bounded(limit: int | None) -> bool:
    return limit is not None and limit > 0


class CapacityPolicy(ABC):
    @abstractmethod
    def apply(
        self,
        slots: Sequence[Slot],
        *,
        limits: CapacityLimits,
        bookings: Sequence[CapacityBooking],
        category: str,
        clock: BusinessClock,
    ) -> list[Slot]:
        raise NotImplementedError


class CeilingCapacityPolicy(CapacityPolicy):
    """Hourly, daily and per-bucket ceilings with a running count.

    Bookings count towards the usage buckets of their category (see
    ``usage_buckets``): hourly, or full-day and then trial or regular. Counts
    start from the existing bookings of the day. Slots are admitted in order; a
    slot that would push any bounded count over its limit is removed, even if
    its station is free.
    """

    def apply(
        self,
        slots: Sequence[Slot],
        *,
        limits: CapacityLimits,
        bookings: Sequence[CapacityBooking],
        category: str,
        clock: BusinessClock,
    ) -> list[Slot]:
        per_hour: Counter[dt.datetime] = Counter()
        per_day: Counter[dt.date] = Counter()
        per_bucket: Counter[tuple[dt.date, str]] = Counter()

        for booking in bookings:
            if booking.is_cancelled:
                continue
            start = clock.localize(booking.start_at)
            per_hour[_hour_key(start)] += 1
            per_day[start.date()] += 1
            for bucket in usage_buckets(booking.category):
                per_bucket[(start.date(), bucket)] += 1

        buckets = usage_buckets(category)
        admitted: list[Slot] = []

        for slot in slots:
            start = clock.localize(slot.start)
            hour, day = _hour_key(start), start.date()

            if _bounded(limits.hourly_limit) and per_hour[hour] + 1 > limits.hourly_limit:
                continue
            if _bounded(limits.daily_limit) and per_day[day] + 1 > limits.daily_limit:
                continue
            if any(_exceeds(limits.bucket_limit(b), per_bucket[(day, b)]) for b in buckets):
                continue

            per_hour[hour] += 1
            per_day[day] += 1
            for bucket in buckets:
                per_bucket[(day, bucket)] += 1
            admitted.append(slot)

        return admitted


def _exceeds(limit: int | None, used: int) -> bool:
    return _bounded(limit) and used + 1 > limit


def _hour_key(value: dt.datetime) -> dt.datetime:
    return value.replace(minute=0, second=0, microsecond=0)


class CapacityLimiter:
    def __init__(self, policy: CapacityPolicy | None = None):
        self.policy = policy or CeilingCapacityPolicy()

    def limit(
        self,
        slots: Sequence[Slot],
        *,
        limits: CapacityLimits | None,
        bookings: Sequence[CapacityBooking],
        category: str,
        clock: BusinessClock,
    ) -> list[Slot]:
        if limits is None:
            # No configuration at or before the date: unbounded.
            return list(slots)

        admitted = self.policy.apply(slots, limits=limits, bookings=bookings, category=category, clock=clock)
        removed = len(slots) - len(admitted)
        if removed:
            logger.info(
                "Capacity limits (effective %s) removed %d of %d slots for category=%s",
                limits.effective_date.isoformat(),
                removed,
                len(slots),
                category,
            )
        return admitted
