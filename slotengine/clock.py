from __future__ import annotations

import datetime as dt

import pytz

from slotengine.domain import Interval

DEFAULT_BUSINESS_TIMEZONE = "Asia/Jerusalem"


class BusinessClock:
    """Current time and wall-clock conversions for the single business timezone.

    Injected into the engine so tests can pin the current time.
    """

    def __init__(self, timezone_name: str = DEFAULT_BUSINESS_TIMEZONE):
        try:
            self.timezone = pytz.timezone(timezone_name)
        except pytz.UnknownTimeZoneError as e:
            raise ValueError(f"Unknown business timezone: {timezone_name!r}") from e

    def now(self) -> dt.datetime:
        return dt.datetime.now(pytz.utc).astimezone(self.timezone)

    def today(self) -> dt.date:
        return self.now().date()

    def localize(self, value: dt.datetime) -> dt.datetime:
        if value.tzinfo is None:
            return self.timezone.localize(value)
        return self.timezone.normalize(value.astimezone(self.timezone))

    def at(self, day: dt.date, time_of_day: dt.time) -> dt.datetime:
        return self.timezone.localize(dt.datetime.combine(day, time_of_day))

    def day_range(self, day: dt.date) -> Interval:
        return Interval(self.at(day, dt.time.min), self.at(day + dt.timedelta(days=1), dt.time.min))

    def time_range(self, day: dt.date, open_time: dt.time, close_time: dt.time) -> Interval:
        # A close time of 00:00 means the end of the day.
        if close_time == dt.time.min:
            end = self.at(day + dt.timedelta(days=1), dt.time.min)
        else:
            end = self.at(day, close_time)
        return Interval(self.at(day, open_time), end)


class FixedClock(BusinessClock):
    def __init__(self, now: dt.datetime, timezone_name: str = DEFAULT_BUSINESS_TIMEZONE):
        super().__init__(timezone_name)
        self._now = self.localize(now)

    def now(self) -> dt.datetime:
        return self._now
