"""
Business calendar — answers the clock questions the eligibility rules ask.

All questions are asked in the configured timezone, so daylight-saving
changes and midnight boundaries follow local clinic time, not UTC.

    cal = BusinessCalendar.from_config(config)
    cal.is_business_hours(now)      # Mon–Fri 08:00–18:00, Sat 08:00–12:00
    cal.cutoff_passed(now)          # now >= today's end-of-day time
    cal.day_bucket(instant)         # local calendar date
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable
from zoneinfo import ZoneInfo

from models.schemas import SystemConfiguration

SATURDAY = 6


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class BusinessCalendar:
    """Timezone-aware view of business hours and the end-of-day cutoff."""

    def __init__(
        self,
        tz: str = "America/Sao_Paulo",
        end_of_day: time = time(18, 0),
        business_start: time = time(8, 0),
        business_end: time = time(18, 0),
        saturday_start: time = time(8, 0),
        saturday_end: time = time(12, 0),
        working_days: Iterable[int] = (1, 2, 3, 4, 5, 6),
    ):
        self.tz = ZoneInfo(tz)
        self.end_of_day = end_of_day
        self.business_start = business_start
        self.business_end = business_end
        self.saturday_start = saturday_start
        self.saturday_end = saturday_end
        self.working_days = frozenset(working_days)

    @classmethod
    def from_config(cls, config: SystemConfiguration) -> BusinessCalendar:
        return cls(
            tz=config.timezone,
            end_of_day=parse_hhmm(config.end_of_day_time),
            business_start=parse_hhmm(config.business_start_time),
            business_end=parse_hhmm(config.business_end_time),
            saturday_start=parse_hhmm(config.saturday_start_time),
            saturday_end=parse_hhmm(config.saturday_end_time),
            working_days=config.working_days,
        )

    # ── Conversions ───────────────────────────────────────────

    def local(self, instant: datetime) -> datetime:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.tz)

    def day_bucket(self, instant: datetime) -> date:
        return self.local(instant).date()

    def at(self, day: date, t: time) -> datetime:
        """The aware instant of wall-clock time `t` on local date `day`."""
        return datetime.combine(day, t, tzinfo=self.tz)

    # ── Business hours ────────────────────────────────────────

    def is_working_day(self, instant: datetime) -> bool:
        return self.local(instant).isoweekday() in self.working_days

    def business_window(self, day: date) -> tuple[time, time]:
        if day.isoweekday() == SATURDAY:
            return self.saturday_start, self.saturday_end
        return self.business_start, self.business_end

    def is_business_hours(self, instant: datetime) -> bool:
        """Inside the opening window of a working day. The closing minute is outside."""
        if not self.is_working_day(instant):
            return False
        local = self.local(instant)
        start, end = self.business_window(local.date())
        return start <= local.time() < end

    # ── End of day ────────────────────────────────────────────

    def cutoff_for(self, day: date) -> datetime:
        return self.at(day, self.end_of_day)

    def cutoff_passed(self, now: datetime) -> bool:
        return self.local(now) >= self.cutoff_for(self.day_bucket(now))

    def cutoff_passed_for_day(self, day: date, now: datetime) -> bool:
        return self.local(now) >= self.cutoff_for(day)

    def next_cutoff(self, now: datetime) -> datetime:
        """Next end-of-day instant that falls on a working day. Reporting only."""
        day = self.day_bucket(now)
        candidate = self.cutoff_for(day)
        if candidate <= self.local(now):
            day += timedelta(days=1)
        for _ in range(7):
            if day.isoweekday() in self.working_days:
                return self.cutoff_for(day)
            day += timedelta(days=1)
        return self.cutoff_for(day)
