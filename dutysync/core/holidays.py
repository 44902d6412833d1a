"""Recognized holidays and weekends for duty point calculation.

Public holidays come from the ``holidays`` package for the configured country,
observed days included (a US holiday on Saturday is also observed the Friday
before). Units may add local holidays through configuration.
"""

from datetime import date
from typing import Iterable

import holidays

SATURDAY, SUNDAY = 5, 6


def is_weekend(day: date) -> bool:
    return day.weekday() in (SATURDAY, SUNDAY)


class HolidayCalendar:
    def __init__(
        self,
        extra_holidays: Iterable[date | str] = (),
        country: str | None = "US",
    ):
        # holiday years are filled in lazily on first lookup
        self.public = holidays.country_holidays(country, observed=True) if country else {}
        self.extra: set[date] = set()
        for value in extra_holidays:
            self.extra.add(value if isinstance(value, date) else date.fromisoformat(str(value).strip()))

    def is_holiday(self, day: date) -> bool:
        return day in self.extra or day in self.public

    def holiday_name(self, day: date) -> str | None:
        if day in self.public:
            return self.public.get(day)
        if day in self.extra:
            return "Local holiday"
        return None

    def is_weekend(self, day: date) -> bool:
        return is_weekend(day)

    def day_type(self, day: date) -> str:
        if self.is_holiday(day):
            return "holiday"
        if self.is_weekend(day):
            return "weekend"
        return "weekday"
