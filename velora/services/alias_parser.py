"""
Alias Parser - turns BCC aliases into due times.

    5m@  2h@  3d@           relative to now
    tomorrow@  tomorrow8am@ tomorrow at the given hour (default 9am)
    nextmon@ .. nextsun@    next occurrence of the weekday, 9am
    eow@                    Friday 17:00 (today if it is Friday)
    eom@                    last day of the month, 17:00
    follow@                 smart: due time inferred from the email body
    todo@                   capture

The alias token may carry the user id: `2d+hector@in.velora.cc`.
Absolute times are computed in the configured timezone.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import timedelta, timezone, tzinfo
from typing import Iterable, Optional

from velora.clock import DAY_MS, HOUR_MS, MINUTE_MS, Clock, system_clock, to_datetime, to_epoch_ms
from velora.services.rate_limiter import extract_user_id_from_alias

_LOCAL_PART = re.compile(r"^([^@]+)@")
_RELATIVE = re.compile(r"^(\d+)(m|h|d)$")
_TOMORROW = re.compile(r"^tomorrow(\d{1,2})?(am|pm)?$")
_NEXT_DAY = re.compile(r"^next(mon|tue|wed|thu|fri|sat|sun)$")

_UNIT_MS = {"m": MINUTE_MS, "h": HOUR_MS, "d": DAY_MS}
_WEEKDAYS = {"mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6}
_FRIDAY = 4

DEFAULT_ALIAS_DOMAINS = ("in.velora.cc", "velora.cc")


@dataclass
class AliasParseResult:
    matched: bool
    alias_type: str  # absolute | relative | smart | capture
    raw_alias: str
    due_at: Optional[int] = None


def alias_token(email_address: str) -> Optional[str]:
    """The alias part of an address: local part, minus any +userId suffix."""
    match = _LOCAL_PART.match(email_address.strip())
    if not match:
        return None
    return match.group(1).split("+", 1)[0].lower()


def extract_user_id(email_address: str) -> Optional[str]:
    return extract_user_id_from_alias(email_address.strip())


def is_velora_alias(email_address: str, domains: Iterable[str] = DEFAULT_ALIAS_DOMAINS) -> bool:
    address = email_address.strip().lower()
    return any(address.endswith(f"@{domain.lower()}") for domain in domains)


class AliasParser:
    def __init__(self, tz: tzinfo = timezone.utc, clock: Clock = system_clock):
        self.tz = tz
        self.clock = clock

    def parse(self, email_address: str) -> AliasParseResult:
        alias = alias_token(email_address)
        if alias is None:
            return AliasParseResult(matched=False, alias_type="smart", raw_alias=email_address)

        relative = _RELATIVE.match(alias)
        if relative:
            amount, unit = relative.groups()
            due_at = self.clock() + int(amount) * _UNIT_MS[unit]
            return AliasParseResult(True, "relative", alias, due_at)

        tomorrow = _TOMORROW.match(alias)
        if tomorrow:
            hour, meridiem = tomorrow.groups()
            return AliasParseResult(True, "absolute", alias, self._tomorrow(hour, meridiem))

        next_day = _NEXT_DAY.match(alias)
        if next_day:
            return AliasParseResult(True, "absolute", alias, self._next_weekday(next_day.group(1)))

        if alias == "eow":
            return AliasParseResult(True, "absolute", alias, self._end_of_week())
        if alias == "eom":
            return AliasParseResult(True, "absolute", alias, self._end_of_month())
        if alias == "follow":
            return AliasParseResult(True, "smart", alias)
        if alias == "todo":
            return AliasParseResult(True, "capture", alias)

        return AliasParseResult(matched=False, alias_type="smart", raw_alias=alias)

    def _now(self):
        return to_datetime(self.clock(), self.tz)

    def _at(self, local, days: int, hour: int) -> int:
        target = (local + timedelta(days=days)).replace(hour=hour, minute=0, second=0, microsecond=0)
        return to_epoch_ms(target)

    def _tomorrow(self, hour: Optional[str], meridiem: Optional[str]) -> int:
        if hour is None:
            return self._at(self._now(), 1, 9)
        hour_24 = int(hour)
        if meridiem == "pm" and hour_24 != 12:
            hour_24 += 12
        elif meridiem == "am" and hour_24 == 12:
            hour_24 = 0
        return self._at(self._now(), 1, min(hour_24, 23))

    def _next_weekday(self, day: str) -> int:
        """Next occurrence, never today."""
        local = self._now()
        days_until = (_WEEKDAYS[day] - local.weekday()) % 7 or 7
        return self._at(local, days_until, 9)

    def _end_of_week(self) -> int:
        local = self._now()
        return self._at(local, (_FRIDAY - local.weekday()) % 7, 17)

    def _end_of_month(self) -> int:
        local = self._now()
        last_day = calendar.monthrange(local.year, local.month)[1]
        target = local.replace(day=last_day, hour=17, minute=0, second=0, microsecond=0)
        return to_epoch_ms(target)
