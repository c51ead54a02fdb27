"""
Clock helpers - all bucketing (rate-limit windows, cost day keys, "today")
derives from an injectable epoch-millisecond clock.
"""

import time
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Tuple
from zoneinfo import ZoneInfo

Clock = Callable[[], int]

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


def system_clock() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class FrozenClock:
    """Settable clock for tests."""

    def __init__(self, now_ms: int):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms

    def set(self, now_ms: int) -> None:
        self.now_ms = now_ms


def resolve_timezone(name: str) -> tzinfo:
    return ZoneInfo(name)


def to_datetime(epoch_ms: int, tz: tzinfo) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz)


def to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def day_bounds(now_ms: int, tz: tzinfo) -> Tuple[int, int]:
    """
    Start and end of the local calendar day containing now_ms.

    End is the last millisecond of the day (23:59:59.999), so a due time
    exactly at end-of-day still counts as "today".
    """
    local = to_datetime(now_ms, tz)
    start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    # Aware arithmetic is wall-clock arithmetic, so DST days keep their real length
    next_start = start + timedelta(days=1)
    return to_epoch_ms(start), to_epoch_ms(next_start) - 1


def day_key(now_ms: int, tz: tzinfo) -> str:
    """YYYYMMDD of the local day containing now_ms."""
    return to_datetime(now_ms, tz).strftime("%Y%m%d")
