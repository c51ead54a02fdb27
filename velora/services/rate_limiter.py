"""
Rate Limiter - admission control for followup creation and reminder emails.

Three aligned fixed windows per user (minute / hour / day). Each check
increments all three counters first, then compares against the caps, so a
rejected attempt still consumes quota. Windows are floor(now / size), which
allows up to 2x the nominal rate across a window boundary; the limiter is
coarse abuse prevention, not billing enforcement.

Failure policy:
- counter store unreachable -> fail open (allowed)
- caller cannot be identified from an email alias -> fail closed (rejected)
"""

import asyncio
import logging
import math
import re
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from velora.clock import Clock, DAY_MS, HOUR_MS, MINUTE_MS, system_clock
from velora.db.document_store import DocumentStore

logger = logging.getLogger(__name__)

RATE_LIMITS_COLLECTION = "rate_limits"

# User-bound alias: alias+userId@domain
_USER_BOUND_ALIAS = re.compile(r"^[^+]+\+([^@]+)@")
# Legacy alias: userId+alias@domain or userId@domain
_LEGACY_ALIAS = re.compile(r"^([^+@]+)(?:\+[^@]*)?@")


class RateLimitAction(str, Enum):
    CREATE_FOLLOWUP = "create_followup"
    SEND_REMINDER = "send_reminder"


@dataclass(frozen=True)
class RateLimitConfig:
    max_per_minute: int = 3
    max_per_hour: int = 10
    max_per_day: int = 50

    @classmethod
    def from_settings(cls, settings) -> "RateLimitConfig":
        return cls(
            max_per_minute=settings.rate_limit_per_minute,
            max_per_hour=settings.rate_limit_per_hour,
            max_per_day=settings.rate_limit_per_day,
        )


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int  # epoch ms
    retry_after: Optional[int] = None  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class _Window:
    name: str
    size_ms: int
    cap: int
    index: int

    @property
    def reset_time(self) -> int:
        return (self.index + 1) * self.size_ms


def extract_user_id_from_alias(email_address: str) -> Optional[str]:
    """
    Pull the user id out of a radar alias.

    alias+userId@domain wins over the legacy userId+alias@domain form.
    """
    match = _USER_BOUND_ALIAS.match(email_address)
    if match:
        return match.group(1)
    match = _LEGACY_ALIAS.match(email_address)
    return match.group(1) if match else None


class RateLimiter:
    """Fixed-window per-user rate limiter backed by document counters"""

    def __init__(
        self,
        store: Optional[DocumentStore],
        config: Optional[RateLimitConfig] = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.config = config or RateLimitConfig()
        self.clock = clock

    def _windows(self, now: int) -> List[_Window]:
        return [
            _Window("minute", MINUTE_MS, self.config.max_per_minute, now // MINUTE_MS),
            _Window("hour", HOUR_MS, self.config.max_per_hour, now // HOUR_MS),
            _Window("day", DAY_MS, self.config.max_per_day, now // DAY_MS),
        ]

    @staticmethod
    def counter_key(user_id: str, window: str, index: int) -> str:
        return f"rate_limit:{user_id}:{window}:{index}"

    async def _increment(self, user_id: str, window: _Window, action: str) -> int:
        doc = await self.store.increment(
            RATE_LIMITS_COLLECTION,
            self.counter_key(user_id, window.name, window.index),
            {"count": 1},
            {
                "userId": user_id,
                "window": window.name,
                "lastAction": action,
                "expiresAt": window.reset_time,
            },
        )
        return int(doc.get("count") or 1)

    async def check_rate_limit(
        self, user_id: str, action: RateLimitAction = RateLimitAction.CREATE_FOLLOWUP
    ) -> RateLimitResult:
        """Count this attempt against all three windows and decide."""
        now = self.clock()
        action_name = RateLimitAction(action).value
        windows = self._windows(now)

        try:
            if self.store is None:
                raise RuntimeError("rate limit store not initialized")
            counts: List[Tuple[_Window, int]] = []
            for window in windows:
                counts.append((window, await self._increment(user_id, window, action_name)))
        except Exception as e:
            logger.warning(f"Rate limit check failed for {user_id}, failing open: {e}")
            return RateLimitResult(
                allowed=True,
                remaining=self.config.max_per_day,
                reset_time=now + DAY_MS,
            )

        for window, count in counts:
            if count > window.cap:
                retry_after = max(1, math.ceil((window.reset_time - now) / 1000))
                logger.info(
                    f"Rate limit hit for {user_id} ({action_name}): "
                    f"{window.name} count {count} > {window.cap}"
                )
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=window.reset_time,
                    retry_after=retry_after,
                )

        remaining = min(window.cap - count for window, count in counts)
        return RateLimitResult(
            allowed=True,
            remaining=max(0, remaining),
            reset_time=min(window.reset_time for window in windows),
        )

    async def check_email_rate_limit(self, email_address: str) -> RateLimitResult:
        """Rate-limit by the user embedded in a radar alias; unknown callers are rejected."""
        user_id = extract_user_id_from_alias(email_address)
        if not user_id:
            logger.info(f"Rejecting unattributable alias {email_address!r}")
            return RateLimitResult(allowed=False, remaining=0, reset_time=self.clock())
        return await self.check_rate_limit(user_id, RateLimitAction.CREATE_FOLLOWUP)

    async def _read_count(self, user_id: str, window: _Window) -> int:
        try:
            doc = await self.store.get(
                RATE_LIMITS_COLLECTION, self.counter_key(user_id, window.name, window.index)
            )
        except Exception as e:
            logger.warning(f"Could not read {window.name} counter for {user_id}: {e}")
            return 0
        return int((doc or {}).get("count") or 0)

    async def get_user_status(self, user_id: str) -> Dict[str, Any]:
        """Current window counts without consuming quota."""
        windows = self._windows(self.clock())
        if self.store is None:
            counts = [0, 0, 0]
        else:
            counts = await asyncio.gather(*(self._read_count(user_id, w) for w in windows))
        return {
            "minute_count": counts[0],
            "hour_count": counts[1],
            "day_count": counts[2],
            "limits": asdict(self.config),
        }

    async def cleanup_expired_entries(self) -> int:
        """Delete counters whose window has passed. Returns how many were removed."""
        if self.store is None:
            return 0
        now = self.clock()
        expired = await self.store.query(
            RATE_LIMITS_COLLECTION, [("expiresAt", "<=", now)]
        )
        for key, _ in expired:
            await self.store.delete(RATE_LIMITS_COLLECTION, key)
        if expired:
            logger.info(f"Removed {len(expired)} expired rate limit counters")
        return len(expired)
