"""
Action Links - signed, single-use links for reminder email buttons.

Tokens are HS256 JWTs (python-jose) carrying followupId, userId, action and
a nonce. A link works once: the nonce is consumed with an insert-only write,
so a replayed token loses against the stored nonce.
"""

import logging
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from velora.clock import MINUTE_MS, Clock, system_clock
from velora.db.document_store import DocumentStore
from velora.errors import ActionLinkError, DocumentExistsError, StoreNotInitializedError
from velora.services.radar_models import Followup

logger = logging.getLogger(__name__)

ACTION_NONCES_COLLECTION = "action_nonces"

CALENDAR_EVENT_MINUTES = 25


class ActionType(str, Enum):
    SNOOZE = "snooze"
    DONE = "done"
    DRAFT = "draft"
    CALENDAR = "calendar"
    REPLY_FORWARD = "reply_forward"


class ActionLinkSigner:
    def __init__(
        self,
        secret: str,
        store: Optional[DocumentStore] = None,
        algorithm: str = "HS256",
        issuer: str = "velora-radar",
        audience: str = "velora-users",
        expire_minutes: int = 15,
        clock: Clock = system_clock,
    ):
        self.secret = secret
        self.store = store
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.expire_minutes = expire_minutes
        self.clock = clock

    @classmethod
    def from_settings(cls, settings, store: Optional[DocumentStore], clock: Clock = system_clock):
        return cls(
            secret=settings.jwt_secret,
            store=store,
            algorithm=settings.jwt_algorithm,
            issuer=settings.action_link_issuer,
            audience=settings.action_link_audience,
            expire_minutes=settings.action_link_expire_minutes,
            clock=clock,
        )

    @staticmethod
    def generate_nonce() -> str:
        return secrets.token_urlsafe(16)

    def sign(
        self,
        followup_id: str,
        user_id: str,
        action: ActionType,
        nonce: Optional[str] = None,
        expires_in_minutes: Optional[int] = None,
    ) -> str:
        """Create a signed action token"""
        now = self.clock() // 1000
        expires_at = now + (expires_in_minutes or self.expire_minutes) * 60
        to_encode = {
            "followupId": followup_id,
            "userId": user_id,
            "action": ActionType(action).value,
            "nonce": nonce or self.generate_nonce(),
            "iat": now,
            "exp": expires_at,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def create_action_link(
        self, base_url: str, followup_id: str, user_id: str, action: ActionType
    ) -> str:
        token = self.sign(followup_id, user_id, action)
        return f"{base_url.rstrip('/')}/api/followups/action?token={token}"

    def generate_email_action_links(
        self, base_url: str, followup_id: str, user_id: str
    ) -> Dict[str, str]:
        """One link per action, each with its own nonce."""
        return {
            action.value: self.create_action_link(base_url, followup_id, user_id, action)
            for action in ActionType
        }

    def verify(self, token: str) -> Dict[str, Any]:
        """Check signature, issuer, audience and expiry. Raises ActionLinkError."""
        try:
            # Expiry is checked against the injected clock below
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False},
            )
        except JWTError as e:
            raise ActionLinkError(f"Invalid token: {e}") from e

        exp = payload.get("exp")
        if not isinstance(exp, int) or self.clock() // 1000 >= exp:
            raise ActionLinkError("Token expired")

        for claim in ("followupId", "userId", "action", "nonce"):
            if not payload.get(claim):
                raise ActionLinkError(f"Token missing {claim}")
        try:
            ActionType(payload["action"])
        except ValueError as e:
            raise ActionLinkError(f"Unknown action {payload['action']!r}") from e
        return payload

    async def validate_and_consume(self, token: str) -> Dict[str, Any]:
        """Verify a token and burn its nonce. A second use raises ActionLinkError."""
        payload = self.verify(token)
        if self.store is None:
            raise StoreNotInitializedError()
        try:
            await self.store.create(ACTION_NONCES_COLLECTION, payload["nonce"], {
                "userId": payload["userId"],
                "followupId": payload["followupId"],
                "action": payload["action"],
                "consumedAt": self.clock(),
                "expiresAt": payload["exp"] * 1000,
            })
        except DocumentExistsError as e:
            logger.warning(f"Replayed action link for followup {payload['followupId']}")
            raise ActionLinkError("Token already used") from e
        return payload

    async def cleanup_expired_nonces(self) -> int:
        """Consumed nonces are only needed until their token would have expired."""
        if self.store is None:
            return 0
        expired = await self.store.query(
            ACTION_NONCES_COLLECTION, [("expiresAt", "<=", self.clock())]
        )
        for key, _ in expired:
            await self.store.delete(ACTION_NONCES_COLLECTION, key)
        return len(expired)


def _ics_timestamp(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _escape_text(text: str) -> str:
    """Escape a TEXT property value (RFC 5545 3.3.11)."""
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r", "")
        .replace("\n", "\\n")
    )


def _fold_line(line: str, limit: int = 75) -> str:
    if len(line) <= limit:
        return line
    parts = [line[:limit]]
    parts.extend(" " + line[i:i + limit - 1] for i in range(limit, len(line), limit - 1))
    return "\r\n".join(parts)


def generate_ics(followup: Followup, now: int) -> str:
    """Calendar file with a 25 minute block at the followup's due time."""
    start = followup.due_at
    end = start + CALENDAR_EVENT_MINUTES * MINUTE_MS
    subject = _escape_text(followup.subject or "")
    snippet = _escape_text(followup.source.snippet or "")
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Velora//Follow-Up Radar//EN",
        "BEGIN:VEVENT",
        f"UID:followup-{followup.id}@velora.cc",
        f"DTSTAMP:{_ics_timestamp(now)}",
        f"DTSTART:{_ics_timestamp(start)}",
        f"DTEND:{_ics_timestamp(end)}",
        f"SUMMARY:Follow-up: {subject}",
        f'DESCRIPTION:Follow-up reminder for: {subject}\\n\\n'
        f'Triggered by: "{snippet}"',
        "LOCATION:Email",
        "STATUS:CONFIRMED",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(_fold_line(line) for line in lines)
