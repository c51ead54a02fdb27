"""
Inbound Email Service - turns an email sent to a radar alias into a followup.

Flow:
1. Find the radar alias among the recipients and resolve the user
2. Due time from the alias, or inferred from the body for smart aliases
3. Detect the obligation (heuristic, then LLM)
4. Derive the thread key; an open followup for it ends the flow as EXISTS
5. Admission control through the email rate limiter, then create

An alias in BCC means the user sent the email; an alias in To/Cc means the
email was forwarded and the sender is the counterpart.
"""

import logging
import re
from dataclasses import dataclass
from datetime import timezone, tzinfo
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from velora.clock import DAY_MS, HOUR_MS, Clock, system_clock, to_datetime
from velora.errors import RateLimitExceededError
from velora.services.alias_parser import (
    DEFAULT_ALIAS_DOMAINS, AliasParser, extract_user_id, is_velora_alias
)
from velora.services.followup_detector import DetectionResult, FollowupDetector
from velora.services.radar_models import (
    DetectionMethod, FollowDirection, Followup, FollowupDetection, FollowupSource, Participant,
)
from velora.services.radar_service import RadarService
from velora.services.rate_limiter import RateLimiter
from velora.services.thread_keys import generate_thread_key

logger = logging.getLogger(__name__)

_FRIDAY = 4


class IngestStatus(str, Enum):
    SKIPPED = "skipped"
    RATE_LIMITED = "rate_limited"
    EXISTS = "exists"
    CREATED = "created"


@dataclass
class IngestResult:
    status: IngestStatus
    followup_id: Optional[str] = None
    direction: Optional[FollowDirection] = None
    due_at: Optional[int] = None
    reason: Optional[str] = None
    retry_after: Optional[int] = None


class InboundEmail(BaseModel):
    """Normalized inbound email, independent of the delivering provider"""
    to: List[str]
    cc: List[str] = []
    bcc: List[str] = []
    from_: str = Field(alias="from")
    from_name: Optional[str] = None
    subject: str = ""
    text: str = ""
    message_id: str
    date: Optional[str] = None

    class Config:
        populate_by_name = True

    @property
    def recipients(self) -> List[str]:
        return [*self.to, *self.bcc, *self.cc]


def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)]


def normalize_inbound_email(body: Dict[str, Any], fallback_message_id: str) -> Optional[InboundEmail]:
    """Accept Resend-style (lowercase) or Postmark-style (PascalCase) payloads."""
    if body.get("from") and body.get("to") and body.get("subject"):
        return InboundEmail(
            to=_as_list(body["to"]),
            cc=_as_list(body.get("cc")),
            bcc=_as_list(body.get("bcc")),
            from_=body["from"],
            from_name=body.get("from_name") or body.get("fromName"),
            subject=body["subject"],
            text=body.get("text") or body.get("body") or "",
            message_id=body.get("message_id") or body.get("messageId") or fallback_message_id,
            date=body.get("date"),
        )
    if body.get("From") and body.get("To"):
        return InboundEmail(
            to=_as_list(body["To"]),
            cc=_as_list(body.get("Cc")),
            bcc=_as_list(body.get("Bcc")),
            from_=body["From"],
            from_name=body.get("FromName"),
            subject=body.get("Subject") or "",
            text=body.get("TextBody") or "",
            message_id=body.get("MessageID") or fallback_message_id,
            date=body.get("Date"),
        )
    return None


def _days_until_friday(now: int, tz: tzinfo) -> int:
    return (_FRIDAY - to_datetime(now, tz).weekday()) % 7 or 7


def infer_due_time(text: str, now: int, tz: tzinfo = timezone.utc) -> Optional[int]:
    """Deadline phrases in the body, for smart aliases. None when nothing matches."""
    patterns = [
        (re.compile(r"by tomorrow", re.IGNORECASE), lambda: DAY_MS),
        (re.compile(r"by (eod|end of day)", re.IGNORECASE), lambda: 8 * HOUR_MS),
        (re.compile(r"by friday", re.IGNORECASE), lambda: _days_until_friday(now, tz) * DAY_MS),
        (re.compile(r"by end of week", re.IGNORECASE), lambda: _days_until_friday(now, tz) * DAY_MS),
        (re.compile(r"by next week", re.IGNORECASE), lambda: 7 * DAY_MS),
    ]
    for regex, offset in patterns:
        if regex.search(text or ""):
            return now + offset()
    return None


class InboundService:
    def __init__(
        self,
        radar: RadarService,
        rate_limiter: RateLimiter,
        detector: FollowupDetector,
        alias_parser: Optional[AliasParser] = None,
        alias_domains: Iterable[str] = DEFAULT_ALIAS_DOMAINS,
        default_due_days: int = 2,
        clock: Clock = system_clock,
        tz: tzinfo = timezone.utc,
    ):
        self.radar = radar
        self.rate_limiter = rate_limiter
        self.detector = detector
        self.alias_parser = alias_parser or AliasParser(tz, clock)
        self.alias_domains = tuple(alias_domains)
        self.default_due_days = default_due_days
        self.clock = clock
        self.tz = tz

    def find_alias(self, email: InboundEmail) -> Optional[str]:
        for address in email.recipients:
            if is_velora_alias(address, self.alias_domains):
                return address
        return None

    def resolve_due_at(self, email: InboundEmail) -> int:
        now = self.clock()
        due_at = None
        alias_type = "smart"
        for address in email.recipients:
            if not is_velora_alias(address, self.alias_domains):
                continue
            parsed = self.alias_parser.parse(address)
            if parsed.matched:
                due_at, alias_type = parsed.due_at, parsed.alias_type
                break

        if due_at is None and alias_type == "smart":
            due_at = infer_due_time(email.text, now, self.tz)
        if due_at is None:
            due_at = now + self.default_due_days * DAY_MS
        return due_at

    def _is_capture(self, email: InboundEmail) -> bool:
        return any(
            self.alias_parser.parse(address).alias_type == "capture"
            for address in email.recipients
            if is_velora_alias(address, self.alias_domains)
        )

    def _counterpart(self, email: InboundEmail, sent_by_user: bool) -> Participant:
        if not sent_by_user:
            return Participant(email=email.from_, name=email.from_name, role="them")
        recipients = [a for a in email.to if not is_velora_alias(a, self.alias_domains)]
        return Participant(email=(recipients or email.to or [""])[0], role="them")

    async def ingest(self, email: InboundEmail) -> IngestResult:
        alias = self.find_alias(email)
        if alias is None:
            logger.info("No radar alias found, skipping")
            return IngestResult(IngestStatus.SKIPPED, reason="no_alias")

        user_id = extract_user_id(alias)
        if not user_id:
            return IngestResult(IngestStatus.SKIPPED, reason="unknown_user")

        due_at = self.resolve_due_at(email)

        sent_by_user = alias.lower() in (address.lower() for address in email.bcc)
        my_email = email.from_ if sent_by_user else alias
        detection = await self.detector.detect(
            email.subject, email.text, email.from_, ", ".join(email.to), my_email
        )
        if detection is None and self._is_capture(email):
            detection = DetectionResult(
                direction=FollowDirection.YOU_OWE, confidence=1.0, method=DetectionMethod.ALIAS
            )
        if detection is None:
            logger.info(f"No followup detected in {email.message_id}, skipping")
            return IngestResult(IngestStatus.SKIPPED, reason="no_followup")

        if detection.tokens_used and self.radar.cost_tracker is not None:
            tracker = self.radar.cost_tracker
            tracker.track_in_background(
                tracker.track_llm(user_id, detection.tokens_used, detection.model or "")
            )

        thread_key = generate_thread_key(email.message_id, [email.from_, *email.to])
        followup = Followup(
            user_id=user_id,
            thread_key=thread_key,
            subject=email.subject,
            participants=[self._counterpart(email, sent_by_user), Participant(email=my_email, role="me")],
            direction=detection.direction,
            due_at=due_at,
            source=FollowupSource(
                message_id=email.message_id,
                snippet=detection.quote or email.text[:200],
            ),
            detection=FollowupDetection(
                method=DetectionMethod(detection.method).value,
                confidence=detection.confidence,
                extracted_due_text=detection.extracted_due_text,
                promise_detected=detection.promise_detected,
                ask_detected=detection.ask_detected,
            ),
        )

        async def admit():
            limit = await self.rate_limiter.check_email_rate_limit(alias)
            if not limit.allowed:
                raise RateLimitExceededError(limit.retry_after)

        try:
            followup_id, created = await self.radar.create_followup_if_absent(followup, admit=admit)
        except RateLimitExceededError as e:
            logger.info(f"Rate limit hit for {user_id}, dropping inbound {email.message_id}")
            return IngestResult(
                IngestStatus.RATE_LIMITED, reason="rate_limited", retry_after=e.retry_after
            )
        if not created:
            logger.info(f"Followup already exists for thread {thread_key}, skipping")
            return IngestResult(
                IngestStatus.EXISTS, followup_id=followup_id, direction=detection.direction
            )

        logger.info(f"Created followup {followup_id} for user {user_id} from inbound email")
        return IngestResult(
            IngestStatus.CREATED,
            followup_id=followup_id,
            direction=detection.direction,
            due_at=due_at,
        )
