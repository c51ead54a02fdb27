"""
Follow-Up Radar domain types.

A Followup is a tracked obligation around an email thread: either the user
owes a response (YOU_OWE) or a counterpart owes the user one (THEY_OWE).
Documents are stored with camelCase field names.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class FollowDirection(str, Enum):
    YOU_OWE = "YOU_OWE"
    THEY_OWE = "THEY_OWE"


class FollowStatus(str, Enum):
    PENDING = "PENDING"
    SNOOZED = "SNOOZED"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


OPEN_STATUSES = (FollowStatus.PENDING.value, FollowStatus.SNOOZED.value)


class Timeframe(str, Enum):
    OVERDUE = "overdue"
    TODAY = "today"
    UPCOMING = "upcoming"


class DraftTone(str, Enum):
    POLITE = "polite"
    FIRM = "firm"
    CASUAL = "casual"
    PROFESSIONAL = "professional"


class DetectionMethod(str, Enum):
    ALIAS = "ALIAS"
    HEURISTIC = "HEURISTIC"
    LLM = "LLM"
    MANUAL = "MANUAL"


@dataclass
class Participant:
    email: str = ""
    role: str = "them"  # "me" | "them"
    name: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        doc = {"email": self.email, "role": self.role}
        if self.name is not None:
            doc["name"] = self.name
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Participant":
        return cls(email=doc.get("email", ""), role=doc.get("role", "them"), name=doc.get("name"))


@dataclass
class FollowupSource:
    message_id: str = ""
    snippet: str = ""
    provider: str = "email"

    def to_document(self) -> Dict[str, Any]:
        return {"provider": self.provider, "messageId": self.message_id, "snippet": self.snippet}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "FollowupSource":
        return cls(
            message_id=doc.get("messageId", ""),
            snippet=doc.get("snippet", ""),
            provider=doc.get("provider", "email"),
        )


@dataclass
class FollowupDetection:
    method: str = DetectionMethod.MANUAL.value
    confidence: float = 1.0
    extracted_due_text: Optional[str] = None
    promise_detected: Optional[bool] = None
    ask_detected: Optional[bool] = None

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"method": self.method, "confidence": self.confidence}
        if self.extracted_due_text is not None:
            doc["extractedDueText"] = self.extracted_due_text
        if self.promise_detected is not None:
            doc["promiseDetected"] = self.promise_detected
        if self.ask_detected is not None:
            doc["askDetected"] = self.ask_detected
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "FollowupDetection":
        return cls(
            method=doc.get("method", DetectionMethod.MANUAL.value),
            confidence=doc.get("confidence", 1.0),
            extracted_due_text=doc.get("extractedDueText"),
            promise_detected=doc.get("promiseDetected"),
            ask_detected=doc.get("askDetected"),
        )


@dataclass
class FollowupAnalytics:
    drafts_generated: int = 0
    last_draft_at: Optional[int] = None
    last_reminder_at: Optional[int] = None

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"draftsGenerated": self.drafts_generated}
        if self.last_draft_at is not None:
            doc["lastDraftAt"] = self.last_draft_at
        if self.last_reminder_at is not None:
            doc["lastReminderAt"] = self.last_reminder_at
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "FollowupAnalytics":
        return cls(
            drafts_generated=doc.get("draftsGenerated") or 0,
            last_draft_at=doc.get("lastDraftAt"),
            last_reminder_at=doc.get("lastReminderAt"),
        )


@dataclass
class Followup:
    user_id: str
    thread_key: str
    direction: FollowDirection
    due_at: int  # epoch ms
    subject: str = ""
    status: FollowStatus = FollowStatus.PENDING
    participants: List[Participant] = field(default_factory=list)
    source: FollowupSource = field(default_factory=FollowupSource)
    detection: FollowupDetection = field(default_factory=FollowupDetection)
    analytics: Optional[FollowupAnalytics] = None
    snooze_until: Optional[int] = None
    draft: Optional[str] = None
    draft_generated_at: Optional[int] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status.value in OPEN_STATUSES

    @property
    def counterpart(self) -> Optional[Participant]:
        return next((p for p in self.participants if p.role == "them"), None)

    def to_document(self) -> Dict[str, Any]:
        """Serialize for storage (the id is the document key, not a field)."""
        doc: Dict[str, Any] = {
            "userId": self.user_id,
            "threadKey": self.thread_key,
            "subject": self.subject,
            "participants": [p.to_document() for p in self.participants],
            "direction": FollowDirection(self.direction).value,
            "dueAt": self.due_at,
            "status": FollowStatus(self.status).value,
            "source": self.source.to_document(),
            "detection": self.detection.to_document(),
        }
        optional = {
            "snoozeUntil": self.snooze_until,
            "draft": self.draft,
            "draftGeneratedAt": self.draft_generated_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        doc.update({k: v for k, v in optional.items() if v is not None})
        if self.analytics is not None:
            doc["analytics"] = self.analytics.to_document()
        return doc

    @classmethod
    def from_document(cls, followup_id: str, doc: Dict[str, Any]) -> "Followup":
        analytics = doc.get("analytics")
        return cls(
            id=followup_id,
            user_id=doc["userId"],
            thread_key=doc.get("threadKey", ""),
            subject=doc.get("subject", ""),
            participants=[Participant.from_document(p) for p in doc.get("participants", [])],
            direction=FollowDirection(doc["direction"]),
            due_at=doc["dueAt"],
            status=FollowStatus(doc.get("status", FollowStatus.PENDING.value)),
            snooze_until=doc.get("snoozeUntil"),
            source=FollowupSource.from_document(doc.get("source") or {}),
            detection=FollowupDetection.from_document(doc.get("detection") or {}),
            analytics=FollowupAnalytics.from_document(analytics) if analytics else None,
            draft=doc.get("draft"),
            draft_generated_at=doc.get("draftGeneratedAt"),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
        )


@dataclass
class FollowupFilter:
    direction: Optional[FollowDirection] = None
    status: Optional[FollowStatus] = None
    timeframe: Optional[Timeframe] = None


@dataclass
class RadarStats:
    overdue_count: int = 0
    today_count: int = 0
    upcoming_count: int = 0
    you_owe_count: int = 0
    they_owe_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "overdueCount": self.overdue_count,
            "todayCount": self.today_count,
            "upcomingCount": self.upcoming_count,
            "youOweCount": self.you_owe_count,
            "theyOweCount": self.they_owe_count,
        }


# Partial updates accepted by update_followup, in storage field names
UPDATABLE_FIELDS = {
    "subject", "participants", "direction", "dueAt", "status", "snoozeUntil",
    "source", "detection", "analytics", "draft", "draftGeneratedAt",
}
