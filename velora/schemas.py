"""Pydantic schemas for API request/response validation"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from velora.services.radar_models import (
    DetectionMethod, DraftTone, FollowDirection, FollowStatus, Followup
)


# ============ Followup Schemas ============

class ParticipantSchema(BaseModel):
    email: str
    role: str = "them"  # "me" | "them"
    name: Optional[str] = None


class FollowupCreate(BaseModel):
    user_id: str
    thread_key: str
    subject: str = ""
    direction: FollowDirection
    due_at: int = Field(description="Due time, epoch milliseconds")
    participants: List[ParticipantSchema] = []
    message_id: str = ""
    snippet: str = ""


class FollowupResponse(BaseModel):
    id: str
    user_id: str
    thread_key: str
    subject: str
    direction: FollowDirection
    status: FollowStatus
    due_at: int
    snooze_until: Optional[int] = None
    participants: List[ParticipantSchema] = []
    snippet: str = ""
    detection_method: str = DetectionMethod.MANUAL.value
    confidence: float = 1.0
    draft: Optional[str] = None
    draft_generated_at: Optional[int] = None
    drafts_generated: int = 0
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def from_followup(cls, followup: Followup) -> "FollowupResponse":
        return cls(
            id=followup.id,
            user_id=followup.user_id,
            thread_key=followup.thread_key,
            subject=followup.subject,
            direction=followup.direction,
            status=followup.status,
            due_at=followup.due_at,
            snooze_until=followup.snooze_until,
            participants=[
                ParticipantSchema(email=p.email, role=p.role, name=p.name)
                for p in followup.participants
            ],
            snippet=followup.source.snippet,
            detection_method=followup.detection.method,
            confidence=followup.detection.confidence,
            draft=followup.draft,
            draft_generated_at=followup.draft_generated_at,
            drafts_generated=followup.analytics.drafts_generated if followup.analytics else 0,
            created_at=followup.created_at,
            updated_at=followup.updated_at,
        )


class FollowupCreateResponse(BaseModel):
    id: str
    created: bool


class RadarStatsResponse(BaseModel):
    overdueCount: int
    todayCount: int
    upcomingCount: int
    youOweCount: int
    theyOweCount: int


class SnoozeRequest(BaseModel):
    until: int = Field(description="New due time, epoch milliseconds")


class DraftRequest(BaseModel):
    tone: DraftTone = DraftTone.POLITE


class DraftResponse(BaseModel):
    followup_id: str
    draft: str


class ActionResponse(BaseModel):
    ok: bool = True
    action: str
    followup_id: str
    draft: Optional[str] = None


# ============ Inbound Email Schemas ============

class InboundEmailResponse(BaseModel):
    ok: bool = True
    status: str
    followup_id: Optional[str] = None
    direction: Optional[FollowDirection] = None
    due_at: Optional[int] = None


# ============ Usage Schemas ============

class RateLimitStatusResponse(BaseModel):
    user_id: str
    minute_count: int
    hour_count: int
    day_count: int
    limits: Dict[str, int]


class CostBreakdownResponse(BaseModel):
    emailsSent: float = 0
    emailCostUSD: float = 0
    tokensUsed: float = 0
    llmCostUSD: float = 0
    firestoreReads: float = 0
    firestoreWrites: float = 0
    firestoreCostUSD: float = 0
    totalCostUSD: float = 0
    lastUpdated: int
    period: str = "day"


class CostEstimateResponse(BaseModel):
    estimated_cost: float
    breakdown: Dict[str, float]
    cogs_percentage: float
    projection: str
    is_healthy: bool


class UserCostSummaryResponse(BaseModel):
    user_id: str
    daily_cost: float
    monthly_cost: float
    avg_cost_per_followup: float
    active_followups: int
    arpu: float
    cogs_percentage: float
    is_healthy: bool


class PlatformMetricsResponse(BaseModel):
    total_users: int
    total_daily_cost: float
    avg_cost_per_user: float
    total_revenue: float
    gross_margin: float
    healthy_users_count: int
    unhealthy_users_count: int
