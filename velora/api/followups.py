"""Followup endpoints - list, stats, lifecycle transitions, drafts and action links"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status

from velora.api.deps import get_services
from velora.clock import HOUR_MS
from velora.errors import ActionLinkError, RateLimitExceededError
from velora.schemas import (
    ActionResponse, DraftRequest, DraftResponse, FollowupCreate, FollowupCreateResponse,
    FollowupResponse, RadarStatsResponse, SnoozeRequest,
)
from velora.services.action_links import ActionType, generate_ics
from velora.services.container import RadarServices
from velora.services.radar_models import (
    DetectionMethod, FollowDirection, Followup, FollowupDetection, FollowupFilter, FollowupSource,
    FollowStatus, Participant, Timeframe,
)
from velora.services.rate_limiter import RateLimitAction

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/followups", tags=["Followups"])

# Snooze length for the one-click email button
ACTION_SNOOZE_MS = 2 * HOUR_MS

# Actions a one-click link can run directly
LINK_ACTIONS = frozenset({ActionType.DONE, ActionType.SNOOZE, ActionType.DRAFT, ActionType.CALENDAR})


async def _require_followup(services: RadarServices, followup_id: str) -> Followup:
    followup = await services.radar.get_followup(followup_id)
    if followup is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Followup not found"
        )
    return followup


@router.get("", response_model=List[FollowupResponse])
async def list_followups(
    user_id: str = Query(..., description="Owner of the followups"),
    direction: Optional[FollowDirection] = Query(None),
    status_filter: Optional[FollowStatus] = Query(None, alias="status"),
    timeframe: Optional[Timeframe] = Query(None, description="overdue, today or upcoming"),
    services: RadarServices = Depends(get_services),
):
    """Open followups (or those in `status`) ordered by due time"""
    followups = await services.radar.get_followups(
        user_id, FollowupFilter(direction=direction, status=status_filter, timeframe=timeframe)
    )
    return [FollowupResponse.from_followup(f) for f in followups]


@router.get("/stats", response_model=RadarStatsResponse)
async def followup_stats(
    user_id: str = Query(...),
    services: RadarServices = Depends(get_services),
):
    stats = await services.radar.get_radar_stats(user_id)
    return RadarStatsResponse(**stats.to_dict())


@router.get("/action")
async def run_action_link(
    token: str = Query(..., description="Signed action token from a reminder email"),
    services: RadarServices = Depends(get_services),
):
    """
    Execute a one-click action from a reminder email.

    The token is single use; a replay gets 401. Tokens that cannot be
    executed here are rejected before their nonce is spent.
    """
    payload = services.action_links.verify(token)
    followup_id = payload["followupId"]
    action = ActionType(payload["action"])
    if action not in LINK_ACTIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid action for this endpoint"
        )

    followup = await _require_followup(services, followup_id)
    if followup.user_id != payload["userId"]:
        raise ActionLinkError("Token does not match followup owner")
    await services.action_links.validate_and_consume(token)

    if action == ActionType.DONE:
        await services.radar.mark_done(followup_id)
        return ActionResponse(action=action.value, followup_id=followup_id)

    if action == ActionType.SNOOZE:
        await services.radar.snooze_followup(followup_id, services.clock() + ACTION_SNOOZE_MS)
        return ActionResponse(action=action.value, followup_id=followup_id)

    if action == ActionType.DRAFT:
        draft = await services.radar.generate_draft(followup_id)
        return ActionResponse(action=action.value, followup_id=followup_id, draft=draft)

    # ActionType.CALENDAR
    return Response(
        content=generate_ics(followup, services.clock()),
        media_type="text/calendar",
        headers={"Content-Disposition": f'attachment; filename="followup-{followup_id}.ics"'},
    )


@router.get("/{followup_id}", response_model=FollowupResponse)
async def get_followup(
    followup_id: str,
    services: RadarServices = Depends(get_services),
):
    followup = await _require_followup(services, followup_id)
    return FollowupResponse.from_followup(followup)


@router.post("", response_model=FollowupCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_followup(
    request: FollowupCreate,
    response: Response,
    services: RadarServices = Depends(get_services),
):
    """
    Create a followup unless one is already open for the thread.

    200 with created=false when an open followup already exists. Only
    requests that would create a record count against the rate limit.
    """
    async def admit():
        limit = await services.rate_limiter.check_rate_limit(
            request.user_id, RateLimitAction.CREATE_FOLLOWUP
        )
        if not limit.allowed:
            raise RateLimitExceededError(limit.retry_after)

    followup = Followup(
        user_id=request.user_id,
        thread_key=request.thread_key,
        subject=request.subject,
        direction=request.direction,
        due_at=request.due_at,
        participants=[
            Participant(email=p.email, role=p.role, name=p.name) for p in request.participants
        ],
        source=FollowupSource(message_id=request.message_id, snippet=request.snippet),
        detection=FollowupDetection(method=DetectionMethod.MANUAL.value, confidence=1.0),
    )
    followup_id, created = await services.radar.create_followup_if_absent(followup, admit=admit)
    if not created:
        response.status_code = status.HTTP_200_OK
    return FollowupCreateResponse(id=followup_id, created=created)


@router.post("/{followup_id}/done")
async def mark_done(
    followup_id: str,
    services: RadarServices = Depends(get_services),
):
    await services.radar.mark_done(followup_id)
    return {"ok": True, "followup_id": followup_id, "status": FollowStatus.DONE.value}


@router.post("/{followup_id}/snooze")
async def snooze_followup(
    followup_id: str,
    request: SnoozeRequest,
    services: RadarServices = Depends(get_services),
):
    await services.radar.snooze_followup(followup_id, request.until)
    return {
        "ok": True,
        "followup_id": followup_id,
        "status": FollowStatus.SNOOZED.value,
        "snooze_until": request.until,
    }


@router.post("/{followup_id}/cancel")
async def cancel_followup(
    followup_id: str,
    services: RadarServices = Depends(get_services),
):
    await services.radar.cancel_followup(followup_id)
    return {"ok": True, "followup_id": followup_id, "status": FollowStatus.CANCELLED.value}


@router.post("/{followup_id}/draft", response_model=DraftResponse)
async def generate_draft(
    followup_id: str,
    request: Optional[DraftRequest] = Body(None),
    services: RadarServices = Depends(get_services),
):
    """Generate a reply draft (template fallback when the LLM is unavailable)"""
    tone = request.tone if request else None
    draft = await services.radar.generate_draft(followup_id, tone or "polite")
    return DraftResponse(followup_id=followup_id, draft=draft)


@router.delete("/{followup_id}")
async def delete_followup(
    followup_id: str,
    services: RadarServices = Depends(get_services),
):
    await services.radar.delete_followup(followup_id)
    return {"ok": True, "followup_id": followup_id}
