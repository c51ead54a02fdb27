"""Usage endpoints - rate limit status and cost accounting"""

from fastapi import APIRouter, Depends

from velora.api.deps import get_services
from velora.schemas import (
    CostBreakdownResponse, CostEstimateResponse, PlatformMetricsResponse,
    RateLimitStatusResponse, UserCostSummaryResponse,
)
from velora.services.container import RadarServices

router = APIRouter(prefix="/usage", tags=["Usage"])


@router.get("/platform", response_model=PlatformMetricsResponse)
async def platform_metrics(services: RadarServices = Depends(get_services)):
    """Today's cost across all users, graded against ARPU"""
    return await services.cost_tracker.get_platform_metrics()


@router.get("/{user_id}/rate-limit", response_model=RateLimitStatusResponse)
async def rate_limit_status(user_id: str, services: RadarServices = Depends(get_services)):
    """Current window counts; reading does not consume quota"""
    status = await services.rate_limiter.get_user_status(user_id)
    return RateLimitStatusResponse(user_id=user_id, **status)


@router.get("/{user_id}/cost", response_model=UserCostSummaryResponse)
async def cost_summary(user_id: str, services: RadarServices = Depends(get_services)):
    return await services.cost_tracker.get_user_cost_summary(user_id)


@router.get("/{user_id}/cost/breakdown", response_model=CostBreakdownResponse)
async def cost_breakdown(user_id: str, services: RadarServices = Depends(get_services)):
    return await services.cost_tracker.get_cost_breakdown(user_id)


@router.get("/{user_id}/cost/estimate", response_model=CostEstimateResponse)
async def cost_estimate(user_id: str, services: RadarServices = Depends(get_services)):
    return await services.cost_tracker.estimate_monthly_cost(user_id)
