"""
Service wiring - builds every radar service from one Settings object.

One RadarServices container per application, stored on app.state. The
clock and timezone are shared so every component buckets time identically.
"""

import logging
from dataclasses import dataclass
from datetime import tzinfo
from typing import Optional

from velora.clock import Clock, resolve_timezone, system_clock
from velora.config import Settings
from velora.db.document_store import DocumentStore
from velora.services.action_links import ActionLinkSigner
from velora.services.alias_parser import AliasParser
from velora.services.cost_tracker import CostPricing, CostTracker
from velora.services.draft_service import DraftGenerator
from velora.services.followup_detector import FollowupDetector
from velora.services.inbound_service import InboundService
from velora.services.llm_service import LLMClient, LLMService
from velora.services.radar_service import RadarService
from velora.services.rate_limiter import RateLimitConfig, RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class RadarServices:
    settings: Settings
    store: Optional[DocumentStore]
    clock: Clock
    tz: tzinfo
    radar: RadarService
    rate_limiter: RateLimiter
    cost_tracker: CostTracker
    inbound: InboundService
    action_links: ActionLinkSigner


def build_services(
    settings: Settings,
    store: Optional[DocumentStore],
    clock: Clock = system_clock,
    llm: Optional[LLMClient] = None,
) -> RadarServices:
    """
    Wire the radar. `llm` overrides the OpenAI client; without an API key
    and without an override, drafts use templates and detection is heuristic.
    """
    tz = resolve_timezone(settings.timezone)

    if llm is None and settings.openai_api_key:
        llm = LLMService.from_settings(settings)
    if llm is None:
        logger.info("No LLM configured: template drafts and heuristic detection only")

    cost_tracker = CostTracker(store, CostPricing.from_settings(settings), clock=clock, tz=tz)
    radar = RadarService(
        store,
        drafts=DraftGenerator(llm, max_tokens=settings.draft_max_tokens),
        cost_tracker=cost_tracker,
        clock=clock,
        tz=tz,
    )
    # Per-followup cost needs the followup store
    cost_tracker.radar = radar

    rate_limiter = RateLimiter(store, RateLimitConfig.from_settings(settings), clock=clock)
    inbound = InboundService(
        radar,
        rate_limiter,
        FollowupDetector(llm, max_tokens=settings.detection_max_tokens),
        alias_parser=AliasParser(tz, clock),
        alias_domains=settings.alias_domains,
        default_due_days=settings.default_due_days,
        clock=clock,
        tz=tz,
    )
    return RadarServices(
        settings=settings,
        store=store,
        clock=clock,
        tz=tz,
        radar=radar,
        rate_limiter=rate_limiter,
        cost_tracker=cost_tracker,
        inbound=inbound,
        action_links=ActionLinkSigner.from_settings(settings, store, clock=clock),
    )
