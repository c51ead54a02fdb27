from velora.services.radar_service import RadarService
from velora.services.rate_limiter import RateLimiter, RateLimitConfig, RateLimitResult, RateLimitAction
from velora.services.cost_tracker import CostTracker, CostPricing
from velora.services.draft_service import DraftGenerator, DraftResult
from velora.services.followup_detector import FollowupDetector, detect_followup_heuristic
from velora.services.alias_parser import AliasParser, AliasParseResult
from velora.services.inbound_service import InboundService, IngestResult, IngestStatus
from velora.services.action_links import ActionLinkSigner, ActionType, generate_ics
from velora.services.llm_service import LLMService, LLMResponse
from velora.services.thread_keys import generate_thread_key
from velora.services.container import RadarServices, build_services

__all__ = [
    "RadarService",
    # Admission control + telemetry
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimitAction",
    "CostTracker",
    "CostPricing",
    # Drafting + detection
    "DraftGenerator",
    "DraftResult",
    "FollowupDetector",
    "detect_followup_heuristic",
    "LLMService",
    "LLMResponse",
    # Inbound email
    "AliasParser",
    "AliasParseResult",
    "InboundService",
    "IngestResult",
    "IngestStatus",
    "generate_thread_key",
    # Action links
    "ActionLinkSigner",
    "ActionType",
    "generate_ics",
    # Wiring
    "RadarServices",
    "build_services",
]
