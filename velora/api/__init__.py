from velora.api.followups import router as followups_router
from velora.api.inbound import router as inbound_router
from velora.api.usage import router as usage_router
from velora.api.deps import get_services

__all__ = [
    "followups_router",
    "inbound_router",
    "usage_router",
    "get_services",
]
