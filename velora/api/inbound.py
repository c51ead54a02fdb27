"""
Inbound email webhook.
Receives emails forwarded by the mail provider and turns radar aliases into followups.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError

from velora.api.deps import get_services
from velora.errors import RateLimitExceededError
from velora.schemas import InboundEmailResponse
from velora.services.container import RadarServices
from velora.services.inbound_service import IngestStatus, normalize_inbound_email

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inbound-email", tags=["Inbound Email"])


@router.post("", response_model=InboundEmailResponse)
async def receive_inbound_email(
    request: Request,
    x_webhook_secret: Optional[str] = Header(None),
    services: RadarServices = Depends(get_services),
):
    """
    Accepts Resend-style or Postmark-style payloads.

    POST /api/inbound-email
    {
        "from": "alex@acme.com",
        "to": ["me@example.com"],
        "bcc": ["2d+hector@in.velora.cc"],
        "subject": "Contract",
        "text": "Can you review the contract by Friday?",
        "message_id": "<abc@mail.acme.com>"
    }
    """
    expected = services.settings.inbound_webhook_secret
    if expected and not hmac.compare_digest(x_webhook_secret or "", expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )

    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    try:
        email = normalize_inbound_email(body, fallback_message_id=f"msg_{services.clock()}")
    except ValidationError as e:
        logger.warning(f"Rejected inbound payload: {e}")
        email = None
    if email is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    result = await services.inbound.ingest(email)
    if result.status == IngestStatus.RATE_LIMITED:
        raise RateLimitExceededError(result.retry_after)

    return InboundEmailResponse(
        status=result.status.value,
        followup_id=result.followup_id,
        direction=result.direction,
        due_at=result.due_at,
    )
