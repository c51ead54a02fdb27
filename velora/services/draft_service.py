"""
Draft Generator - short follow-up reply drafts for a followup.

The LLM is an unreliable collaborator: any failure (network, quota, content
policy, empty output) falls back to a deterministic template keyed on the
followup's direction, so drafting never fails a user-visible flow.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from velora.services.llm_service import LLMClient
from velora.services.radar_models import DraftTone, FollowDirection, Followup

logger = logging.getLogger(__name__)

TONE_INSTRUCTIONS = {
    DraftTone.POLITE: "polite and professional",
    DraftTone.FIRM: "firm but respectful",
    DraftTone.CASUAL: "friendly and casual",
    DraftTone.PROFESSIONAL: "formal and professional",
}

_LEADING_GREETING = re.compile(r"^(Hi|Hey|Hello|Dear)\s+\w+,?\s*", re.IGNORECASE)
_TRAILING_SIGNOFF = re.compile(r"\n\n(Best|Thanks|Regards|Sincerely).*$", re.IGNORECASE | re.DOTALL)


@dataclass
class DraftResult:
    text: str
    tokens_used: int = 0
    model: Optional[str] = None
    used_fallback: bool = False


def resolve_tone(tone) -> DraftTone:
    try:
        return DraftTone(tone)
    except ValueError:
        return DraftTone.POLITE


def fallback_draft(followup: Followup) -> str:
    """Deterministic draft used whenever the LLM cannot produce one."""
    if followup.direction == FollowDirection.YOU_OWE:
        return (
            f'Just following up on "{followup.source.snippet[:50]}..." - wanted to check '
            f"if you still need this or if there's anything else I can help with."
        )
    return (
        f'Following up on my previous email about "{followup.subject}" - would love to '
        f"hear your thoughts when you have a moment."
    )


def clean_draft(text: str) -> str:
    """Strip greetings and sign-offs the prompt asks the model to leave out."""
    draft = text.strip()
    draft = _LEADING_GREETING.sub("", draft)
    draft = _TRAILING_SIGNOFF.sub("", draft)
    return draft.strip()


def build_prompts(followup: Followup, tone: DraftTone):
    system = (
        "You write follow-up emails. Keep them SHORT (2-4 sentences max). "
        f"Be {TONE_INSTRUCTIONS[tone]}.\n"
        "Never invent facts. Reference the original context. Don't use greetings or signatures."
    )
    if followup.direction == FollowDirection.YOU_OWE:
        direction_line = "I owe them"
        situation = "I need to follow up on something I promised or was asked to do."
    else:
        direction_line = "They owe me"
        situation = "I need to follow up because they haven't responded."
    user = (
        "Write a follow-up email for:\n\n"
        f"Subject: {followup.subject}\n"
        f"Direction: {direction_line}\n"
        f'Original context: "{followup.source.snippet}"\n\n'
        f"{situation}"
    )
    return system, user


class DraftGenerator:
    def __init__(self, llm: Optional[LLMClient], max_tokens: int = 150):
        self.llm = llm
        self.max_tokens = max_tokens

    async def generate(self, followup: Followup, tone=DraftTone.POLITE) -> DraftResult:
        tone = resolve_tone(tone)
        if self.llm is None:
            return DraftResult(text=fallback_draft(followup), used_fallback=True)

        system, user = build_prompts(followup, tone)
        try:
            response = await self.llm.complete(system, user, max_tokens=self.max_tokens)
        except Exception as e:
            logger.warning(f"Draft generation failed for followup {followup.id}, using template: {e}")
            return DraftResult(text=fallback_draft(followup), used_fallback=True)

        draft = clean_draft(response.content)
        if not draft:
            logger.warning(f"Empty draft from {response.model} for followup {followup.id}, using template")
            return DraftResult(
                text=fallback_draft(followup),
                tokens_used=response.tokens_total,
                model=response.model,
                used_fallback=True,
            )
        return DraftResult(text=draft, tokens_used=response.tokens_total, model=response.model)
