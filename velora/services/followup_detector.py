"""
Followup Detection - finds asks and promises in an email.

Rule-first: regex families for asks, promises and deadlines give a fast,
free answer. Only weak or missing heuristic signals are sent to the LLM.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from velora.services.llm_service import LLMClient
from velora.services.radar_models import DetectionMethod, FollowDirection

logger = logging.getLogger(__name__)

_VERBS = "confirm|review|approve|send|share|update|check|verify"

ASK_PATTERNS = [
    re.compile(rf"can you ({_VERBS})", re.IGNORECASE),
    re.compile(rf"could you ({_VERBS})", re.IGNORECASE),
    re.compile(rf"please ({_VERBS})", re.IGNORECASE),
    re.compile(rf"would you ({_VERBS})", re.IGNORECASE),
    re.compile(rf"need you to ({_VERBS})", re.IGNORECASE),
    re.compile(r"waiting for (your|the) (confirmation|review|approval|update|response)", re.IGNORECASE),
    re.compile(r"let me know (when|if|about)", re.IGNORECASE),
    re.compile(r"get back to (me|us)", re.IGNORECASE),
    re.compile(r"follow up (on|with)", re.IGNORECASE),
    re.compile(r"status update", re.IGNORECASE),
    re.compile(r"next steps", re.IGNORECASE),
    re.compile(r"action items", re.IGNORECASE),
]

PROMISE_PATTERNS = [
    re.compile(r"i'?ll (send|share|update|review|confirm|get back|circle back|follow up)", re.IGNORECASE),
    re.compile(r"let me (send|share|update|review|check|circle back|follow up)", re.IGNORECASE),
    re.compile(r"i will (send|share|update|review|confirm|get back|circle back|follow up)", re.IGNORECASE),
    re.compile(r"i can (send|share|update|review|confirm|get back)", re.IGNORECASE),
    re.compile(r"i'?ll make sure", re.IGNORECASE),
    re.compile(r"i'?ll take care of", re.IGNORECASE),
    re.compile(r"will do", re.IGNORECASE),
    re.compile(r"on it", re.IGNORECASE),
    re.compile(r"i'?ll handle", re.IGNORECASE),
]

DEADLINE_PATTERNS = [
    re.compile(
        r"by (tomorrow|today|eod|end of day|end of week|friday|monday|tuesday|wednesday|thursday)",
        re.IGNORECASE,
    ),
    re.compile(r"before (tomorrow|friday|monday|the end of)", re.IGNORECASE),
    re.compile(r"deadline is", re.IGNORECASE),
    re.compile(r"due (by|on|before)", re.IGNORECASE),
    re.compile(r"need (it|this|that) by", re.IGNORECASE),
    re.compile(r"by (\d{1,2}/\d{1,2})", re.IGNORECASE),
    re.compile(r"by (\d{1,2}:\d{2})", re.IGNORECASE),
    re.compile(r"within (\d+) (days?|hours?|weeks?)", re.IGNORECASE),
]

# Heuristic results at or above this skip the LLM
CONFIDENT_THRESHOLD = 0.75
MIN_HEURISTIC_CONFIDENCE = 0.65
MIN_LLM_CONFIDENCE = 0.6
LLM_BODY_LIMIT = 800

DETECTION_SYSTEM_PROMPT = """You extract follow-up obligations from emails.
Output JSON only. Never invent facts. Prefer exact quotes. If no obligation, return {"direction":null}.

Output schema:
{
  "direction": "YOU_OWE" | "THEY_OWE" | null,
  "action": "brief description",
  "dueText": "extracted deadline phrase or null",
  "confidence": 0.0 to 1.0,
  "quote": "exact line that triggered detection (max 200 chars)"
}"""


@dataclass
class DetectionResult:
    direction: FollowDirection
    confidence: float
    method: DetectionMethod
    extracted_due_text: Optional[str] = None
    promise_detected: bool = False
    ask_detected: bool = False
    quote: Optional[str] = None  # the line that triggered detection
    tokens_used: int = 0
    model: Optional[str] = None


def extract_quote(text: str, matched: str) -> str:
    """Snippet of up to 200 chars around the matched phrase."""
    index = text.lower().find(matched.lower())
    if index == -1:
        return matched

    start = max(0, index - 100)
    end = min(len(text), index + len(matched) + 100)
    quote = text[start:end].strip()
    if start > 0:
        quote = "..." + quote
    if end < len(text):
        quote = quote + "..."

    quote = re.sub(r"\s+", " ", quote).strip()
    if len(quote) > 200:
        quote = quote[:197] + "..."
    return quote


def _first_match(patterns, body: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(body)
        if match:
            return match.group(0)
    return None


def detect_followup_heuristic(
    subject: str, body: str, from_email: str, my_email: str
) -> Optional[DetectionResult]:
    """Regex detection. Returns None when there is no clear signal."""
    is_from_me = from_email.lower() == my_email.lower()

    ask = _first_match(ASK_PATTERNS, body)
    promise = _first_match(PROMISE_PATTERNS, body)
    deadline = _first_match(DEADLINE_PATTERNS, body)

    quote = None
    for matched in (ask, promise, deadline):
        if matched:
            quote = extract_quote(body, matched)
            break

    if ask and not is_from_me:
        # They ask me
        direction = FollowDirection.YOU_OWE
        confidence = 0.85 if deadline else 0.70
    elif promise and is_from_me:
        # I promise
        direction = FollowDirection.YOU_OWE
        confidence = 0.90 if deadline else 0.75
    elif ask and is_from_me:
        # I ask them
        direction = FollowDirection.THEY_OWE
        confidence = 0.85 if deadline else 0.70
    else:
        return None

    if confidence < MIN_HEURISTIC_CONFIDENCE:
        return None

    return DetectionResult(
        direction=direction,
        confidence=confidence,
        method=DetectionMethod.HEURISTIC,
        extracted_due_text=deadline,
        promise_detected=promise is not None,
        ask_detected=ask is not None,
        quote=quote,
    )


class FollowupDetector:
    """Heuristic first, LLM extraction for weak or missing signals"""

    def __init__(self, llm: Optional[LLMClient] = None, max_tokens: int = 200):
        self.llm = llm
        self.max_tokens = max_tokens

    async def detect(
        self,
        subject: str,
        body: str,
        from_email: str,
        to_email: str,
        my_email: str,
    ) -> Optional[DetectionResult]:
        heuristic = detect_followup_heuristic(subject, body, from_email, my_email)
        if heuristic is not None and heuristic.confidence >= CONFIDENT_THRESHOLD:
            return heuristic

        if self.llm is not None:
            llm_result = await self.detect_with_llm(subject, body, from_email, to_email, my_email)
            if llm_result is not None:
                return llm_result

        # A weak heuristic signal beats nothing
        return heuristic

    async def detect_with_llm(
        self,
        subject: str,
        body: str,
        from_email: str,
        to_email: str,
        my_email: str,
    ) -> Optional[DetectionResult]:
        user_prompt = (
            f"Subject: {subject}\n"
            f"From: {from_email} | To: {to_email} | Me: {my_email}\n"
            f"Body (trimmed):\n{body[:LLM_BODY_LIMIT]}"
        )
        try:
            response = await self.llm.complete(
                DETECTION_SYSTEM_PROMPT, user_prompt, max_tokens=self.max_tokens, json_mode=True
            )
            result = json.loads(response.content or "{}")
        except Exception as e:
            logger.error(f"LLM detection error: {e}")
            return None

        if not isinstance(result, dict):
            return None
        try:
            direction = FollowDirection(result.get("direction"))
            confidence = float(result.get("confidence") or 0)
        except (ValueError, TypeError):
            return None
        if confidence < MIN_LLM_CONFIDENCE:
            return None

        return DetectionResult(
            direction=direction,
            confidence=confidence,
            method=DetectionMethod.LLM,
            extracted_due_text=result.get("dueText") or None,
            promise_detected=direction == FollowDirection.YOU_OWE,
            ask_detected=direction == FollowDirection.THEY_OWE,
            quote=result.get("quote"),
            tokens_used=response.tokens_total,
            model=response.model,
        )
