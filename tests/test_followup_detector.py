"""
Tests for ask/promise detection
"""

import json

import pytest

from velora.services.followup_detector import (
    FollowupDetector, detect_followup_heuristic, extract_quote
)
from velora.services.llm_service import LLMResponse
from velora.services.radar_models import DetectionMethod, FollowDirection

ME = "me@example.com"
THEM = "alex@acme.com"


class ScriptedLLM:
    """Returns a fixed completion and records the prompts it saw"""

    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    async def complete(self, system, user, max_tokens=None, json_mode=False):
        self.calls.append({"system": system, "user": user, "json_mode": json_mode})
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.content, model="gpt-5-mini", tokens_total=90)


# ============ Heuristic Tests ============

class TestHeuristic:
    def test_they_ask_with_deadline(self):
        result = detect_followup_heuristic(
            "Contract", "Hi, can you review the contract by Friday? Thanks", THEM, ME
        )
        assert result.direction == FollowDirection.YOU_OWE
        assert result.confidence == 0.85
        assert result.method == DetectionMethod.HEURISTIC
        assert result.ask_detected is True
        assert result.extracted_due_text.lower() == "by friday"
        assert "can you review" in result.quote.lower()

    def test_they_ask_without_deadline(self):
        result = detect_followup_heuristic("Budget", "Could you confirm the numbers?", THEM, ME)
        assert result.direction == FollowDirection.YOU_OWE
        assert result.confidence == 0.70
        assert result.extracted_due_text is None

    def test_i_promise(self):
        result = detect_followup_heuristic("Deck", "I'll send the deck over.", ME, ME)
        assert result.direction == FollowDirection.YOU_OWE
        assert result.confidence == 0.75
        assert result.promise_detected is True

    def test_i_promise_with_deadline(self):
        result = detect_followup_heuristic("Deck", "I will share the deck by tomorrow.", ME, ME)
        assert result.direction == FollowDirection.YOU_OWE
        assert result.confidence == 0.90

    def test_i_ask_them(self):
        result = detect_followup_heuristic(
            "Budget", "Could you confirm the budget by tomorrow?", ME.upper(), ME
        )
        assert result.direction == FollowDirection.THEY_OWE
        assert result.confidence == 0.85

    def test_their_promise_is_not_my_obligation(self):
        assert detect_followup_heuristic("Deck", "I'll send the deck over.", THEM, ME) is None

    def test_no_signal(self):
        assert detect_followup_heuristic("Lunch", "Thanks for lunch yesterday.", THEM, ME) is None


class TestExtractQuote:
    def test_short_text_returned_whole(self):
        assert extract_quote("Can you review this?", "can you review") == "Can you review this?"

    def test_long_text_is_windowed(self):
        text = ("x" * 300) + " please confirm the order " + ("y" * 300)
        quote = extract_quote(text, "please confirm")
        assert quote.startswith("...")
        assert quote.endswith("...")
        assert "please confirm" in quote
        assert len(quote) <= 200

    def test_missing_match_returns_phrase(self):
        assert extract_quote("nothing here", "by friday") == "by friday"


# ============ Detector Tests ============

class TestFollowupDetector:
    @pytest.mark.asyncio
    async def test_confident_heuristic_skips_llm(self):
        llm = ScriptedLLM(json.dumps({"direction": "THEY_OWE", "confidence": 0.99}))
        detector = FollowupDetector(llm)
        result = await detector.detect("Contract", "Can you review it by Friday?", THEM, ME, ME)
        assert result.method == DetectionMethod.HEURISTIC
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_weak_heuristic_asks_llm(self):
        llm = ScriptedLLM(json.dumps({
            "direction": "YOU_OWE",
            "action": "confirm numbers",
            "dueText": "next Tuesday",
            "confidence": 0.8,
            "quote": "Could you confirm the numbers?",
        }))
        detector = FollowupDetector(llm)
        result = await detector.detect("Budget", "Could you confirm the numbers?", THEM, ME, ME)
        assert result.method == DetectionMethod.LLM
        assert result.confidence == 0.8
        assert result.extracted_due_text == "next Tuesday"
        assert result.tokens_used == 90
        assert result.model == "gpt-5-mini"
        assert llm.calls[0]["json_mode"] is True

    @pytest.mark.asyncio
    async def test_no_heuristic_signal_uses_llm(self):
        llm = ScriptedLLM(json.dumps({"direction": "THEY_OWE", "confidence": 0.7}))
        result = await FollowupDetector(llm).detect("Hello", "Thoughts on the draft?", ME, THEM, ME)
        assert result.direction == FollowDirection.THEY_OWE
        assert result.ask_detected is True

    @pytest.mark.asyncio
    async def test_llm_body_is_trimmed(self):
        llm = ScriptedLLM(json.dumps({"direction": None}))
        await FollowupDetector(llm).detect("Long", "a" * 5000, THEM, ME, ME)
        assert "a" * 801 not in llm.calls[0]["user"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("llm", [
        ScriptedLLM(error=ConnectionError("LLM unreachable")),
        ScriptedLLM("not json"),
        ScriptedLLM(json.dumps({"direction": None})),
        ScriptedLLM(json.dumps({"direction": "YOU_OWE", "confidence": 0.4})),
        ScriptedLLM(json.dumps(["YOU_OWE"])),
    ])
    async def test_unusable_llm_answer_falls_back_to_weak_heuristic(self, llm):
        result = await FollowupDetector(llm).detect(
            "Budget", "Could you confirm the numbers?", THEM, ME, ME
        )
        assert result.method == DetectionMethod.HEURISTIC
        assert result.confidence == 0.70

    @pytest.mark.asyncio
    async def test_nothing_detected_without_llm(self):
        result = await FollowupDetector(None).detect("Lunch", "Thanks for lunch.", THEM, ME, ME)
        assert result is None
