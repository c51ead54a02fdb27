"""
Tests for signed single-use action links
"""

from urllib.parse import parse_qs, urlparse

import pytest
from jose import jwt

from velora.clock import MINUTE_MS, FrozenClock
from velora.config import Settings
from velora.db.document_store import MemoryDocumentStore
from velora.errors import ActionLinkError, StoreNotInitializedError
from velora.services.action_links import (
    ACTION_NONCES_COLLECTION, ActionLinkSigner, ActionType, generate_ics
)
from velora.services.radar_models import FollowDirection, Followup, FollowupSource

NOW = 1_700_000_000_000  # 2023-11-14T22:13:20Z
SECRET = "test-secret"


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def signer(store, clock):
    return ActionLinkSigner(SECRET, store, clock=clock)


# ============ Signing Tests ============

class TestSigning:
    def test_token_claims(self, signer):
        payload = signer.verify(signer.sign("f1", "u1", ActionType.DONE, nonce="n1"))
        assert payload["followupId"] == "f1"
        assert payload["userId"] == "u1"
        assert payload["action"] == "done"
        assert payload["nonce"] == "n1"
        assert payload["exp"] - payload["iat"] == 15 * 60

    def test_nonces_are_unique(self):
        assert len({ActionLinkSigner.generate_nonce() for _ in range(100)}) == 100

    def test_action_link_url(self, signer):
        link = signer.create_action_link("https://app.velora.cc/", "f1", "u1", ActionType.SNOOZE)
        parsed = urlparse(link)
        assert parsed.netloc == "app.velora.cc"
        assert parsed.path == "/api/followups/action"
        token = parse_qs(parsed.query)["token"][0]
        assert signer.verify(token)["action"] == "snooze"

    def test_email_links_cover_every_action(self, signer):
        links = signer.generate_email_action_links("https://app.velora.cc", "f1", "u1")
        assert set(links) == {action.value for action in ActionType}
        nonces = {
            signer.verify(parse_qs(urlparse(link).query)["token"][0])["nonce"]
            for link in links.values()
        }
        assert len(nonces) == len(links)

    def test_from_settings(self, store, clock):
        settings = Settings(jwt_secret="from-settings", action_link_expire_minutes=5)
        signer = ActionLinkSigner.from_settings(settings, store, clock)
        payload = signer.verify(signer.sign("f1", "u1", ActionType.DRAFT))
        assert payload["exp"] - payload["iat"] == 5 * 60


# ============ Verification Tests ============

class TestVerification:
    def test_expired_token_rejected(self, signer, clock):
        token = signer.sign("f1", "u1", ActionType.DONE)
        clock.advance(15 * MINUTE_MS)
        with pytest.raises(ActionLinkError, match="expired"):
            signer.verify(token)

    def test_token_valid_just_before_expiry(self, signer, clock):
        token = signer.sign("f1", "u1", ActionType.DONE)
        clock.advance(15 * MINUTE_MS - 1000)
        assert signer.verify(token)["followupId"] == "f1"

    def test_wrong_secret_rejected(self, signer, store, clock):
        other = ActionLinkSigner("another-secret", store, clock=clock)
        with pytest.raises(ActionLinkError):
            signer.verify(other.sign("f1", "u1", ActionType.DONE))

    def test_wrong_audience_rejected(self, signer, store, clock):
        other = ActionLinkSigner(SECRET, store, audience="someone-else", clock=clock)
        with pytest.raises(ActionLinkError):
            signer.verify(other.sign("f1", "u1", ActionType.DONE))

    def test_tampered_token_rejected(self, signer):
        token = signer.sign("f1", "u1", ActionType.DONE)
        header, payload, signature = token.split(".")
        tampered = ".".join([header, payload[:-2] + ("AA" if payload[-2:] != "AA" else "BB"), signature])
        with pytest.raises(ActionLinkError):
            signer.verify(tampered)

    def test_unknown_action_rejected(self, signer):
        token = jwt.encode({
            "followupId": "f1", "userId": "u1", "action": "delete_everything", "nonce": "n",
            "iat": NOW // 1000, "exp": NOW // 1000 + 60,
            "iss": signer.issuer, "aud": signer.audience,
        }, SECRET, algorithm="HS256")
        with pytest.raises(ActionLinkError):
            signer.verify(token)

    def test_missing_claim_rejected(self, signer):
        token = jwt.encode({
            "followupId": "f1", "action": "done", "nonce": "n",
            "iat": NOW // 1000, "exp": NOW // 1000 + 60,
            "iss": signer.issuer, "aud": signer.audience,
        }, SECRET, algorithm="HS256")
        with pytest.raises(ActionLinkError, match="userId"):
            signer.verify(token)


# ============ Consumption Tests ============

class TestConsumption:
    @pytest.mark.asyncio
    async def test_link_works_once(self, signer, store):
        token = signer.sign("f1", "u1", ActionType.DONE, nonce="n1")
        payload = await signer.validate_and_consume(token)
        assert payload["followupId"] == "f1"
        assert (await store.get(ACTION_NONCES_COLLECTION, "n1"))["consumedAt"] == NOW

        with pytest.raises(ActionLinkError, match="already used"):
            await signer.validate_and_consume(token)

    @pytest.mark.asyncio
    async def test_each_link_has_its_own_nonce(self, signer):
        await signer.validate_and_consume(signer.sign("f1", "u1", ActionType.DONE))
        await signer.validate_and_consume(signer.sign("f1", "u1", ActionType.DONE))

    @pytest.mark.asyncio
    async def test_consume_without_store(self, clock):
        signer = ActionLinkSigner(SECRET, None, clock=clock)
        with pytest.raises(StoreNotInitializedError):
            await signer.validate_and_consume(signer.sign("f1", "u1", ActionType.DONE))

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired_nonces(self, signer, store, clock):
        await signer.validate_and_consume(signer.sign("f1", "u1", ActionType.DONE, nonce="old"))
        clock.advance(10 * MINUTE_MS)
        await signer.validate_and_consume(signer.sign("f1", "u1", ActionType.SNOOZE, nonce="new"))
        clock.advance(5 * MINUTE_MS)

        assert await signer.cleanup_expired_nonces() == 1
        assert await store.get(ACTION_NONCES_COLLECTION, "old") is None
        assert await store.get(ACTION_NONCES_COLLECTION, "new") is not None


# ============ Calendar Tests ============

def test_generate_ics():
    followup = Followup(
        id="f1",
        user_id="u1",
        thread_key="thread_1",
        direction=FollowDirection.THEY_OWE,
        due_at=NOW,
        subject="Budget",
        source=FollowupSource(snippet="Could you confirm the budget?"),
    )
    ics = generate_ics(followup, NOW)
    lines = ics.split("\r\n")
    assert lines[0] == "BEGIN:VCALENDAR"
    assert lines[-1] == "END:VCALENDAR"
    assert "UID:followup-f1@velora.cc" in lines
    assert "DTSTART:20231114T221320Z" in lines
    assert "DTEND:20231114T223820Z" in lines
    assert "SUMMARY:Follow-up: Budget" in lines


def unfold(ics):
    return ics.replace("\r\n ", "").split("\r\n")


def test_generate_ics_escapes_text_properties():
    followup = Followup(
        id="f1",
        user_id="u1",
        thread_key="thread_1",
        direction=FollowDirection.THEY_OWE,
        due_at=NOW,
        subject="Q3, budget; review",
        source=FollowupSource(snippet="See C:\\plans\r\nATTENDEE:mailto:evil@x.com"),
    )
    ics = generate_ics(followup, NOW)
    lines = unfold(ics)

    assert "SUMMARY:Follow-up: Q3\\, budget\\; review" in lines
    assert not any(line.startswith("ATTENDEE") for line in lines)
    description = next(line for line in lines if line.startswith("DESCRIPTION:"))
    assert description.endswith('Triggered by: "See C:\\\\plans\\nATTENDEE:mailto:evil@x.com"')
    assert all(len(line) <= 75 for line in ics.split("\r\n"))
