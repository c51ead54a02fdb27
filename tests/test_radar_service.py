"""
Tests for the followup store: CRUD, lifecycle, stats, dedup and drafts
"""

import asyncio
from datetime import timezone

import pytest

from velora.clock import DAY_MS, HOUR_MS, MINUTE_MS, FrozenClock, day_bounds, resolve_timezone
from velora.db.document_store import MemoryDocumentStore
from velora.errors import FollowupNotFoundError, StoreNotInitializedError, StoreUnavailableError
from velora.services.cost_tracker import CostTracker
from velora.services.draft_service import DraftGenerator, fallback_draft
from velora.services.llm_service import LLMResponse
from velora.services.radar_models import (
    FollowDirection, Followup, FollowupFilter, FollowupSource, FollowStatus, Timeframe,
)
from velora.services.radar_service import (
    FOLLOWUP_LOCKS_COLLECTION, FOLLOWUPS_COLLECTION, RadarService
)

NOW = 1_700_000_000_000  # 2023-11-14T22:13:20Z
START_OF_DAY, END_OF_DAY = day_bounds(NOW, timezone.utc)


class FailingLLM:
    async def complete(self, system, user, max_tokens=None, json_mode=False):
        raise ConnectionError("LLM unreachable")


class CannedLLM:
    def __init__(self, content):
        self.content = content
        self.calls = 0

    async def complete(self, system, user, max_tokens=None, json_mode=False):
        self.calls += 1
        return LLMResponse(content=self.content, model="gpt-5-mini", tokens_total=120)


def make_followup(user_id="u1", thread_key="thread_abc", due_at=NOW + DAY_MS,
                  direction=FollowDirection.YOU_OWE, **kwargs):
    return Followup(
        user_id=user_id,
        thread_key=thread_key,
        direction=direction,
        due_at=due_at,
        subject=kwargs.pop("subject", "Contract review"),
        source=FollowupSource(message_id="<m1@mail>", snippet="Can you review the contract by Friday?"),
        **kwargs,
    )


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def radar(store, clock):
    return RadarService(store, clock=clock, tz=timezone.utc)


# ============ Create / Read Tests ============

class TestCreateAndRead:
    @pytest.mark.asyncio
    async def test_create_sets_timestamps_and_pending(self, radar):
        followup_id = await radar.create_followup(make_followup(status=FollowStatus.DONE))
        followup = await radar.get_followup(followup_id)
        assert followup.status == FollowStatus.PENDING
        assert followup.created_at == NOW
        assert followup.updated_at == NOW
        assert followup.id == followup_id

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, radar):
        assert await radar.get_followup("missing") is None

    @pytest.mark.asyncio
    async def test_get_followups_orders_by_due_and_defaults_to_open(self, radar):
        late = await radar.create_followup(make_followup(thread_key="t1", due_at=NOW + 3 * DAY_MS))
        early = await radar.create_followup(make_followup(thread_key="t2", due_at=NOW + DAY_MS))
        closed = await radar.create_followup(make_followup(thread_key="t3", due_at=NOW))
        await radar.mark_done(closed)
        await radar.create_followup(make_followup(user_id="u2", thread_key="t4"))

        followups = await radar.get_followups("u1")
        assert [f.id for f in followups] == [early, late]

    @pytest.mark.asyncio
    async def test_filter_by_status_and_direction(self, radar):
        done = await radar.create_followup(make_followup(thread_key="t1"))
        await radar.mark_done(done)
        await radar.create_followup(make_followup(thread_key="t2", direction=FollowDirection.THEY_OWE))

        assert [f.id for f in await radar.get_followups("u1", FollowupFilter(status=FollowStatus.DONE))] == [done]
        they_owe = await radar.get_followups("u1", FollowupFilter(direction=FollowDirection.THEY_OWE))
        assert [f.thread_key for f in they_owe] == ["t2"]

    @pytest.mark.asyncio
    async def test_timeframe_filters(self, radar):
        await radar.create_followup(make_followup(thread_key="overdue", due_at=NOW - MINUTE_MS))
        await radar.create_followup(make_followup(thread_key="later_today", due_at=END_OF_DAY))
        await radar.create_followup(make_followup(thread_key="tomorrow", due_at=END_OF_DAY + 1))

        def keys(followups):
            return {f.thread_key for f in followups}

        assert keys(await radar.get_followups("u1", FollowupFilter(timeframe=Timeframe.OVERDUE))) == {"overdue"}
        # "today" covers the whole local day, including earlier overdue items
        assert keys(await radar.get_followups("u1", FollowupFilter(timeframe=Timeframe.TODAY))) == {
            "overdue", "later_today"
        }
        assert keys(await radar.get_followups("u1", FollowupFilter(timeframe=Timeframe.UPCOMING))) == {"tomorrow"}

    @pytest.mark.asyncio
    async def test_find_by_thread_key_ignores_closed(self, radar):
        followup_id = await radar.create_followup(make_followup())
        assert (await radar.find_by_thread_key("u1", "thread_abc")).id == followup_id
        await radar.cancel_followup(followup_id)
        assert await radar.find_by_thread_key("u1", "thread_abc") is None

    @pytest.mark.asyncio
    async def test_find_by_thread_key_is_per_user(self, radar):
        await radar.create_followup(make_followup(user_id="u2"))
        assert await radar.find_by_thread_key("u1", "thread_abc") is None


# ============ Lifecycle Tests ============

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_mark_done_twice_is_idempotent(self, radar):
        followup_id = await radar.create_followup(make_followup())
        await radar.mark_done(followup_id)
        await radar.mark_done(followup_id)
        assert (await radar.get_followup(followup_id)).status == FollowStatus.DONE

    @pytest.mark.asyncio
    async def test_snooze_moves_due_date(self, radar):
        followup_id = await radar.create_followup(make_followup())
        until = NOW + 2 * HOUR_MS
        await radar.snooze_followup(followup_id, until)
        followup = await radar.get_followup(followup_id)
        assert followup.status == FollowStatus.SNOOZED
        assert followup.snooze_until == until
        assert followup.due_at == until

    @pytest.mark.asyncio
    async def test_snooze_again_updates_both_fields(self, radar):
        followup_id = await radar.create_followup(make_followup())
        await radar.snooze_followup(followup_id, NOW + HOUR_MS)
        await radar.snooze_followup(followup_id, NOW + 3 * HOUR_MS)
        followup = await radar.get_followup(followup_id)
        assert followup.status == FollowStatus.SNOOZED
        assert followup.due_at == followup.snooze_until == NOW + 3 * HOUR_MS

    @pytest.mark.asyncio
    async def test_snoozed_followup_stays_open_after_due(self, radar, clock):
        followup_id = await radar.create_followup(make_followup())
        await radar.snooze_followup(followup_id, NOW + HOUR_MS)
        clock.advance(2 * HOUR_MS)
        followups = await radar.get_followups("u1")
        assert [f.status for f in followups] == [FollowStatus.SNOOZED]
        assert (await radar.get_radar_stats("u1")).overdue_count == 1

    @pytest.mark.asyncio
    async def test_snooze_today_appears_in_today_timeframe(self, radar):
        followup_id = await radar.create_followup(make_followup(due_at=NOW + 5 * DAY_MS))
        t = NOW + 30 * MINUTE_MS
        assert t <= END_OF_DAY
        await radar.snooze_followup(followup_id, t)
        today = await radar.get_followups("u1", FollowupFilter(timeframe=Timeframe.TODAY))
        assert [(f.id, f.due_at) for f in today] == [(followup_id, t)]

    @pytest.mark.asyncio
    async def test_update_bumps_updated_at(self, radar, clock):
        followup_id = await radar.create_followup(make_followup())
        clock.advance(MINUTE_MS)
        await radar.update_followup(followup_id, {"subject": "Renamed"})
        followup = await radar.get_followup(followup_id)
        assert followup.subject == "Renamed"
        assert followup.updated_at == NOW + MINUTE_MS
        assert followup.created_at == NOW

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, radar):
        followup_id = await radar.create_followup(make_followup())
        with pytest.raises(ValueError):
            await radar.update_followup(followup_id, {"userId": "someone-else"})

    @pytest.mark.asyncio
    async def test_mutating_missing_followup_raises(self, radar):
        with pytest.raises(FollowupNotFoundError):
            await radar.mark_done("missing")
        with pytest.raises(FollowupNotFoundError):
            await radar.snooze_followup("missing", NOW)
        with pytest.raises(FollowupNotFoundError):
            await radar.delete_followup("missing")

    @pytest.mark.asyncio
    async def test_delete_ignores_status(self, radar):
        followup_id = await radar.create_followup(make_followup())
        await radar.mark_done(followup_id)
        await radar.delete_followup(followup_id)
        assert await radar.get_followup(followup_id) is None


# ============ Stats Tests ============

class TestStats:
    @pytest.mark.asyncio
    async def test_overdue_followup_counted(self, radar):
        await radar.create_followup(make_followup(due_at=NOW - 1000))
        stats = await radar.get_radar_stats("u1")
        assert stats.overdue_count == 1
        assert stats.today_count == 0

    @pytest.mark.asyncio
    async def test_buckets_partition_open_set(self, radar):
        dues = [NOW - DAY_MS, NOW - 1, NOW, END_OF_DAY, END_OF_DAY + 1, NOW + 10 * DAY_MS]
        ids = []
        for i, due in enumerate(dues):
            direction = FollowDirection.YOU_OWE if i % 2 else FollowDirection.THEY_OWE
            ids.append(await radar.create_followup(
                make_followup(thread_key=f"t{i}", due_at=due, direction=direction)
            ))
        await radar.snooze_followup(ids[0], NOW - HOUR_MS)
        closed = await radar.create_followup(make_followup(thread_key="closed", due_at=NOW - DAY_MS))
        await radar.cancel_followup(closed)

        stats = await radar.get_radar_stats("u1")
        open_count = len(await radar.get_followups("u1"))
        assert open_count == 6
        assert stats.overdue_count + stats.today_count + stats.upcoming_count == open_count
        assert (stats.overdue_count, stats.today_count, stats.upcoming_count) == (2, 2, 2)
        assert stats.you_owe_count + stats.they_owe_count == open_count
        assert stats.to_dict()["overdueCount"] == 2

    @pytest.mark.asyncio
    async def test_today_uses_local_timezone(self, store, clock):
        # 04:13 UTC tomorrow is still 20:13 today in Los Angeles
        radar = RadarService(store, clock=clock, tz=resolve_timezone("America/Los_Angeles"))
        await radar.create_followup(make_followup(due_at=NOW + 6 * HOUR_MS))
        stats = await radar.get_radar_stats("u1")
        assert stats.today_count == 1

    @pytest.mark.asyncio
    async def test_stats_degrade_to_zero_on_read_failure(self, radar, store):
        await radar.create_followup(make_followup())
        store.fail_with = StoreUnavailableError("down")
        stats = await radar.get_radar_stats("u1")
        assert stats.to_dict() == {
            "overdueCount": 0, "todayCount": 0, "upcomingCount": 0,
            "youOweCount": 0, "theyOweCount": 0,
        }


# ============ Failure Policy Tests ============

class TestFailurePolicy:
    @pytest.mark.asyncio
    async def test_uninitialized_store_mutations_raise(self, clock):
        radar = RadarService(None, clock=clock)
        with pytest.raises(StoreNotInitializedError):
            await radar.create_followup(make_followup())
        with pytest.raises(StoreNotInitializedError):
            await radar.update_followup("x", {"subject": "y"})
        with pytest.raises(StoreNotInitializedError):
            await radar.delete_followup("x")
        with pytest.raises(StoreNotInitializedError):
            await radar.create_followup_if_absent(make_followup())

    @pytest.mark.asyncio
    async def test_uninitialized_store_reads_degrade(self, clock):
        radar = RadarService(None, clock=clock)
        assert await radar.get_followups("u1") == []
        assert await radar.get_followup("x") is None
        assert await radar.find_by_thread_key("u1", "t") is None
        assert (await radar.get_radar_stats("u1")).overdue_count == 0

    @pytest.mark.asyncio
    async def test_remote_failure_propagates(self, radar, store):
        store.fail_with = StoreUnavailableError("down")
        with pytest.raises(StoreUnavailableError):
            await radar.create_followup(make_followup())
        with pytest.raises(StoreUnavailableError):
            await radar.get_followups("u1")


# ============ Dedup Tests ============

class TestCreateIfAbsent:
    @pytest.mark.asyncio
    async def test_second_create_returns_existing(self, radar):
        first_id, created = await radar.create_followup_if_absent(make_followup())
        second_id, created_again = await radar.create_followup_if_absent(make_followup())
        assert created is True
        assert created_again is False
        assert second_id == first_id
        assert len(await radar.get_followups("u1")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_produce_one_open_followup(self, radar):
        results = await asyncio.gather(*(
            radar.create_followup_if_absent(make_followup()) for _ in range(10)
        ))
        assert sum(1 for _, created in results if created) == 1
        assert len({followup_id for followup_id, _ in results}) == 1
        assert len(await radar.get_followups("u1")) == 1

    @pytest.mark.asyncio
    async def test_closing_releases_claim(self, radar, store):
        first_id, _ = await radar.create_followup_if_absent(make_followup())
        await radar.mark_done(first_id)
        assert await store.get(FOLLOWUP_LOCKS_COLLECTION, "u1:thread_abc") is None
        second_id, created = await radar.create_followup_if_absent(make_followup())
        assert created is True
        assert second_id != first_id

    @pytest.mark.asyncio
    async def test_delete_releases_claim(self, radar):
        first_id, _ = await radar.create_followup_if_absent(make_followup())
        await radar.delete_followup(first_id)
        _, created = await radar.create_followup_if_absent(make_followup())
        assert created is True

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(self, radar, store, clock):
        await store.create(FOLLOWUP_LOCKS_COLLECTION, "u1:thread_abc", {
            "userId": "u1", "threadKey": "thread_abc", "followupId": "gone", "claimedAt": NOW,
        })
        clock.advance(RadarService.CLAIM_GRACE_MS)
        followup_id, created = await radar.create_followup_if_absent(make_followup())
        assert created is True
        claim = await store.get(FOLLOWUP_LOCKS_COLLECTION, "u1:thread_abc")
        assert claim["followupId"] == followup_id

    @pytest.mark.asyncio
    async def test_claim_points_at_unclaimed_open_record(self, radar):
        legacy_id = await radar.create_followup(make_followup())
        followup_id, created = await radar.create_followup_if_absent(make_followup())
        assert created is False
        assert followup_id == legacy_id

    @pytest.mark.asyncio
    async def test_same_thread_different_users(self, radar):
        _, created_u1 = await radar.create_followup_if_absent(make_followup(user_id="u1"))
        _, created_u2 = await radar.create_followup_if_absent(make_followup(user_id="u2"))
        assert created_u1 and created_u2


# ============ Draft Tests ============

class TestDrafts:
    @pytest.mark.asyncio
    async def test_llm_failure_stores_fallback(self, store, clock):
        radar = RadarService(store, drafts=DraftGenerator(FailingLLM()), clock=clock)
        followup_id = await radar.create_followup(make_followup())
        draft = await radar.generate_draft(followup_id, "polite")

        followup = await radar.get_followup(followup_id)
        assert draft == fallback_draft(followup)
        assert followup.draft == draft
        assert followup.draft.startswith('Just following up on "Can you review the contract by Friday?')
        assert followup.draft_generated_at == NOW

    @pytest.mark.asyncio
    async def test_they_owe_fallback_mentions_subject(self, store, clock):
        radar = RadarService(store, drafts=DraftGenerator(FailingLLM()), clock=clock)
        followup_id = await radar.create_followup(make_followup(direction=FollowDirection.THEY_OWE))
        draft = await radar.generate_draft(followup_id)
        assert draft == (
            'Following up on my previous email about "Contract review" - would love to '
            "hear your thoughts when you have a moment."
        )

    @pytest.mark.asyncio
    async def test_drafts_generated_increments_from_zero(self, store, clock):
        radar = RadarService(store, drafts=DraftGenerator(CannedLLM("Any update on this?")), clock=clock)
        followup_id = await radar.create_followup(make_followup())
        await radar.generate_draft(followup_id)
        await radar.generate_draft(followup_id)
        followup = await radar.get_followup(followup_id)
        assert followup.analytics.drafts_generated == 2
        assert followup.analytics.last_draft_at == NOW
        assert followup.draft == "Any update on this?"

    @pytest.mark.asyncio
    async def test_draft_tokens_tracked_in_background(self, store, clock):
        tracker = CostTracker(store, clock=clock)
        radar = RadarService(
            store, drafts=DraftGenerator(CannedLLM("Any update?")), cost_tracker=tracker, clock=clock
        )
        followup_id = await radar.create_followup(make_followup())
        await radar.generate_draft(followup_id)
        await tracker.drain()
        breakdown = await tracker.get_cost_breakdown("u1")
        assert breakdown["tokensUsed"] == 120
        assert breakdown["firestoreWrites"] >= 1
        assert breakdown["totalCostUSD"] == pytest.approx(
            breakdown["emailCostUSD"] + breakdown["llmCostUSD"] + breakdown["firestoreCostUSD"]
        )

    @pytest.mark.asyncio
    async def test_draft_for_missing_followup(self, radar):
        with pytest.raises(FollowupNotFoundError):
            await radar.generate_draft("missing")

    @pytest.mark.asyncio
    async def test_cost_tracking_failure_does_not_break_crud(self, clock):
        store = MemoryDocumentStore()
        tracker = CostTracker(MemoryDocumentStore(), clock=clock)
        tracker.store.fail_with = StoreUnavailableError("telemetry down")
        radar = RadarService(store, cost_tracker=tracker, clock=clock)
        followup_id = await radar.create_followup(make_followup())
        await tracker.drain()
        assert (await radar.get_followup(followup_id)) is not None
        assert (await store.get(FOLLOWUPS_COLLECTION, followup_id))["status"] == "PENDING"
