"""
Follow-Up Radar Service - followup CRUD, lifecycle transitions and stats.

Lifecycle:
    PENDING --snooze--> SNOOZED (dueAt/snoozeUntil moved; re-snoozing updates both)
    PENDING|SNOOZED --markDone--> DONE       (terminal)
    PENDING|SNOOZED --cancel-->   CANCELLED  (terminal)
    any --delete--> removed (hard delete, ignores status)

Nothing moves SNOOZED back to PENDING; a snoozed followup simply becomes due
again at its new dueAt and stays in the open set.

At most one open followup may exist per (userId, threadKey).
create_followup_if_absent enforces this with an insert-only claim document;
plain create_followup leaves the dedup check to the caller.

Failure policy: mutations raise when the store is missing or failing; reads
degrade to empty results only when the store is missing.
"""

import logging
import uuid
from datetime import timezone, tzinfo
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from velora.clock import Clock, day_bounds, system_clock
from velora.db.document_store import DocumentStore
from velora.errors import (
    DocumentExistsError, DocumentNotFoundError, FollowupNotFoundError, StoreNotInitializedError
)
from velora.services.draft_service import DraftGenerator
from velora.services.radar_models import (
    OPEN_STATUSES, UPDATABLE_FIELDS, DraftTone, FollowDirection, Followup, FollowupAnalytics,
    FollowupFilter, FollowStatus, RadarStats, Timeframe,
)

logger = logging.getLogger(__name__)

FOLLOWUPS_COLLECTION = "followups"
FOLLOWUP_LOCKS_COLLECTION = "followup_locks"


def _storable(value: Any) -> Any:
    return value.value if isinstance(value, (FollowStatus, FollowDirection)) else value


class RadarService:
    """Followup store over the document store"""

    # A claim whose followup has not appeared after this long is abandoned
    CLAIM_GRACE_MS = 60 * 1000

    def __init__(
        self,
        store: Optional[DocumentStore],
        drafts: Optional[DraftGenerator] = None,
        cost_tracker=None,
        clock: Clock = system_clock,
        tz: tzinfo = timezone.utc,
    ):
        self.store = store
        self.drafts = drafts or DraftGenerator(None)
        self.cost_tracker = cost_tracker
        self.clock = clock
        self.tz = tz

    def _require_store(self) -> DocumentStore:
        if self.store is None:
            raise StoreNotInitializedError()
        return self.store

    def _track_datastore(self, user_id: str, reads: int = 0, writes: int = 0) -> None:
        if self.cost_tracker is not None and (reads or writes):
            self.cost_tracker.track_in_background(
                self.cost_tracker.track_firestore(user_id, reads, writes)
            )

    @staticmethod
    def claim_key(user_id: str, thread_key: str) -> str:
        return f"{user_id}:{thread_key}"

    # ============ Create ============

    async def create_followup(self, followup: Followup, followup_id: Optional[str] = None) -> str:
        """Insert a new PENDING followup. Does not check for duplicates."""
        store = self._require_store()
        now = self.clock()
        doc = followup.to_document()
        doc.update({"status": FollowStatus.PENDING.value, "createdAt": now, "updatedAt": now})
        try:
            if followup_id is None:
                followup_id = await store.add(FOLLOWUPS_COLLECTION, doc)
            else:
                await store.create(FOLLOWUPS_COLLECTION, followup_id, doc)
        except Exception as e:
            logger.error(f"Error creating followup for {followup.user_id}: {e}")
            raise
        self._track_datastore(followup.user_id, writes=1)
        logger.info(f"Created followup {followup_id} for user {followup.user_id}")
        return followup_id

    async def create_followup_if_absent(
        self,
        followup: Followup,
        admit: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> Tuple[str, bool]:
        """
        Create unless an open followup already exists for (userId, threadKey).

        Returns (followup_id, created). The insert-only claim makes the
        check and the create a single atomic decision.

        `admit` runs only once the thread is known to have no open followup,
        right before the insert. Anything it raises releases the claim and
        propagates, so a rate-limit check there never charges duplicates.
        """
        store = self._require_store()
        claim_key = self.claim_key(followup.user_id, followup.thread_key)

        for _ in range(3):
            now = self.clock()
            followup_id = uuid.uuid4().hex
            try:
                await store.create(FOLLOWUP_LOCKS_COLLECTION, claim_key, {
                    "userId": followup.user_id,
                    "threadKey": followup.thread_key,
                    "followupId": followup_id,
                    "claimedAt": now,
                })
            except DocumentExistsError:
                claim = await store.get(FOLLOWUP_LOCKS_COLLECTION, claim_key)
                holder = await self._live_claim_holder(claim, now)
                if holder is not None:
                    logger.info(f"Followup already open for thread {followup.thread_key}: {holder}")
                    return holder, False
                if claim is not None:
                    logger.info(f"Taking over stale claim {claim_key}")
                    await store.delete(FOLLOWUP_LOCKS_COLLECTION, claim_key)
                continue

            try:
                # Records created without a claim still count as open duplicates
                existing = await self.find_by_thread_key(followup.user_id, followup.thread_key)
                if existing is not None:
                    await store.put(
                        FOLLOWUP_LOCKS_COLLECTION, claim_key, {"followupId": existing.id}, merge=True
                    )
                    return existing.id, False
                if admit is not None:
                    await admit()
                return await self.create_followup(followup, followup_id), True
            except Exception:
                await store.delete(FOLLOWUP_LOCKS_COLLECTION, claim_key)
                raise

        raise DocumentExistsError(FOLLOWUP_LOCKS_COLLECTION, claim_key)

    async def _live_claim_holder(self, claim: Optional[Dict[str, Any]], now: int) -> Optional[str]:
        """Id of the open followup a claim points at, or None if the claim is stale."""
        if claim is None:
            return None
        followup_id = claim.get("followupId")
        followup = await self.get_followup(followup_id) if followup_id else None
        if followup is None:
            # The claimant may still be writing the followup
            if followup_id and now - (claim.get("claimedAt") or 0) < self.CLAIM_GRACE_MS:
                return followup_id
            return None
        return followup.id if followup.is_open else None

    async def _release_claim(self, followup: Followup) -> None:
        claim_key = self.claim_key(followup.user_id, followup.thread_key)
        try:
            claim = await self.store.get(FOLLOWUP_LOCKS_COLLECTION, claim_key)
            if claim is not None and claim.get("followupId") == followup.id:
                await self.store.delete(FOLLOWUP_LOCKS_COLLECTION, claim_key)
        except Exception as e:
            # A leftover claim is detected as stale on the next create
            logger.warning(f"Could not release claim {claim_key}: {e}")

    # ============ Read ============

    async def get_followups(
        self, user_id: str, filter: Optional[FollowupFilter] = None
    ) -> List[Followup]:
        """Followups for a user ordered by dueAt; open ones unless a status is given."""
        if self.store is None:
            return []
        filter = filter or FollowupFilter()

        filters = [("userId", "==", user_id)]
        if filter.direction:
            filters.append(("direction", "==", FollowDirection(filter.direction).value))
        if filter.status:
            filters.append(("status", "==", FollowStatus(filter.status).value))
        else:
            filters.append(("status", "in", list(OPEN_STATUSES)))

        try:
            snapshots = await self.store.query(FOLLOWUPS_COLLECTION, filters, order_by="dueAt")
        except Exception as e:
            logger.error(f"Error fetching followups for {user_id}: {e}")
            raise
        self._track_datastore(user_id, reads=max(1, len(snapshots)))

        followups = [Followup.from_document(key, doc) for key, doc in snapshots]
        if filter.timeframe:
            followups = self.filter_by_timeframe(followups, Timeframe(filter.timeframe))
        return followups

    def filter_by_timeframe(self, followups: List[Followup], timeframe: Timeframe) -> List[Followup]:
        now = self.clock()
        start_of_today, end_of_today = day_bounds(now, self.tz)
        if timeframe == Timeframe.OVERDUE:
            return [f for f in followups if f.due_at < now]
        if timeframe == Timeframe.TODAY:
            return [f for f in followups if start_of_today <= f.due_at <= end_of_today]
        if timeframe == Timeframe.UPCOMING:
            return [f for f in followups if f.due_at > end_of_today]
        return followups

    async def get_followup(self, followup_id: str) -> Optional[Followup]:
        if self.store is None:
            return None
        try:
            doc = await self.store.get(FOLLOWUPS_COLLECTION, followup_id)
        except Exception as e:
            logger.error(f"Error fetching followup {followup_id}: {e}")
            raise
        if doc is None:
            return None
        followup = Followup.from_document(followup_id, doc)
        self._track_datastore(followup.user_id, reads=1)
        return followup

    async def find_by_thread_key(self, user_id: str, thread_key: str) -> Optional[Followup]:
        """The open followup for a thread, if any (dedup lookup)."""
        if self.store is None:
            return None
        try:
            snapshots = await self.store.query(
                FOLLOWUPS_COLLECTION,
                [
                    ("userId", "==", user_id),
                    ("threadKey", "==", thread_key),
                    ("status", "in", list(OPEN_STATUSES)),
                ],
                limit=1,
            )
        except Exception as e:
            logger.error(f"Error finding followup by thread key {thread_key}: {e}")
            raise
        self._track_datastore(user_id, reads=1)
        if not snapshots:
            return None
        key, doc = snapshots[0]
        return Followup.from_document(key, doc)

    async def get_radar_stats(self, user_id: str) -> RadarStats:
        """
        Counts over the open set from a single fetch.

        overdue: dueAt < now; today: now <= dueAt <= end of local day;
        upcoming: dueAt after today. The three buckets partition the open set.
        """
        try:
            followups = await self.get_followups(user_id)
        except Exception as e:
            logger.error(f"Error calculating radar stats for {user_id}: {e}")
            return RadarStats()

        now = self.clock()
        _, end_of_today = day_bounds(now, self.tz)
        stats = RadarStats()
        for followup in followups:
            if followup.due_at < now:
                stats.overdue_count += 1
            elif followup.due_at <= end_of_today:
                stats.today_count += 1
            else:
                stats.upcoming_count += 1
            if followup.direction == FollowDirection.YOU_OWE:
                stats.you_owe_count += 1
            else:
                stats.they_owe_count += 1
        return stats

    # ============ Update ============

    async def update_followup(self, followup_id: str, updates: Dict[str, Any]) -> None:
        """Merge fields into a followup (storage field names) and bump updatedAt."""
        store = self._require_store()
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update followup fields: {sorted(unknown)}")

        fields = {name: _storable(value) for name, value in updates.items()}
        fields["updatedAt"] = self.clock()

        closing = "status" in fields and fields["status"] not in OPEN_STATUSES
        current = await self.get_followup(followup_id) if closing else None

        try:
            await store.update(FOLLOWUPS_COLLECTION, followup_id, fields)
        except DocumentNotFoundError as e:
            raise FollowupNotFoundError(followup_id) from e
        except Exception as e:
            logger.error(f"Error updating followup {followup_id}: {e}")
            raise

        if current is not None:
            self._track_datastore(current.user_id, writes=1)
            if current.is_open:
                await self._release_claim(current)

    async def mark_done(self, followup_id: str) -> None:
        await self.update_followup(followup_id, {"status": FollowStatus.DONE})

    async def snooze_followup(self, followup_id: str, until: int) -> None:
        """Snooze until `until`; snoozing also moves the due time."""
        await self.update_followup(followup_id, {
            "status": FollowStatus.SNOOZED,
            "snoozeUntil": until,
            "dueAt": until,
        })

    async def cancel_followup(self, followup_id: str) -> None:
        await self.update_followup(followup_id, {"status": FollowStatus.CANCELLED})

    async def delete_followup(self, followup_id: str) -> None:
        """Hard delete, regardless of status."""
        store = self._require_store()
        current = await self.get_followup(followup_id)
        if current is None:
            raise FollowupNotFoundError(followup_id)
        try:
            await store.delete(FOLLOWUPS_COLLECTION, followup_id)
        except Exception as e:
            logger.error(f"Error deleting followup {followup_id}: {e}")
            raise
        self._track_datastore(current.user_id, writes=1)
        await self._release_claim(current)

    # ============ Drafts ============

    async def generate_draft(self, followup_id: str, tone=DraftTone.POLITE) -> str:
        """Generate, persist and return a reply draft. LLM failures use a template."""
        followup = await self.get_followup(followup_id)
        if followup is None:
            raise FollowupNotFoundError(followup_id)

        result = await self.drafts.generate(followup, tone)
        now = self.clock()

        previous = followup.analytics or FollowupAnalytics()
        analytics = FollowupAnalytics(
            drafts_generated=(previous.drafts_generated or 0) + 1,
            last_draft_at=now,
            last_reminder_at=previous.last_reminder_at,
        )
        await self.update_followup(followup_id, {
            "draft": result.text,
            "draftGeneratedAt": now,
            "analytics": analytics.to_document(),
        })

        if self.cost_tracker is not None and result.tokens_used:
            self.cost_tracker.track_in_background(
                self.cost_tracker.track_llm(followup.user_id, result.tokens_used, result.model or "")
            )
        logger.info(
            f"Generated draft for followup {followup_id} "
            f"({'template' if result.used_fallback else result.model})"
        )
        return result.text

