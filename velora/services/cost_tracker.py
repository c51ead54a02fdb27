"""
Cost Tracker - per-user, per-day cost accounting for margin monitoring.

Tracks:
- Emails sent (reminders, digests)
- LLM tokens by model tier
- Datastore reads / writes

Every tracking call adds the category amount and the same amount to
totalCostUSD in a single atomic increment, so the total always equals the
sum of the categories. Tracking is best-effort telemetry: failures are
logged and never raised to the operation being instrumented.

Usage:
    tracker = CostTracker(store, CostPricing.from_settings(settings))
    await tracker.track_email("user-1", "reminder")

    # From a correctness-critical path, detach instead of awaiting:
    tracker.track_in_background(tracker.track_llm("user-1", 420, "gpt-5-mini"))
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from typing import Any, Awaitable, Dict, Optional, Set

from velora.clock import Clock, day_key, system_clock
from velora.db.document_store import DocumentStore

logger = logging.getLogger(__name__)

USER_COSTS_COLLECTION = "user_costs"

COST_FIELDS = (
    "emailsSent",
    "emailCostUSD",
    "tokensUsed",
    "llmCostUSD",
    "firestoreReads",
    "firestoreWrites",
    "firestoreCostUSD",
    "totalCostUSD",
)


@dataclass(frozen=True)
class CostPricing:
    """Pricing constants (USD)"""
    email_cost_per_1k: float = 0.50
    llm_cost_per_1k_tokens: Dict[str, float] = field(
        default_factory=lambda: {"gpt-5-mini": 0.001, "gpt-5": 0.005}
    )
    llm_default_cost_per_1k_tokens: float = 0.005
    read_cost_per_100k: float = 0.36
    write_cost_per_100k: float = 1.08
    arpu: float = 15.00
    target_cogs: float = 0.30
    critical_cogs: float = 0.50
    days_per_month: int = 30

    @classmethod
    def from_settings(cls, settings) -> "CostPricing":
        return cls(
            email_cost_per_1k=settings.email_cost_per_1k,
            llm_cost_per_1k_tokens=dict(settings.llm_cost_per_1k_tokens),
            llm_default_cost_per_1k_tokens=settings.llm_default_cost_per_1k_tokens,
            read_cost_per_100k=settings.datastore_read_cost_per_100k,
            write_cost_per_100k=settings.datastore_write_cost_per_100k,
            arpu=settings.pro_arpu,
            target_cogs=settings.target_cogs_percentage,
            critical_cogs=settings.critical_cogs_percentage,
        )

    def llm_cost(self, tokens: int, model: str) -> float:
        per_1k = self.llm_cost_per_1k_tokens.get(model, self.llm_default_cost_per_1k_tokens)
        return tokens * per_1k / 1000

    def datastore_cost(self, reads: int, writes: int) -> float:
        return (reads / 100_000) * self.read_cost_per_100k + (writes / 100_000) * self.write_cost_per_100k


def empty_breakdown(now: int) -> Dict[str, Any]:
    breakdown: Dict[str, Any] = {name: 0 for name in COST_FIELDS}
    breakdown.update({"lastUpdated": now, "period": "day"})
    return breakdown


def classify_projection(cogs_percentage: float, pricing: CostPricing) -> str:
    if cogs_percentage > pricing.critical_cogs:
        return "critical"
    if cogs_percentage > pricing.target_cogs:
        return "warning"
    return "healthy"


class CostTracker:
    """Accumulates per-user daily cost records in the document store"""

    def __init__(
        self,
        store: Optional[DocumentStore],
        pricing: Optional[CostPricing] = None,
        clock: Clock = system_clock,
        tz: tzinfo = timezone.utc,
        radar=None,
    ):
        self.store = store
        self.pricing = pricing or CostPricing()
        self.clock = clock
        self.tz = tz
        # Followup store used for per-followup cost; wired after construction
        self.radar = radar
        self._pending: Set[asyncio.Task] = set()

    def day_key(self) -> str:
        return day_key(self.clock(), self.tz)

    def record_key(self, user_id: str, day: Optional[str] = None) -> str:
        return f"{user_id}_{day or self.day_key()}"

    # ============ Tracking ============

    async def track_email(self, user_id: str, email_type: str = "reminder") -> None:
        cost = self.pricing.email_cost_per_1k / 1000
        await self._increment_cost(
            user_id,
            {"emailsSent": 1, "emailCostUSD": cost},
            cost,
            context=f"email:{email_type}",
        )

    async def track_llm(self, user_id: str, tokens_used: int, model: str) -> None:
        cost = self.pricing.llm_cost(tokens_used, model)
        await self._increment_cost(
            user_id,
            {"tokensUsed": tokens_used, "llmCostUSD": cost},
            cost,
            context=f"llm:{model}",
        )

    async def track_firestore(self, user_id: str, reads: int, writes: int) -> None:
        cost = self.pricing.datastore_cost(reads, writes)
        await self._increment_cost(
            user_id,
            {"firestoreReads": reads, "firestoreWrites": writes, "firestoreCostUSD": cost},
            cost,
            context="datastore",
        )

    async def _increment_cost(
        self, user_id: str, deltas: Dict[str, float], cost: float, context: str
    ) -> None:
        try:
            if self.store is None:
                raise RuntimeError("cost store not initialized")
            now = self.clock()
            day = day_key(now, self.tz)
            # Category and total move together in one write
            await self.store.increment(
                USER_COSTS_COLLECTION,
                self.record_key(user_id, day),
                {**deltas, "totalCostUSD": cost},
                {"userId": user_id, "dayKey": day, "lastUpdated": now, "period": "day"},
            )
        except Exception as e:
            logger.error(f"Cost tracking failed for {user_id} ({context}): {e}")

    def track_in_background(self, tracking: Awaitable[None]) -> asyncio.Task:
        """Run a tracking coroutine detached from the caller."""
        task = asyncio.ensure_future(tracking)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for detached tracking tasks (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ============ Reads ============

    async def get_cost_breakdown(self, user_id: str) -> Dict[str, Any]:
        now = self.clock()
        try:
            if self.store is None:
                return empty_breakdown(now)
            doc = await self.store.get(USER_COSTS_COLLECTION, self.record_key(user_id))
        except Exception as e:
            logger.error(f"Failed to get cost breakdown for {user_id}: {e}")
            return empty_breakdown(now)
        if not doc:
            return empty_breakdown(now)
        breakdown = empty_breakdown(now)
        breakdown.update(doc)
        return breakdown

    async def get_daily_cost(self, user_id: str) -> float:
        breakdown = await self.get_cost_breakdown(user_id)
        return float(breakdown.get("totalCostUSD") or 0)

    async def estimate_monthly_cost(self, user_id: str) -> Dict[str, Any]:
        """Extrapolate today's spend over a month and grade it against ARPU."""
        breakdown = await self.get_cost_breakdown(user_id)
        days = self.pricing.days_per_month
        emails = breakdown["emailCostUSD"] * days
        llm = breakdown["llmCostUSD"] * days
        datastore = breakdown["firestoreCostUSD"] * days
        estimated_total = emails + llm + datastore

        cogs_percentage = estimated_total / self.pricing.arpu if self.pricing.arpu > 0 else 0.0
        return {
            "estimated_cost": estimated_total,
            "breakdown": {"emails": emails, "llm": llm, "firestore": datastore},
            "cogs_percentage": cogs_percentage,
            "projection": classify_projection(cogs_percentage, self.pricing),
            "is_healthy": cogs_percentage <= self.pricing.target_cogs,
        }

    async def get_user_cost_summary(self, user_id: str) -> Dict[str, Any]:
        daily_cost = await self.get_daily_cost(user_id)
        monthly_cost = daily_cost * self.pricing.days_per_month

        active_followups = 0
        if self.radar is not None:
            stats = await self.radar.get_radar_stats(user_id)
            active_followups = stats.overdue_count + stats.today_count + stats.upcoming_count

        avg_cost_per_followup = daily_cost / active_followups if active_followups > 0 else 0.0
        cogs_percentage = monthly_cost / self.pricing.arpu if self.pricing.arpu > 0 else 0.0
        return {
            "user_id": user_id,
            "daily_cost": daily_cost,
            "monthly_cost": monthly_cost,
            "avg_cost_per_followup": avg_cost_per_followup,
            "active_followups": active_followups,
            "arpu": self.pricing.arpu,
            "cogs_percentage": cogs_percentage,
            "is_healthy": cogs_percentage <= self.pricing.target_cogs,
        }

    async def get_platform_metrics(self) -> Dict[str, Any]:
        """Aggregate today's cost records across every user."""
        metrics = {
            "total_users": 0,
            "total_daily_cost": 0.0,
            "avg_cost_per_user": 0.0,
            "total_revenue": 0.0,
            "gross_margin": 0.0,
            "healthy_users_count": 0,
            "unhealthy_users_count": 0,
        }
        try:
            if self.store is None:
                return metrics
            records = await self.store.query(
                USER_COSTS_COLLECTION, [("dayKey", "==", self.day_key())]
            )
        except Exception as e:
            logger.error(f"Failed to aggregate platform cost metrics: {e}")
            return metrics

        days = self.pricing.days_per_month
        for _, record in records:
            daily = float(record.get("totalCostUSD") or 0)
            metrics["total_users"] += 1
            metrics["total_daily_cost"] += daily
            monthly_cogs = (daily * days) / self.pricing.arpu if self.pricing.arpu > 0 else 0.0
            if monthly_cogs <= self.pricing.target_cogs:
                metrics["healthy_users_count"] += 1
            else:
                metrics["unhealthy_users_count"] += 1

        users = metrics["total_users"]
        if users:
            metrics["avg_cost_per_user"] = metrics["total_daily_cost"] / users
            # Monthly revenue against the monthly projection of today's spend
            metrics["total_revenue"] = users * self.pricing.arpu
            monthly_cost = metrics["total_daily_cost"] * days
            metrics["gross_margin"] = (
                (metrics["total_revenue"] - monthly_cost) / metrics["total_revenue"]
            )
        return metrics
