"""
Scheduled Tasks for the Follow-Up Radar

Periodic housekeeping:
1. Rate limit cleanup - delete counters whose window has passed
2. Nonce cleanup - delete consumed action-link nonces past their token expiry

Uses APScheduler for in-process scheduling.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from velora.services.action_links import ActionLinkSigner
from velora.services.rate_limiter import RateLimiter

logger = logging.getLogger("velora.scheduler")


async def run_rate_limit_cleanup(rate_limiter: RateLimiter) -> int:
    logger.info("Starting scheduled rate limit cleanup...")
    try:
        removed = await rate_limiter.cleanup_expired_entries()
    except Exception as e:
        logger.error(f"Rate limit cleanup failed: {e}")
        return 0
    logger.info(f"Rate limit cleanup complete: {removed} counters removed")
    return removed


async def run_nonce_cleanup(signer: ActionLinkSigner) -> int:
    try:
        removed = await signer.cleanup_expired_nonces()
    except Exception as e:
        logger.error(f"Action nonce cleanup failed: {e}")
        return 0
    if removed:
        logger.info(f"Removed {removed} expired action nonces")
    return removed


def setup_scheduler(
    rate_limiter: RateLimiter,
    signer: ActionLinkSigner,
    cleanup_interval_minutes: int = 60,
) -> AsyncIOScheduler:
    """
    Set up the APScheduler with radar housekeeping tasks.

    Args:
        rate_limiter: Limiter whose expired counters are removed
        signer: Action link signer whose consumed nonces are removed
        cleanup_interval_minutes: How often both cleanups run (default: hourly)

    Returns:
        Configured scheduler instance (not started)
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_rate_limit_cleanup,
        trigger=IntervalTrigger(minutes=cleanup_interval_minutes),
        args=[rate_limiter],
        id="rate_limit_cleanup",
        name="Rate Limit Counter Cleanup",
        replace_existing=True,
    )

    scheduler.add_job(
        run_nonce_cleanup,
        trigger=IntervalTrigger(minutes=cleanup_interval_minutes),
        args=[signer],
        id="action_nonce_cleanup",
        name="Action Link Nonce Cleanup",
        replace_existing=True,
    )

    logger.info(f"Scheduler configured: cleanup every {cleanup_interval_minutes}min")
    return scheduler
