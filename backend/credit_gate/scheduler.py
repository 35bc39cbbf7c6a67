"""
APScheduler wiring for credit gate housekeeping.

SCHEDULE:
  every 60 min → delete expired and revoked refresh tokens
  every 60 s   → drop elapsed rate-limit windows (in-memory backend only;
                 Redis windows expire on their own)
  every 5 min  → write out transaction entries left pending on accounts

STARTUP USAGE:
    from credit_gate.scheduler import setup_scheduler
    scheduler = AsyncIOScheduler()
    setup_scheduler(scheduler, get_ledger_service(), get_token_manager(), get_rate_limiter())
    scheduler.start()
"""

import logging

from apscheduler.triggers.interval import IntervalTrigger

from .config import (
    PENDING_REPAIR_INTERVAL_MINUTES,
    RATE_LIMIT_SWEEP_INTERVAL_SECONDS,
    TOKEN_SWEEP_INTERVAL_MINUTES,
)

logger = logging.getLogger(__name__)


def setup_scheduler(scheduler, ledger, token_manager, rate_limiter) -> None:
    """
    Register housekeeping jobs with the provided APScheduler instance.

    Call this BEFORE scheduler.start().
    """
    scheduler.add_job(
        _make_token_sweep_job(token_manager),
        IntervalTrigger(minutes=TOKEN_SWEEP_INTERVAL_MINUTES),
        id="credit_gate_token_sweep",
        name="Refresh token sweep",
        replace_existing=True,
        misfire_grace_time=300,
    )

    scheduler.add_job(
        _make_rate_limit_sweep_job(rate_limiter),
        IntervalTrigger(seconds=RATE_LIMIT_SWEEP_INTERVAL_SECONDS),
        id="credit_gate_rate_limit_sweep",
        name="Rate limit window sweep",
        replace_existing=True,
        misfire_grace_time=30,
    )

    scheduler.add_job(
        _make_pending_repair_job(ledger),
        IntervalTrigger(minutes=PENDING_REPAIR_INTERVAL_MINUTES),
        id="credit_gate_pending_repair",
        name="Pending transaction repair",
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=120,
    )

    logger.info(
        f"[SCHEDULER] Jobs registered: token sweep every {TOKEN_SWEEP_INTERVAL_MINUTES} min, "
        f"rate-limit sweep every {RATE_LIMIT_SWEEP_INTERVAL_SECONDS}s, "
        f"pending repair every {PENDING_REPAIR_INTERVAL_MINUTES} min"
    )


def _make_token_sweep_job(token_manager):
    async def _job():
        try:
            removed = await token_manager.sweep()
            if removed:
                logger.info(f"[TOKEN_SWEEP] Removed {removed} stale refresh tokens")
        except Exception as e:
            logger.error(f"[TOKEN_SWEEP] Failed: {e}", exc_info=True)

    return _job


def _make_rate_limit_sweep_job(rate_limiter):
    async def _job():
        try:
            removed = await rate_limiter.sweep()
            if removed:
                logger.debug(f"[RATE_LIMIT_SWEEP] Dropped {removed} elapsed windows")
        except Exception as e:
            logger.error(f"[RATE_LIMIT_SWEEP] Failed: {e}", exc_info=True)

    return _job


def _make_pending_repair_job(ledger):
    async def _job():
        try:
            repaired = await ledger.repair_pending()
            if repaired:
                logger.warning(f"[PENDING_REPAIR] Recorded {repaired} transaction entries left pending")
        except Exception as e:
            logger.error(f"[PENDING_REPAIR] Failed: {e}", exc_info=True)

    return _job
