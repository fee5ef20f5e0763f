import logging

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from taskquest.config import settings
from taskquest.services.game_sessions import game_session_store

logger = logging.getLogger(__name__)

logging.getLogger("apscheduler").setLevel(logging.WARNING)

_scheduler: AsyncIOScheduler | None = None


async def job_expire_game_sessions() -> int:
    """
    Expire abandoned game sessions.

    Runs every `game_session_sweep_minutes`; escrowed bets stay with the house.
    """
    try:
        expired = await game_session_store.expire_stale_sessions()
    except Exception as e:
        logger.error(f"Game session sweep failed: {e}", exc_info=True)
        return 0
    if expired:
        logger.info(f"Game session sweep: {expired} expired")
    return expired


async def setup_scheduler() -> AsyncIOScheduler:
    global _scheduler
    if _scheduler:
        return _scheduler
    tz = pytz.timezone(settings.timezone)
    _scheduler = AsyncIOScheduler(timezone=tz)
    _scheduler.add_job(
        job_expire_game_sessions,
        IntervalTrigger(minutes=settings.game_session_sweep_minutes),
        id="expire_game_sessions",
    )
    _scheduler.start()
    logger.info(
        f"Scheduler started: session sweep every {settings.game_session_sweep_minutes} min"
    )
    return _scheduler


async def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is None:
        return
    _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("Scheduler stopped")
