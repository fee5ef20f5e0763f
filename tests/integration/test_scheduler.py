"""Integration tests for the background jobs."""

from datetime import timedelta

from taskquest.database.models import GameSession
from taskquest.jobs import scheduler as scheduler_module
from taskquest.jobs.scheduler import job_expire_game_sessions, setup_scheduler, shutdown_scheduler
from taskquest.services.game_sessions import GAME_TYPE_BLACKJACK, SessionState
from taskquest.utils import utc_now


async def test_expire_job_sweeps_stale_sessions(test_db):
    async with test_db() as session:
        async with session.begin():
            session.add(GameSession(
                discord_id=1, game_type=GAME_TYPE_BLACKJACK, bet_amount=20,
                state=SessionState.ACTIVE.value, created_at=utc_now() - timedelta(hours=2),
            ))
            session.add(GameSession(
                discord_id=2, game_type=GAME_TYPE_BLACKJACK, bet_amount=20,
                state=SessionState.ACTIVE.value, created_at=utc_now(),
            ))

    assert await job_expire_game_sessions() == 1
    assert await job_expire_game_sessions() == 0


async def test_setup_scheduler_registers_sweep(test_db):
    scheduler = await setup_scheduler()
    try:
        assert scheduler.running
        job = scheduler.get_job("expire_game_sessions")
        assert job is not None
        # Idempotent
        assert await setup_scheduler() is scheduler
    finally:
        await shutdown_scheduler()

    assert scheduler_module._scheduler is None
