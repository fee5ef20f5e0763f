"""Service entry point: database, startup sweep and the scheduler."""

import asyncio
import logging

from taskquest import __version__
from taskquest.config import settings
from taskquest.database.session import close_db, init_db
from taskquest.jobs.scheduler import job_expire_game_sessions, setup_scheduler, shutdown_scheduler
from taskquest.logger import setup_logging

logger = logging.getLogger(__name__)


async def on_startup() -> None:
    await init_db()
    logger.info("Database initialized")

    # Sessions abandoned while the service was down
    expired = await job_expire_game_sessions()
    logger.info(f"Startup sweep expired {expired} game sessions")

    await setup_scheduler()


async def main():
    logger.info("=" * 60)
    logger.info(f"TASKQUEST {__version__} STARTING")
    logger.info("=" * 60)
    logger.info(f"Database: {settings.database_url}")
    logger.info(f"Log level: {settings.log_level}")

    await on_startup()
    try:
        await asyncio.Event().wait()
    finally:
        logger.info("Shutting down...")
        await shutdown_scheduler()
        await close_db()
        logger.info("Stopped")


if __name__ == "__main__":
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Stopped by user (Ctrl+C)")
