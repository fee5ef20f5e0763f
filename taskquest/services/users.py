"""Player registration."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from taskquest.database.models import User
from taskquest.database.session import get_session

logger = logging.getLogger(__name__)


async def get_or_create_user(user_id: int, username: Optional[str] = None) -> User:
    """
    Get or create a User record by Discord user ID.

    New users start with 0 XP; XP is only ever added through the ledger.

    Args:
        user_id: Discord user ID
        username: Optional username

    Returns:
        User object
    """
    async_session = get_session()
    async with async_session() as session:
        result = await session.execute(
            select(User).where(User.discord_id == user_id)
        )
        user = result.scalars().first()
        if user:
            return user

        user = User(discord_id=user_id, username=username, xp=0)
        session.add(user)
        try:
            await session.commit()
        except IntegrityError:
            # Registered concurrently
            await session.rollback()
            result = await session.execute(
                select(User).where(User.discord_id == user_id)
            )
            return result.scalars().one()

        await session.refresh(user)
        logger.info(f"Registered user {user_id} ({username})")
        return user


async def register_user(user_id: int, username: Optional[str] = None) -> User:
    return await get_or_create_user(user_id, username)
