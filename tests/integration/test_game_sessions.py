"""Integration tests for the game session store."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from helpers import cards
from taskquest.database.models import GameSession
from taskquest.services.errors import ErrorCode
from taskquest.services.game_sessions import GAME_TYPE_BLACKJACK, SessionState
from taskquest.utils import utc_now

USER_ID = 2001


async def test_create_and_fetch_session(store):
    result = await store.create_session(
        USER_ID,
        GAME_TYPE_BLACKJACK,
        20,
        player_hand=cards("10", "7"),
        dealer_hand=cards("9", "5"),
        deck_state=cards("2", "3", "4"),
    )
    assert result.success

    assert await store.has_active_session(USER_ID)
    assert await store.has_active_session(USER_ID, GAME_TYPE_BLACKJACK)
    assert not await store.has_active_session(USER_ID, "slots")

    session = await store.get_active_session(USER_ID, GAME_TYPE_BLACKJACK)
    assert session.id == result.session_id
    assert session.state is SessionState.ACTIVE
    assert session.bet_amount == 20
    assert session.total_bet == 20
    assert session.player_hand == cards("10", "7")
    assert session.dealer_hand == cards("9", "5")
    assert session.deck_state == cards("2", "3", "4")
    assert session.last_action is None


async def test_second_active_session_rejected(store):
    first = await store.create_session(USER_ID, GAME_TYPE_BLACKJACK, 20)
    second = await store.create_session(USER_ID, GAME_TYPE_BLACKJACK, 30)

    assert first.success
    assert not second.success
    assert second.error_code == ErrorCode.SESSION_ALREADY_ACTIVE

    # Another game type is independent
    other = await store.create_session(USER_ID, "slots", 30)
    assert other.success


async def test_concurrent_creates_leave_one_active(store):
    results = await asyncio.gather(*(
        store.create_session(USER_ID, GAME_TYPE_BLACKJACK, 10) for _ in range(4)
    ))

    assert sum(1 for r in results if r.success) == 1
    assert all(r.error_code == ErrorCode.SESSION_ALREADY_ACTIVE for r in results if not r.success)


async def test_unique_index_blocks_direct_insert(store, test_db):
    await store.create_session(USER_ID, GAME_TYPE_BLACKJACK, 10)

    with pytest.raises(IntegrityError):
        async with test_db() as session:
            async with session.begin():
                session.add(GameSession(
                    discord_id=USER_ID,
                    game_type=GAME_TYPE_BLACKJACK,
                    bet_amount=10,
                    state=SessionState.ACTIVE.value,
                ))


async def test_non_positive_bet_rejected(store):
    result = await store.create_session(USER_ID, GAME_TYPE_BLACKJACK, 0)
    assert result.error_code == ErrorCode.INVALID_AMOUNT
    assert not await store.has_active_session(USER_ID)


async def test_end_session_only_once(store):
    created = await store.create_session(USER_ID, GAME_TYPE_BLACKJACK, 20)

    assert await store.end_session(created.session_id, SessionState.WON, 40)
    assert not await store.end_session(created.session_id, SessionState.LOST, 0)

    session = await store.get_session_by_id(created.session_id)
    assert session.state is SessionState.WON
    assert session.payout == 40
    assert session.ended_at is not None

    # Ended sessions free the slot
    assert not await store.has_active_session(USER_ID)
    assert (await store.create_session(USER_ID, GAME_TYPE_BLACKJACK, 20)).success


async def test_end_session_requires_terminal_state(store):
    created = await store.create_session(USER_ID, GAME_TYPE_BLACKJACK, 20)
    with pytest.raises(ValueError):
        await store.end_session(created.session_id, SessionState.ACTIVE)


async def test_update_hand_state(store):
    created = await store.create_session(
        USER_ID, GAME_TYPE_BLACKJACK, 20,
        player_hand=cards("5", "6"), dealer_hand=cards("10", "7"), deck_state=cards("2", "9"),
    )

    updated = await store.update_hand_state(
        created.session_id,
        cards("5", "6", "9"),
        cards("10", "7"),
        cards("2"),
        "double",
        doubled=True,
    )
    assert updated

    session = await store.get_active_session(USER_ID, GAME_TYPE_BLACKJACK)
    assert session.player_hand == cards("5", "6", "9")
    assert session.deck_state == cards("2")
    assert session.last_action == "double"
    assert session.doubled
    assert session.total_bet == 40
    assert session.state is SessionState.ACTIVE

    assert not await store.update_hand_state(99999, [], [], [], None)


async def test_expire_stale_sessions(store):
    created = await store.create_session(USER_ID, GAME_TYPE_BLACKJACK, 20)
    await store.create_session(2002, GAME_TYPE_BLACKJACK, 20)

    # Not stale yet
    assert await store.expire_stale_sessions(now=utc_now() + timedelta(minutes=5)) == 0

    expired = await store.expire_stale_sessions(now=utc_now() + timedelta(minutes=31))
    assert expired == 2

    session = await store.get_session_by_id(created.session_id)
    assert session.state is SessionState.EXPIRED
    assert session.payout == 0
    assert not await store.has_active_session(USER_ID)

    # Already expired sessions are not touched again
    assert await store.expire_stale_sessions(now=utc_now() + timedelta(minutes=60)) == 0


async def test_game_history_and_stats(store):
    outcomes = [
        (SessionState.WON, 40),
        (SessionState.LOST, 0),
        (SessionState.BLACKJACK, 50),
        (SessionState.PUSH, 20),
    ]
    for state, payout in outcomes:
        created = await store.create_session(USER_ID, GAME_TYPE_BLACKJACK, 20)
        await store.end_session(created.session_id, state, payout)
    await store.create_session(USER_ID, GAME_TYPE_BLACKJACK, 20)

    history = await store.get_game_history(USER_ID, GAME_TYPE_BLACKJACK, limit=3)
    assert len(history) == 3
    assert history[0].state is SessionState.ACTIVE
    assert history[1].state is SessionState.PUSH

    stats = await store.get_game_stats(USER_ID)
    assert stats.total_games == 4
    assert stats.wins == 2
    assert stats.losses == 1
    assert stats.pushes == 1
    assert stats.total_winnings == 110
