"""Game session store.

Durable record of active and finished games. Enforces at most one active
session per (user, game type) and keeps the blackjack hand state needed to
resume a game after a restart.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Sequence

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskquest.config import settings
from taskquest.database.models import BlackjackHand, GameSession
from taskquest.database.session import get_session
from taskquest.services.deck import Card, calculate_hand_value, cards_from_json, cards_to_json
from taskquest.services.errors import ErrorCode
from taskquest.utils import utc_now

logger = logging.getLogger(__name__)

GAME_TYPE_BLACKJACK = "blackjack"


class SessionState(str, Enum):
    """Lifecycle state of a game session."""
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    PUSH = "push"
    BLACKJACK = "blackjack"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionState.ACTIVE


@dataclass
class GameSessionData:
    """A game session with its hand state, detached from the database."""
    id: int
    user_id: int
    game_type: str
    bet_amount: int
    state: SessionState
    payout: int
    created_at: datetime
    ended_at: Optional[datetime] = None
    doubled: bool = False
    player_hand: List[Card] = field(default_factory=list)
    dealer_hand: List[Card] = field(default_factory=list)
    deck_state: List[Card] = field(default_factory=list)
    last_action: Optional[str] = None

    @property
    def total_bet(self) -> int:
        """Effective stake: twice the bet after a double down."""
        return self.bet_amount * 2 if self.doubled else self.bet_amount

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @classmethod
    def from_row(cls, row: GameSession) -> "GameSessionData":
        hand = row.hand
        return cls(
            id=row.id,
            user_id=row.discord_id,
            game_type=row.game_type,
            bet_amount=row.bet_amount,
            state=SessionState(row.state),
            payout=row.payout or 0,
            created_at=row.created_at,
            ended_at=row.ended_at,
            doubled=bool(row.doubled),
            player_hand=cards_from_json(hand.player_hand) if hand else [],
            dealer_hand=cards_from_json(hand.dealer_hand) if hand else [],
            deck_state=cards_from_json(hand.deck_state) if hand else [],
            last_action=hand.last_action if hand else None,
        )


@dataclass
class SessionResult:
    """Result of creating a session."""
    success: bool
    message: str
    session_id: Optional[int] = None
    error_code: Optional[ErrorCode] = None


@dataclass
class GameStats:
    """Totals over finished (not active, not cancelled) games."""
    total_games: int = 0
    wins: int = 0
    losses: int = 0
    pushes: int = 0
    total_winnings: int = 0


class GameSessionStore:
    """Persists game sessions in the `game_sessions` / `blackjack_hands` tables."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        timeout_minutes: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.timeout_minutes = (
            settings.game_session_timeout_minutes if timeout_minutes is None else timeout_minutes
        )

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session()

    async def has_active_session(self, user_id: int, game_type: Optional[str] = None) -> bool:
        """Check if the user has an active session (of the given type, if any)."""
        query = select(GameSession.id).where(
            GameSession.discord_id == user_id,
            GameSession.state == SessionState.ACTIVE.value,
        )
        if game_type:
            query = query.where(GameSession.game_type == game_type)

        async with self._sessions()() as session:
            result = await session.execute(query.limit(1))
            return result.scalar_one_or_none() is not None

    async def get_active_session(self, user_id: int, game_type: str) -> Optional[GameSessionData]:
        """Return the active session with its hand state, or None."""
        async with self._sessions()() as session:
            result = await session.execute(
                select(GameSession)
                .where(
                    GameSession.discord_id == user_id,
                    GameSession.game_type == game_type,
                    GameSession.state == SessionState.ACTIVE.value,
                )
                .order_by(GameSession.created_at.desc())
                .limit(1)
            )
            row = result.scalars().first()
            return GameSessionData.from_row(row) if row else None

    async def get_session_by_id(self, session_id: int) -> Optional[GameSessionData]:
        async with self._sessions()() as session:
            row = await session.get(GameSession, session_id)
            return GameSessionData.from_row(row) if row else None

    async def create_session(
        self,
        user_id: int,
        game_type: str,
        bet_amount: int,
        player_hand: Optional[Sequence[Card]] = None,
        dealer_hand: Optional[Sequence[Card]] = None,
        deck_state: Optional[Sequence[Card]] = None,
    ) -> SessionResult:
        """
        Create a new active session.

        Fails with SESSION_ALREADY_ACTIVE if the user already has an active
        session of this type. When hands are given, the hand record is
        written in the same transaction so the session is resumable from
        the moment it exists.

        Args:
            user_id: Discord user ID
            game_type: Type of game, e.g. 'blackjack'
            bet_amount: Escrowed bet (> 0)
            player_hand: Optional initial player cards
            dealer_hand: Optional initial dealer cards
            deck_state: Optional remaining deck

        Returns:
            SessionResult with the new session id
        """
        if bet_amount <= 0:
            return SessionResult(
                success=False,
                message="Bet must be positive",
                error_code=ErrorCode.INVALID_AMOUNT,
            )

        if await self.has_active_session(user_id, game_type):
            logger.warning(f"User {user_id} already has an active {game_type} session")
            return SessionResult(
                success=False,
                message="Already have an active game",
                error_code=ErrorCode.SESSION_ALREADY_ACTIVE,
            )

        try:
            async with self._sessions()() as session:
                async with session.begin():
                    row = GameSession(
                        discord_id=user_id,
                        game_type=game_type,
                        bet_amount=bet_amount,
                        state=SessionState.ACTIVE.value,
                        payout=0,
                        doubled=False,
                    )
                    session.add(row)
                    await session.flush()

                    if player_hand is not None or dealer_hand is not None:
                        session.add(self._hand_row(
                            row.id, player_hand or [], dealer_hand or [], deck_state or [], None,
                            dealer_visible_only=True,
                        ))
                    session_id = row.id
        except IntegrityError:
            # Lost the race against a concurrent create
            logger.warning(f"Concurrent {game_type} session creation for user {user_id}")
            return SessionResult(
                success=False,
                message="Already have an active game",
                error_code=ErrorCode.SESSION_ALREADY_ACTIVE,
            )

        logger.info(f"Created {game_type} session {session_id} for user {user_id} (bet={bet_amount})")
        return SessionResult(success=True, message="Session created", session_id=session_id)

    @staticmethod
    def _hand_row(
        session_id: int,
        player_hand: Sequence[Card],
        dealer_hand: Sequence[Card],
        deck_state: Sequence[Card],
        last_action: Optional[str],
        dealer_visible_only: bool = False,
    ) -> BlackjackHand:
        # Before the dealer plays only the up card is shown
        visible_dealer = dealer_hand[:1] if dealer_visible_only else dealer_hand
        return BlackjackHand(
            session_id=session_id,
            player_hand=cards_to_json(player_hand),
            dealer_hand=cards_to_json(dealer_hand),
            deck_state=cards_to_json(deck_state),
            player_value=calculate_hand_value(player_hand).value,
            dealer_value=calculate_hand_value(visible_dealer).value,
            last_action=last_action,
        )

    async def update_hand_state(
        self,
        session_id: int,
        player_hand: Sequence[Card],
        dealer_hand: Sequence[Card],
        deck_state: Sequence[Card],
        last_action: Optional[str],
        doubled: Optional[bool] = None,
        session: Optional[AsyncSession] = None,
    ) -> bool:
        """
        Overwrite the hand fields of a session. Does not change `state`.

        Args:
            session: Optional open transaction to run in (no commit is issued)

        Returns:
            False if the session does not exist
        """
        hand = (player_hand, dealer_hand, deck_state, last_action, doubled)
        if session is not None:
            return await self._write_hand(session, session_id, *hand)

        async with self._sessions()() as own_session:
            async with own_session.begin():
                return await self._write_hand(own_session, session_id, *hand)

    async def _write_hand(
        self,
        session: AsyncSession,
        session_id: int,
        player_hand: Sequence[Card],
        dealer_hand: Sequence[Card],
        deck_state: Sequence[Card],
        last_action: Optional[str],
        doubled: Optional[bool],
    ) -> bool:
        row = await session.get(GameSession, session_id)
        if row is None:
            logger.warning(f"No game session {session_id} to update")
            return False

        new_hand = self._hand_row(session_id, player_hand, dealer_hand, deck_state, last_action)
        if row.hand is None:
            session.add(new_hand)
        else:
            row.hand.player_hand = new_hand.player_hand
            row.hand.dealer_hand = new_hand.dealer_hand
            row.hand.deck_state = new_hand.deck_state
            row.hand.player_value = new_hand.player_value
            row.hand.dealer_value = new_hand.dealer_value
            row.hand.last_action = new_hand.last_action
        if doubled is not None:
            row.doubled = doubled
        await session.flush()
        return True

    async def end_session(
        self,
        session_id: int,
        state: SessionState,
        payout: int = 0,
        session: Optional[AsyncSession] = None,
    ) -> bool:
        """
        Move an active session to a terminal state, stamping payout and ended_at.

        Only the first call succeeds; later calls change nothing and return False.

        Args:
            session_id: Game session ID
            state: Terminal state
            payout: XP credited for the round
            session: Optional open transaction to run in (no commit is issued)
        """
        if not state.is_terminal:
            raise ValueError(f"{state} is not a terminal state")

        stmt = (
            update(GameSession)
            .where(GameSession.id == session_id, GameSession.state == SessionState.ACTIVE.value)
            .values(state=state.value, payout=payout, ended_at=utc_now())
        )

        if session is not None:
            result = await session.execute(stmt)
        else:
            async with self._sessions()() as own_session:
                async with own_session.begin():
                    result = await own_session.execute(stmt)

        ended = result.rowcount == 1
        if ended:
            logger.info(f"Game session {session_id} ended: {state.value} (payout={payout})")
        else:
            logger.warning(f"Game session {session_id} is not active, end ignored")
        return ended

    async def expire_stale_sessions(
        self,
        timeout_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Expire active sessions older than the timeout.

        The escrowed bet of an expired session is not refunded.

        Returns:
            Number of sessions expired
        """
        timeout = self.timeout_minutes if timeout_minutes is None else timeout_minutes
        now = now or utc_now()
        cutoff = now - timedelta(minutes=timeout)

        async with self._sessions()() as session:
            async with session.begin():
                result = await session.execute(
                    update(GameSession)
                    .where(
                        GameSession.state == SessionState.ACTIVE.value,
                        GameSession.created_at < cutoff,
                    )
                    .values(state=SessionState.EXPIRED.value, ended_at=now)
                )
        expired = result.rowcount or 0
        if expired:
            logger.info(f"Expired {expired} stale game sessions (older than {timeout} min)")
        return expired

    async def get_game_history(
        self,
        user_id: int,
        game_type: Optional[str] = None,
        limit: int = 10,
    ) -> List[GameSessionData]:
        """Newest-first sessions of a user."""
        query = select(GameSession).where(GameSession.discord_id == user_id)
        if game_type:
            query = query.where(GameSession.game_type == game_type)
        query = query.order_by(GameSession.created_at.desc(), GameSession.id.desc()).limit(limit)

        async with self._sessions()() as session:
            result = await session.execute(query)
            return [GameSessionData.from_row(row) for row in result.scalars().all()]

    async def get_game_stats(self, user_id: int) -> GameStats:
        win_states = (SessionState.WON.value, SessionState.BLACKJACK.value)
        # Expired games forfeited their bet
        loss_states = (SessionState.LOST.value, SessionState.EXPIRED.value)
        async with self._sessions()() as session:
            result = await session.execute(
                select(
                    func.count(GameSession.id),
                    func.count(case((GameSession.state.in_(win_states), 1))),
                    func.count(case((GameSession.state.in_(loss_states), 1))),
                    func.count(case((GameSession.state == SessionState.PUSH.value, 1))),
                    func.coalesce(func.sum(GameSession.payout), 0),
                ).where(
                    GameSession.discord_id == user_id,
                    GameSession.state.notin_((SessionState.ACTIVE.value, SessionState.CANCELLED.value)),
                )
            )
            total, wins, losses, pushes, winnings = result.one()

        return GameStats(
            total_games=int(total or 0),
            wins=int(wins or 0),
            losses=int(losses or 0),
            pushes=int(pushes or 0),
            total_winnings=int(winnings or 0),
        )


# Global session store instance
game_session_store = GameSessionStore()
