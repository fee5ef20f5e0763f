"""
Blackjack game engine.

Runs a round against the dealer on top of the XP ledger and the game
session store:

- The bet is escrowed at start: debited as a loss before any card is dealt.
- A payout (bet back plus profit) is credited once, when the round resolves.
- Dealer stands on 17, soft 17 included.
- Blackjack pays 3:2, a win pays 1:1, a push returns the bet.
- Double down is allowed on the first two cards only.
"""

import logging
import math
import random
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from taskquest.config import settings
from taskquest.services.deck import (
    Card,
    Outcome,
    calculate_hand_value,
    create_deck,
    deal_initial_hands,
    dealer_play,
    determine_outcome,
    draw_cards,
    is_blackjack,
    shuffle_deck,
)
from taskquest.services.errors import ErrorCode
from taskquest.services.game_sessions import (
    GAME_TYPE_BLACKJACK,
    GameSessionData,
    GameSessionStore,
    SessionState,
    game_session_store,
)
from taskquest.services.xp_ledger import (
    SOURCE_BLACKJACK_BLACKJACK,
    SOURCE_BLACKJACK_LOSS,
    SOURCE_BLACKJACK_PUSH,
    SOURCE_BLACKJACK_WIN,
    XpLedger,
    xp_ledger,
)
from taskquest.utils import KeyedLocks

logger = logging.getLogger(__name__)

# Actions recorded as `last_action` on the hand state
ACTION_HIT = "hit"
ACTION_STAND = "stand"
ACTION_DOUBLE = "double"

OUTCOME_STATES = {
    Outcome.BLACKJACK: SessionState.BLACKJACK,
    Outcome.WIN: SessionState.WON,
    Outcome.LOSS: SessionState.LOST,
    Outcome.PUSH: SessionState.PUSH,
}

OUTCOME_SOURCES = {
    Outcome.BLACKJACK: SOURCE_BLACKJACK_BLACKJACK,
    Outcome.WIN: SOURCE_BLACKJACK_WIN,
    Outcome.PUSH: SOURCE_BLACKJACK_PUSH,
}


@dataclass
class ResultSummary:
    """Settlement of a finished round."""
    session_id: int
    outcome: Outcome
    total_bet: int
    payout: int
    net_change: int
    new_balance: int


@dataclass
class GameResult:
    """Result of a game action."""
    success: bool
    message: str
    session: Optional[GameSessionData] = None
    summary: Optional[ResultSummary] = None
    can_double: bool = False
    bust: bool = False
    error_code: Optional[ErrorCode] = None

    @property
    def finished(self) -> bool:
        return self.summary is not None


class _TransactionAborted(Exception):
    """Rolls back a ledger transaction."""

    def __init__(self, error_code: ErrorCode, message: str):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class BlackjackEngine:
    """
    Engine for playing Blackjack with XP bets.

    All actions of one user are serialized; different users play
    concurrently.
    """

    BLACKJACK_PAYOUT_MULTIPLIER = 1.5
    WIN_PAYOUT_MULTIPLIER = 1.0

    def __init__(
        self,
        ledger: Optional[XpLedger] = None,
        store: Optional[GameSessionStore] = None,
        min_bet: Optional[int] = None,
        max_bet_percent: Optional[float] = None,
        hard_cap: Optional[int] = None,
        random_func: Optional[Callable[[], float]] = None,
        deck_factory: Optional[Callable[[], List[Card]]] = None,
        xp_multiplier: Optional[Callable[[int], int]] = None,
    ):
        """
        Initialize the Blackjack engine.

        Args:
            ledger: XP ledger; defaults to the global one.
            store: Game session store; defaults to the global one.
            min_bet: Minimum bet; defaults to settings.
            max_bet_percent: Max bet as a share of the balance; defaults to settings.
            hard_cap: Absolute max bet; defaults to settings.
            random_func: Optional random function for testing determinism.
            deck_factory: Optional source of ready-to-deal decks (overrides shuffling).
            xp_multiplier: Class/skill bonus applied to positive net winnings.
        """
        self._ledger = ledger or xp_ledger
        self._store = store or game_session_store
        self.min_bet = settings.blackjack_min_bet if min_bet is None else min_bet
        self.max_bet_percent = (
            settings.blackjack_max_bet_percent if max_bet_percent is None else max_bet_percent
        )
        self.hard_cap = settings.blackjack_hard_cap if hard_cap is None else hard_cap
        self._random = random_func or random.random
        self._deck_factory = deck_factory or self._new_shuffled_deck
        self._xp_multiplier = xp_multiplier
        self._locks = KeyedLocks()

    def _new_shuffled_deck(self) -> List[Card]:
        return shuffle_deck(create_deck(), self._random)

    def calculate_payout(self, outcome: Outcome, total_bet: int) -> int:
        """
        Amount credited for an outcome: bet back plus profit, 0 on a loss.
        """
        if outcome == Outcome.BLACKJACK:
            return math.floor(total_bet + total_bet * self.BLACKJACK_PAYOUT_MULTIPLIER)
        elif outcome == Outcome.WIN:
            return math.floor(total_bet + total_bet * self.WIN_PAYOUT_MULTIPLIER)
        elif outcome == Outcome.PUSH:
            return total_bet
        return 0

    def _apply_multiplier(self, payout: int, total_bet: int) -> int:
        net_winnings = payout - total_bet
        if self._xp_multiplier is None or net_winnings <= 0:
            return payout
        adjusted = max(0, int(self._xp_multiplier(net_winnings)))
        return total_bet + adjusted

    @staticmethod
    def _double_allowed(session: GameSessionData) -> bool:
        return (
            session.is_active
            and len(session.player_hand) == 2
            and session.last_action is None
            and not session.doubled
        )

    @staticmethod
    def _player_turn_over(session: GameSessionData) -> bool:
        """True if the round only needs settling (e.g. after a crash mid-resolve)."""
        return (
            session.last_action in (ACTION_STAND, ACTION_DOUBLE)
            or calculate_hand_value(session.player_hand).bust
            or is_blackjack(session.player_hand)
            or is_blackjack(session.dealer_hand)
        )

    async def get_active_game(self, user_id: int) -> Optional[GameSessionData]:
        """Active blackjack session of the user, for redisplay after a reconnect."""
        return await self._store.get_active_session(user_id, GAME_TYPE_BLACKJACK)

    async def start_game(self, user_id: int, bet_amount: int) -> GameResult:
        """
        Start a new game: escrow the bet, create the session, deal.

        If either side is dealt a natural, the round resolves immediately
        and the result carries a summary.
        """
        async with self._locks.hold(user_id):
            if await self._store.has_active_session(user_id, GAME_TYPE_BLACKJACK):
                return GameResult(
                    success=False,
                    message="You already have an active blackjack game",
                    error_code=ErrorCode.SESSION_ALREADY_ACTIVE,
                )

            validation = await self._ledger.can_afford_bet(
                user_id, bet_amount, self.min_bet, self.max_bet_percent, self.hard_cap
            )
            if not validation.can_afford:
                logger.info(
                    f"Blackjack bet rejected: user={user_id}, bet={bet_amount}, "
                    f"balance={validation.balance}, range=[{validation.min_bet}, {validation.max_bet}]"
                )
                return GameResult(
                    success=False,
                    message=(
                        f"Bet must be between {validation.min_bet} and {validation.max_bet} XP "
                        f"(balance: {validation.balance} XP)"
                    ),
                    error_code=validation.error_code,
                )

            # 1. Escrow the bet
            debit = await self._ledger.process_transaction(
                user_id, -bet_amount, SOURCE_BLACKJACK_LOSS, None
            )
            if not debit.success:
                return GameResult(success=False, message=debit.message, error_code=debit.error_code)

            # 2. Deal and create the session with its hand in one write
            dealt = deal_initial_hands(self._deck_factory())
            try:
                created = await self._store.create_session(
                    user_id,
                    GAME_TYPE_BLACKJACK,
                    bet_amount,
                    player_hand=dealt.player_hand,
                    dealer_hand=dealt.dealer_hand,
                    deck_state=dealt.deck,
                )
            except SQLAlchemyError:
                logger.error(f"Blackjack session creation failed for user {user_id}, refunding", exc_info=True)
                await self._refund_bet(user_id, bet_amount)
                raise
            if not created.success:
                await self._refund_bet(user_id, bet_amount)
                return GameResult(success=False, message=created.message, error_code=created.error_code)

            session = await self._store.get_session_by_id(created.session_id)
            logger.info(
                f"Blackjack started: user={user_id}, session={session.id}, bet={bet_amount}, "
                f"player={calculate_hand_value(session.player_hand).value}"
            )

            # 3. Naturals end the round at once
            if is_blackjack(session.player_hand) or is_blackjack(session.dealer_hand):
                return await self._resolve(session)

            return GameResult(
                success=True,
                message="Your move",
                session=session,
                can_double=debit.balance_after >= bet_amount,
            )

    async def _refund_bet(self, user_id: int, bet_amount: int) -> None:
        refund = await self._ledger.process_transaction(
            user_id, bet_amount, SOURCE_BLACKJACK_PUSH, None
        )
        if not refund.success:
            logger.error(
                f"Blackjack refund failed for user {user_id} (bet={bet_amount}): {refund.message}"
            )

    async def hit(self, user_id: int) -> GameResult:
        """Draw one card for the player; a bust resolves the round."""
        async with self._locks.hold(user_id):
            session = await self.get_active_game(user_id)
            if session is None:
                return self._no_active_session()
            if self._player_turn_over(session):
                return await self._resolve(session)

            drawn, deck = draw_cards(session.deck_state, 1)
            session.player_hand = session.player_hand + drawn
            session.deck_state = deck
            session.last_action = ACTION_HIT
            await self._store.update_hand_state(
                session.id, session.player_hand, session.dealer_hand, session.deck_state, ACTION_HIT
            )

            value = calculate_hand_value(session.player_hand)
            logger.info(f"Blackjack hit: user={user_id}, session={session.id}, player={value.value}")
            if value.bust:
                result = await self._resolve(session)
                result.bust = True
                return result

            return GameResult(success=True, message="Hit", session=session, can_double=False)

    async def stand(self, user_id: int) -> GameResult:
        """Player stands; the dealer completes the hand and the round resolves."""
        async with self._locks.hold(user_id):
            session = await self.get_active_game(user_id)
            if session is None:
                return self._no_active_session()
            if self._player_turn_over(session):
                return await self._resolve(session)

            session.dealer_hand, session.deck_state = dealer_play(session.dealer_hand, session.deck_state)
            session.last_action = ACTION_STAND
            await self._store.update_hand_state(
                session.id, session.player_hand, session.dealer_hand, session.deck_state, ACTION_STAND
            )
            logger.info(
                f"Blackjack stand: user={user_id}, session={session.id}, "
                f"dealer={calculate_hand_value(session.dealer_hand).value}"
            )
            return await self._resolve(session)

    async def double(self, user_id: int) -> GameResult:
        """
        Double down: debit another bet, take exactly one card, then stand.

        Only allowed on the first two cards. If the extra bet cannot be
        debited, nothing changes.
        """
        async with self._locks.hold(user_id):
            session = await self.get_active_game(user_id)
            if session is None:
                return self._no_active_session()
            if self._player_turn_over(session):
                return await self._resolve(session)

            if not self._double_allowed(session):
                return GameResult(
                    success=False,
                    message="Double down is only allowed on your first two cards",
                    session=session,
                    error_code=ErrorCode.NOT_ELIGIBLE,
                )

            drawn, deck = draw_cards(session.deck_state, 1)
            player_hand = session.player_hand + drawn
            dealer_hand = session.dealer_hand
            if not calculate_hand_value(player_hand).bust:
                dealer_hand, deck = dealer_play(dealer_hand, deck)

            try:
                # Extra bet and the doubled hand commit together
                async with self._ledger.locked_transaction(user_id) as db:
                    debit = await self._ledger.apply_transaction(
                        db, user_id, -session.bet_amount, SOURCE_BLACKJACK_LOSS, session.id
                    )
                    if not debit.success:
                        raise _TransactionAborted(debit.error_code, "Not enough XP to double down")
                    updated = await self._store.update_hand_state(
                        session.id,
                        player_hand,
                        dealer_hand,
                        deck,
                        ACTION_DOUBLE,
                        doubled=True,
                        session=db,
                    )
                    if not updated:
                        raise _TransactionAborted(ErrorCode.NO_ACTIVE_SESSION, "No active game. Start a new one!")
            except _TransactionAborted as e:
                return GameResult(success=False, message=e.message, session=session, error_code=e.error_code)

            session.player_hand = player_hand
            session.dealer_hand = dealer_hand
            session.deck_state = deck
            session.doubled = True
            session.last_action = ACTION_DOUBLE
            logger.info(
                f"Blackjack double: user={user_id}, session={session.id}, "
                f"player={calculate_hand_value(session.player_hand).value}"
            )
            result = await self._resolve(session)
            result.bust = calculate_hand_value(session.player_hand).bust
            return result

    async def resolve(self, session_id: int) -> GameResult:
        """
        Settle a session whose hands are final.

        A session that is no longer active is rejected, so a round is never
        paid twice.
        """
        session = await self._store.get_session_by_id(session_id)
        if session is None:
            return self._no_active_session()
        async with self._locks.hold(session.user_id):
            # Re-read under the lock
            session = await self._store.get_session_by_id(session_id)
            return await self._resolve(session)

    async def _resolve(self, session: GameSessionData) -> GameResult:
        if not session.is_active:
            return GameResult(
                success=False,
                message="This game is already settled",
                session=session,
                error_code=ErrorCode.ALREADY_RESOLVED,
            )

        outcome = determine_outcome(session.player_hand, session.dealer_hand)
        total_bet = session.total_bet
        payout = self._apply_multiplier(self.calculate_payout(outcome, total_bet), total_bet)
        state = OUTCOME_STATES[outcome]

        try:
            # Session end and payout commit together under the balance lock
            async with self._ledger.locked_transaction(session.user_id) as db:
                if not await self._store.end_session(session.id, state, payout, session=db):
                    raise _TransactionAborted(ErrorCode.ALREADY_RESOLVED, "This game is already settled")
                if payout > 0:
                    credit = await self._ledger.apply_transaction(
                        db, session.user_id, payout, OUTCOME_SOURCES[outcome], session.id
                    )
                    if not credit.success:
                        raise _TransactionAborted(credit.error_code, credit.message)
                    new_balance = credit.balance_after
                else:
                    new_balance = await self._ledger.read_balance(db, session.user_id) or 0
        except _TransactionAborted as e:
            logger.error(f"Blackjack settlement aborted: session={session.id}, reason={e.message}")
            return GameResult(success=False, message=e.message, session=session, error_code=e.error_code)

        session.state = state
        session.payout = payout

        summary = ResultSummary(
            session_id=session.id,
            outcome=outcome,
            total_bet=total_bet,
            payout=payout,
            net_change=payout - total_bet,
            new_balance=new_balance,
        )
        logger.info(
            f"Blackjack ended: user={session.user_id}, session={session.id}, outcome={outcome.value}, "
            f"bet={total_bet}, payout={payout}, balance={new_balance}"
        )
        return GameResult(success=True, message=outcome.value, session=session, summary=summary)

    @staticmethod
    def _no_active_session() -> GameResult:
        return GameResult(
            success=False,
            message="No active game. Start a new one!",
            error_code=ErrorCode.NO_ACTIVE_SESSION,
        )


# Blackjack engine instance
blackjack_engine = BlackjackEngine()
