"""
XP Ledger - single source of truth for user XP balances.

Rules:
- XP is never written directly; every change goes through this service.
- Every change appends exactly one XpTransaction row.
- Balance update and audit row commit together or not at all.
- Changes for the same user are serialized (per-user lock plus row lock).
"""

import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskquest.config import settings
from taskquest.database.models import User, XpTransaction
from taskquest.database.session import get_session
from taskquest.services.errors import ErrorCode
from taskquest.utils import KeyedLocks

logger = logging.getLogger(__name__)


# Transaction sources used by the blackjack engine
SOURCE_BLACKJACK_LOSS = "blackjack_loss"
SOURCE_BLACKJACK_WIN = "blackjack_win"
SOURCE_BLACKJACK_BLACKJACK = "blackjack_blackjack"
SOURCE_BLACKJACK_PUSH = "blackjack_push"

WIN_SOURCES = (SOURCE_BLACKJACK_WIN, SOURCE_BLACKJACK_BLACKJACK)


@dataclass
class LedgerEntry:
    """Read-only view of an XpTransaction row."""
    id: int
    user_id: int
    amount: int
    source: str
    reference_id: Optional[int]
    balance_before: int
    balance_after: int
    created_at: datetime

    @classmethod
    def from_row(cls, row: XpTransaction) -> "LedgerEntry":
        return cls(
            id=row.id,
            user_id=row.discord_id,
            amount=row.amount,
            source=row.source,
            reference_id=row.reference_id,
            balance_before=row.balance_before,
            balance_after=row.balance_after,
            created_at=row.created_at,
        )


@dataclass
class TransactionResult:
    """Result of a ledger transaction."""
    success: bool
    message: str
    balance_before: int = 0
    balance_after: int = 0
    entry: Optional[LedgerEntry] = None
    error_code: Optional[ErrorCode] = None


@dataclass
class BetValidation:
    """Whether a bet fits the player's balance and the table limits."""
    can_afford: bool
    balance: int
    min_bet: int
    max_bet: int
    bet_amount: int
    error_code: Optional[ErrorCode] = None


@dataclass
class GamblingStats:
    win_count: int = 0
    win_total: int = 0
    loss_count: int = 0
    loss_total: int = 0
    push_count: int = 0

    @property
    def net_profit(self) -> int:
        return self.win_total - self.loss_total


@dataclass
class ReconciliationReport:
    """Balance compared with the sum of the user's ledger entries."""
    user_id: int
    balance: int
    ledger_total: int
    entry_count: int
    mismatched_entries: List[int] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_total and not self.mismatched_entries


def max_bet_for(balance: int, percent: float, hard_cap: int) -> int:
    """floor(min(balance * percent, hard_cap)), never below zero."""
    return max(0, math.floor(min(balance * percent, hard_cap)))


class XpLedger:
    """Atomic, serialized XP balance mutations with an audit trail."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        """
        Args:
            session_factory: Optional session factory; defaults to the global one.
        """
        self._session_factory = session_factory
        self._locks = KeyedLocks()

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session()

    @asynccontextmanager
    async def locked_transaction(self, user_id: int) -> AsyncIterator[AsyncSession]:
        """
        Hold the user's balance lock around one database transaction.

        Commits when the block exits normally and rolls back if it raises.
        Use `apply_transaction` inside the block to move XP together with
        other writes that must commit atomically with it.
        """
        async with self._locks.hold(user_id):
            async with self._sessions()() as session:
                async with session.begin():
                    yield session

    async def apply_transaction(
        self,
        session: AsyncSession,
        user_id: int,
        amount: int,
        source: str,
        reference_id: Optional[int] = None,
    ) -> TransactionResult:
        """
        Apply a balance change inside a transaction opened by `locked_transaction`.

        Nothing is written when the result is unsuccessful.
        """
        result = await session.execute(
            select(User).where(User.discord_id == user_id).with_for_update()
        )
        user = result.scalars().first()

        if not user:
            logger.warning(f"XP transaction rejected: user {user_id} not found ({source})")
            return TransactionResult(
                success=False,
                message="User not found",
                error_code=ErrorCode.USER_NOT_FOUND,
            )

        balance_before = user.xp
        balance_after = balance_before + amount

        if balance_after < 0:
            logger.warning(
                f"XP transaction rejected: user {user_id} has {balance_before}, "
                f"needs {-amount} ({source})"
            )
            return TransactionResult(
                success=False,
                message=f"Insufficient XP. You have {balance_before}, need {-amount}",
                balance_before=balance_before,
                balance_after=balance_before,
                error_code=ErrorCode.INSUFFICIENT_BALANCE,
            )

        user.xp = balance_after
        row = XpTransaction(
            discord_id=user_id,
            amount=amount,
            source=source,
            reference_id=reference_id,
            balance_before=balance_before,
            balance_after=balance_after,
        )
        session.add(row)
        await session.flush()

        logger.info(
            f"XP {amount:+d} for user {user_id}: {source} "
            f"(ref={reference_id}, {balance_before} -> {balance_after})"
        )

        return TransactionResult(
            success=True,
            message=f"{amount:+d} XP",
            balance_before=balance_before,
            balance_after=balance_after,
            entry=LedgerEntry.from_row(row),
        )

    async def read_balance(self, session: AsyncSession, user_id: int) -> Optional[int]:
        """Balance as seen inside a transaction opened by `locked_transaction`."""
        result = await session.execute(
            select(User.xp).where(User.discord_id == user_id)
        )
        return result.scalar_one_or_none()

    async def process_transaction(
        self,
        user_id: int,
        amount: int,
        source: str,
        reference_id: Optional[int] = None,
    ) -> TransactionResult:
        """
        Change a user's XP balance atomically.

        Args:
            user_id: Discord user ID
            amount: XP to add (positive) or remove (negative)
            source: Transaction tag, e.g. 'blackjack_win'
            reference_id: Optional game session ID

        Returns:
            TransactionResult with balances before/after and the audit entry
        """
        async with self.locked_transaction(user_id) as session:
            return await self.apply_transaction(session, user_id, amount, source, reference_id)

    async def get_balance(self, user_id: int) -> Optional[int]:
        """Current XP balance, or None if the user is not registered."""
        async with self._sessions()() as session:
            result = await session.execute(
                select(User.xp).where(User.discord_id == user_id)
            )
            return result.scalar_one_or_none()

    async def get_max_bet(
        self,
        user_id: int,
        percent: Optional[float] = None,
        hard_cap: Optional[int] = None,
    ) -> int:
        balance = await self.get_balance(user_id) or 0
        return max_bet_for(
            balance,
            settings.blackjack_max_bet_percent if percent is None else percent,
            settings.blackjack_hard_cap if hard_cap is None else hard_cap,
        )

    async def can_afford_bet(
        self,
        user_id: int,
        amount: int,
        min_bet: Optional[int] = None,
        percent: Optional[float] = None,
        hard_cap: Optional[int] = None,
    ) -> BetValidation:
        """
        Validate a bet against the balance and the table limits.

        The bet must be within [min_bet, max_bet] and not exceed the balance.
        `error_code` tells which rule failed: a bet above the balance is
        INSUFFICIENT_BALANCE, anything else out of range is INVALID_BET_RANGE.
        """
        min_bet = settings.blackjack_min_bet if min_bet is None else min_bet
        balance = await self.get_balance(user_id)
        if balance is None:
            return BetValidation(
                can_afford=False,
                balance=0,
                min_bet=min_bet,
                max_bet=0,
                bet_amount=amount,
                error_code=ErrorCode.USER_NOT_FOUND,
            )

        max_bet = max_bet_for(
            balance,
            settings.blackjack_max_bet_percent if percent is None else percent,
            settings.blackjack_hard_cap if hard_cap is None else hard_cap,
        )

        error_code = None
        if amount > balance:
            error_code = ErrorCode.INSUFFICIENT_BALANCE
        elif amount < min_bet or amount > max_bet:
            error_code = ErrorCode.INVALID_BET_RANGE

        return BetValidation(
            can_afford=error_code is None,
            balance=balance,
            min_bet=min_bet,
            max_bet=max_bet,
            bet_amount=amount,
            error_code=error_code,
        )

    async def get_transaction_history(self, user_id: int, limit: int = 10) -> List[LedgerEntry]:
        """Newest-first ledger entries of a user."""
        async with self._sessions()() as session:
            result = await session.execute(
                select(XpTransaction)
                .where(XpTransaction.discord_id == user_id)
                .order_by(XpTransaction.id.desc())
                .limit(limit)
            )
            return [LedgerEntry.from_row(row) for row in result.scalars().all()]

    async def get_gambling_stats(self, user_id: int) -> GamblingStats:
        """Aggregate blackjack credits and debits from the ledger."""
        async with self._sessions()() as session:
            result = await session.execute(
                select(
                    func.count(case((XpTransaction.source.in_(WIN_SOURCES), 1))),
                    func.coalesce(func.sum(case((XpTransaction.source.in_(WIN_SOURCES), XpTransaction.amount))), 0),
                    func.count(case((XpTransaction.source == SOURCE_BLACKJACK_LOSS, 1))),
                    func.coalesce(func.sum(case((XpTransaction.source == SOURCE_BLACKJACK_LOSS, func.abs(XpTransaction.amount)))), 0),
                    func.count(case((XpTransaction.source == SOURCE_BLACKJACK_PUSH, 1))),
                ).where(XpTransaction.discord_id == user_id)
            )
            win_count, win_total, loss_count, loss_total, push_count = result.one()

        return GamblingStats(
            win_count=int(win_count or 0),
            win_total=int(win_total or 0),
            loss_count=int(loss_count or 0),
            loss_total=int(loss_total or 0),
            push_count=int(push_count or 0),
        )

    async def reconcile(self, user_id: int) -> ReconciliationReport:
        """
        Check the balance against the audit trail.

        Balances start at zero, so the balance must equal the sum of all
        entry amounts, and each entry must chain from the previous one.
        """
        async with self._sessions()() as session:
            balance = (await session.execute(
                select(User.xp).where(User.discord_id == user_id)
            )).scalar_one_or_none() or 0
            rows = (await session.execute(
                select(XpTransaction)
                .where(XpTransaction.discord_id == user_id)
                .order_by(XpTransaction.id)
            )).scalars().all()

        mismatched = []
        expected_before = 0
        for row in rows:
            if row.balance_before != expected_before or row.balance_after != row.balance_before + row.amount:
                mismatched.append(row.id)
            expected_before = row.balance_after

        report = ReconciliationReport(
            user_id=user_id,
            balance=balance,
            ledger_total=sum(row.amount for row in rows),
            entry_count=len(rows),
            mismatched_entries=mismatched,
        )
        if not report.consistent:
            logger.error(
                f"Ledger mismatch for user {user_id}: balance={report.balance}, "
                f"ledger={report.ledger_total}, bad entries={mismatched}"
            )
        return report


# Global ledger instance
xp_ledger = XpLedger()
