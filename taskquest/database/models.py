from datetime import datetime
from typing import Optional
from sqlalchemy import BigInteger, Integer, String, DateTime, Boolean, ForeignKey, CheckConstraint, Index, JSON, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .session import Base
from taskquest.utils import utc_now


class User(Base):
    """Registered player. `xp` is the balance and is only written by the XP ledger."""
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("xp >= 0", name="ck_users_xp_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    discord_id: Mapped[int] = mapped_column(BigInteger, index=True, unique=True)
    username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    xp: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class XpTransaction(Base):
    """Append-only audit record of one balance change."""
    __tablename__ = "xp_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    discord_id: Mapped[int] = mapped_column(BigInteger, index=True)
    amount: Mapped[int] = mapped_column(Integer)
    source: Mapped[str] = mapped_column(String(50), index=True)  # blackjack_loss, blackjack_win, ...
    reference_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)  # game session id
    balance_before: Mapped[int] = mapped_column(Integer, default=0)
    balance_after: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)


class GameSession(Base):
    """One game of one user: active while in play, terminal afterwards."""
    __tablename__ = "game_sessions"
    __table_args__ = (
        # At most one active session per (user, game type)
        Index(
            "uq_game_sessions_active",
            "discord_id",
            "game_type",
            unique=True,
            sqlite_where=text("state = 'active'"),
            postgresql_where=text("state = 'active'"),
        ),
        CheckConstraint("bet_amount > 0", name="ck_game_sessions_bet_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    discord_id: Mapped[int] = mapped_column(BigInteger, index=True)
    game_type: Mapped[str] = mapped_column(String(20))
    bet_amount: Mapped[int] = mapped_column(Integer)
    # Set once the player doubled down; effective bet is 2 * bet_amount
    doubled: Mapped[bool] = mapped_column(Boolean, default=False)
    state: Mapped[str] = mapped_column(String(20), default="active", index=True)  # active, won, lost, push, blackjack, expired, cancelled
    payout: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    hand: Mapped[Optional["BlackjackHand"]] = relationship(
        back_populates="session", uselist=False, lazy="selectin"
    )


class BlackjackHand(Base):
    """Resumable hand state of a blackjack session."""
    __tablename__ = "blackjack_hands"

    session_id: Mapped[int] = mapped_column(ForeignKey("game_sessions.id"), primary_key=True)
    # Cards stored as [{"rank": "A", "suit": "♠"}, ...]
    player_hand: Mapped[list] = mapped_column(JSON, default=list)
    dealer_hand: Mapped[list] = mapped_column(JSON, default=list)
    deck_state: Mapped[list] = mapped_column(JSON, default=list)
    player_value: Mapped[int] = mapped_column(Integer, default=0)
    dealer_value: Mapped[int] = mapped_column(Integer, default=0)
    last_action: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # hit, stand, double

    session: Mapped[GameSession] = relationship(back_populates="hand")
