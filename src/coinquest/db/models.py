"""ORM models.

Column types are chosen so the same models run on PostgreSQL (asyncpg) in
production and SQLite (aiosqlite) in development and tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coinquest.db.base import Base, UTCDateTime

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB, "postgresql")


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class User(Base):
    """A verified account. Created only when a pending signup is verified."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    grade: Mapped[str | None] = mapped_column(String(20), nullable=True)
    school: Mapped[str | None] = mapped_column(String(100), nullable=True)
    knowledge_level: Mapped[str] = mapped_column(String(32), nullable=False, default="Beginner")

    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Login challenge (hash only, never the plaintext code)
    login_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    login_code_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    login_code_issued_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    wallet: Mapped[Wallet | None] = relationship("Wallet", back_populates="user", uselist=False)
    progress: Mapped[Progress | None] = relationship("Progress", back_populates="user", uselist=False)


class PasswordResetToken(Base):
    """Single-use password reset token (SHA-256 of the emailed value)."""

    __tablename__ = "password_reset_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[int] = mapped_column(BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)

    user: Mapped[User] = relationship("User")


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------


class Wallet(Base):
    """Per-account currency balances."""

    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("coin_balance >= 0", name="wallet_coin_balance_non_negative"),
        CheckConstraint("discretionary_balance >= 0", name="wallet_discretionary_non_negative"),
    )

    user_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    coin_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discretionary_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_payout_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    user: Mapped[User] = relationship("User", back_populates="wallet")


class RewardTransaction(Base):
    """Append-only record of a wallet balance change."""

    __tablename__ = "reward_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="reward_tx_amount_positive"),
        CheckConstraint("kind IN ('credit', 'debit')", name="reward_tx_kind"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    bucket: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(String(256), nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------


class Progress(Base):
    """Per-user learning progress aggregate."""

    __tablename__ = "progress"

    user_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    completed_lessons: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    completed_modules: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    current_module: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    quiz_scores: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    user: Mapped[User] = relationship("User", back_populates="progress")


class Lesson(Base):
    """Lesson content; slides are validated against the tagged slide union on read."""

    __tablename__ = "lessons"
    __table_args__ = (UniqueConstraint("module_id", "lesson_id", name="lessons_module_lesson_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    module_id: Mapped[int] = mapped_column(Integer, nullable=False)
    lesson_id: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    slides: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Quiz(Base):
    """End-of-module quiz."""

    __tablename__ = "quizzes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    module_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    questions: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    # NULL means the configured quiz_passing_percentage.
    passing_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    xp_per_question: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class LessonCompletion(Base):
    """One row per (user, lesson); the unique key makes completion rewards one-shot."""

    __tablename__ = "lesson_completions"
    __table_args__ = (UniqueConstraint("user_id", "lesson_key", name="lesson_completions_user_lesson_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    lesson_key: Mapped[str] = mapped_column(String(48), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
