"""
Credential store.

Account queries, account materialization, the login challenge kept on the
account row, login streaks, profile edits, and password reset tokens.
Challenge writes are single conditional UPDATEs; the affected row count
tells the caller whether it won.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, NamedTuple

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from coinquest.auth.password import check_needs_rehash, hash_password
from coinquest.config import get_settings
from coinquest.db.models import PasswordResetToken, User
from coinquest.errors import Conflict, Expired
from coinquest.rewards.streak import next_streak

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from coinquest.auth.pending import PendingRegistration

logger = structlog.get_logger()


def normalize_email(email: str) -> str:
    """Trim and case-fold an email address."""
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Account queries
# ---------------------------------------------------------------------------


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    """Fetch an account by ID."""
    return await db.get(User, user_id, populate_existing=True)


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    """Fetch an account by email (case-insensitive)."""
    result = await db.execute(
        select(User)
        .where(func.lower(User.email) == normalize_email(email))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def email_exists(db: AsyncSession, email: str) -> bool:
    result = await db.execute(select(User.id).where(func.lower(User.email) == normalize_email(email)))
    return result.first() is not None


# ---------------------------------------------------------------------------
# Materialization
# ---------------------------------------------------------------------------


async def create_user_from_pending(
    db: AsyncSession,
    pending: PendingRegistration,
    now: datetime | None = None,
) -> User:
    """
    Turn a verified pending signup into an account.

    The password is hashed here, never earlier.

    Raises:
        Conflict: If an account with this email already exists.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    user = User(
        email=normalize_email(pending.email),
        name=pending.name,
        password_hash=hash_password(pending.password),
        age=pending.age,
        grade=pending.grade,
        school=pending.school,
        knowledge_level="Beginner",
        level=1,
        xp=0,
        current_streak=1,
        longest_streak=1,
        last_login_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise Conflict from e
    logger.info("user_created", user_id=user.id, email=user.email)
    return user


# ---------------------------------------------------------------------------
# Login challenge
# ---------------------------------------------------------------------------


class LoginChallenge(NamedTuple):
    """Snapshot of the challenge columns, used to roll back a reissue."""

    code_hash: str | None
    expires_at: datetime | None
    issued_at: datetime | None


async def open_login_challenge(
    db: AsyncSession,
    user_id: int,
    code_hash: str,
    ttl: timedelta,
    now: datetime,
) -> bool:
    """Store a new challenge unless a live one exists.

    Returns True if this call wrote the challenge, False if a live challenge
    was already outstanding (and was left untouched).
    """
    result = await db.execute(
        update(User)
        .where(
            User.id == user_id,
            or_(
                User.login_code.is_(None),
                User.login_code_expires_at.is_(None),
                User.login_code_expires_at <= now,
            ),
        )
        .values(login_code=code_hash, login_code_expires_at=now + ttl, login_code_issued_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1  # type: ignore[attr-defined]


async def read_login_challenge(db: AsyncSession, user_id: int) -> LoginChallenge:
    row = (
        await db.execute(
            select(User.login_code, User.login_code_expires_at, User.login_code_issued_at).where(
                User.id == user_id
            )
        )
    ).one()
    return LoginChallenge(*row)


async def reissue_login_challenge(
    db: AsyncSession,
    user_id: int,
    code_hash: str,
    ttl: timedelta,
    cooldown: timedelta,
    now: datetime,
) -> float:
    """Replace the challenge if the cooldown since the last issue has elapsed.

    Returns 0 on success, otherwise the seconds still to wait (nothing written).
    """
    result = await db.execute(
        update(User)
        .where(
            User.id == user_id,
            or_(User.login_code_issued_at.is_(None), User.login_code_issued_at <= now - cooldown),
        )
        .values(login_code=code_hash, login_code_expires_at=now + ttl, login_code_issued_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:  # type: ignore[attr-defined]
        return 0.0
    current = await read_login_challenge(db, user_id)
    if current.issued_at is None:
        return cooldown.total_seconds()
    return max(1.0, (current.issued_at + cooldown - now).total_seconds())


async def restore_login_challenge(
    db: AsyncSession,
    user_id: int,
    current_hash: str,
    previous: LoginChallenge,
) -> bool:
    """Put the previous challenge back if ours is still the stored one."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.login_code == current_hash)
        .values(
            login_code=previous.code_hash,
            login_code_expires_at=previous.expires_at,
            login_code_issued_at=previous.issued_at,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1  # type: ignore[attr-defined]


async def consume_login_challenge(
    db: AsyncSession,
    user_id: int,
    code_hash: str,
    now: datetime,
) -> None:
    """Clear a matching, live challenge.

    Raises:
        Expired: If the challenge was consumed, replaced or expired in between.
    """
    result = await db.execute(
        update(User)
        .where(
            User.id == user_id,
            User.login_code == code_hash,
            User.login_code_expires_at > now,
        )
        .values(login_code=None, login_code_expires_at=None, login_code_issued_at=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:  # type: ignore[attr-defined]
        msg = "Verification code has expired. Please log in again."
        raise Expired(msg)


# ---------------------------------------------------------------------------
# Login bookkeeping
# ---------------------------------------------------------------------------


async def upgrade_password_hash(db: AsyncSession, user: User, password: str) -> None:
    """Re-hash a just-verified password if its argon2 parameters are outdated."""
    if check_needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)
        await db.flush()
        logger.info("password_rehashed", user_id=user.id)


async def record_login(db: AsyncSession, user: User, now: datetime | None = None) -> User:
    """Update the login streak. Runs once per verified login challenge."""
    settings = get_settings()
    if now is None:
        now = datetime.now(timezone.utc)

    streak = next_streak(
        user.last_login_at,
        user.current_streak,
        user.longest_streak,
        now,
        grace_days=settings.streak_grace_days,
    )
    user.current_streak = streak.current_streak
    user.longest_streak = streak.longest_streak
    user.last_login_at = now
    user.updated_at = now
    await db.flush()
    return user


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------

PROFILE_FIELDS = frozenset({"name", "age", "grade", "school", "knowledge_level"})


async def update_profile(db: AsyncSession, user: User, changes: dict[str, Any]) -> User:
    """Apply whitelisted profile edits."""
    for field, value in changes.items():
        if field in PROFILE_FIELDS:
            setattr(user, field, value)
    user.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return user


async def set_password(db: AsyncSession, user: User, new_password: str) -> None:
    user.password_hash = hash_password(new_password)
    user.updated_at = datetime.now(timezone.utc)
    await db.flush()


# ---------------------------------------------------------------------------
# Password reset tokens
# ---------------------------------------------------------------------------


def hash_reset_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


async def create_reset_token(
    db: AsyncSession,
    user_id: int,
    ip_address: str | None = None,
) -> tuple[str, str]:
    """
    Create a password reset token.

    Returns (raw_token, token_id). The raw token (32 random bytes, hex) is
    emailed; only its SHA-256 is stored. Older unused tokens are invalidated.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    raw_token = secrets.token_hex(32)

    await db.execute(
        update(PasswordResetToken)
        .where(PasswordResetToken.user_id == user_id)
        .where(PasswordResetToken.used_at.is_(None))
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )

    token = PasswordResetToken(
        user_id=user_id,
        token_hash=hash_reset_token(raw_token),
        created_at=now,
        expires_at=now + timedelta(minutes=settings.password_reset_token_ttl_minutes),
        ip_address=ip_address,
    )
    db.add(token)
    await db.flush()
    return raw_token, token.id


async def delete_reset_token(db: AsyncSession, token_id: str) -> None:
    """Remove a token whose email could not be delivered."""
    await db.execute(delete(PasswordResetToken).where(PasswordResetToken.id == token_id))
    await db.flush()


async def consume_reset_token(db: AsyncSession, raw_token: str) -> int:
    """
    Mark a reset token used and return its account ID.

    Raises:
        Expired: If the token is unknown, used, or past its expiry.
    """
    now = datetime.now(timezone.utc)
    token_hash = hash_reset_token(raw_token)
    row = (
        await db.execute(
            select(PasswordResetToken.id, PasswordResetToken.user_id).where(
                PasswordResetToken.token_hash == token_hash,
                PasswordResetToken.used_at.is_(None),
                PasswordResetToken.expires_at > now,
            )
        )
    ).first()
    if row is None:
        msg = "Invalid or expired reset token"
        raise Expired(msg)

    # Conditional write so a token can only be redeemed once.
    result = await db.execute(
        update(PasswordResetToken)
        .where(PasswordResetToken.id == row.id, PasswordResetToken.used_at.is_(None))
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:  # type: ignore[attr-defined]
        msg = "Invalid or expired reset token"
        raise Expired(msg)
    return row.user_id
