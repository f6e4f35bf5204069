"""Reward ledger: XP and currency grants with an append-only transaction log.

Every mutation is a single in-SQL increment (``col = col + :delta``), so two
requests touching the same account never lose an update. ``grant`` applies
the XP change, then the wallet credit, then the transaction row, all on the
caller's session; nothing is committed here. The caller commits once
together with whatever triggered the reward (lesson completion, quiz
submission), so the action and both balance changes land or fail together.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coinquest.config import get_settings
from coinquest.db.base import upsert_insert
from coinquest.db.models import Progress, RewardTransaction, User, Wallet
from coinquest.errors import InsufficientBalance, NotFound, ValidationError
from coinquest.rewards.levels import compute_level

logger = structlog.get_logger()

Bucket = Literal["coins", "discretionary"]

_BALANCE_COLUMNS = {
    "coins": Wallet.coin_balance,
    "discretionary": Wallet.discretionary_balance,
}


@dataclass
class GrantResult:
    """Outcome of a combined XP + currency grant."""

    user: User
    wallet: Wallet
    transaction: RewardTransaction | None


def _now(now: datetime | None) -> datetime:
    return now if now is not None else datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Companion records
# ---------------------------------------------------------------------------


async def ensure_companions(
    db: AsyncSession, user_id: int, now: datetime | None = None
) -> tuple[Wallet, Progress]:
    """Get or create the wallet and progress rows for an account (idempotent)."""
    now = _now(now)
    settings = get_settings()
    insert = upsert_insert(db)

    wallet = await db.get(Wallet, user_id)
    if wallet is None:
        await db.execute(
            insert(Wallet)
            .values(
                user_id=user_id,
                coin_balance=0,
                discretionary_balance=settings.starting_discretionary_balance,
                total_earned=0,
                last_payout_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        wallet = await db.get(Wallet, user_id, populate_existing=True)

    progress = await db.get(Progress, user_id)
    if progress is None:
        await db.execute(
            insert(Progress)
            .values(
                user_id=user_id,
                completed_lessons=[],
                completed_modules=[],
                current_module=1,
                quiz_scores=[],
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        progress = await db.get(Progress, user_id, populate_existing=True)

    if wallet is None or progress is None:
        msg = "User not found"
        raise NotFound(msg)
    return wallet, progress


# ---------------------------------------------------------------------------
# XP
# ---------------------------------------------------------------------------


async def add_xp(db: AsyncSession, user_id: int, amount: int, now: datetime | None = None) -> User:
    """Add XP to an account and recompute its level from the new total."""
    if amount < 0:
        msg = "XP amount must not be negative"
        raise ValidationError(msg)
    now = _now(now)

    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(xp=User.xp + amount, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:  # type: ignore[attr-defined]
        msg = "User not found"
        raise NotFound(msg)

    total_xp = (await db.execute(select(User.xp).where(User.id == user_id))).scalar_one()
    old_level = compute_level(total_xp - amount)["level"]
    level_info = compute_level(total_xp)

    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(level=level_info["level"])
        .execution_options(synchronize_session=False)
    )
    user = await db.get(User, user_id, populate_existing=True)
    if user is None:
        msg = "User not found"
        raise NotFound(msg)

    if level_info["level"] > old_level:
        logger.info(
            "level_up",
            user_id=user_id,
            old_level=old_level,
            new_level=level_info["level"],
            title=level_info["title"],
        )
    return user


# ---------------------------------------------------------------------------
# Currency
# ---------------------------------------------------------------------------


async def _balance(db: AsyncSession, user_id: int, bucket: Bucket) -> int | None:
    column = _BALANCE_COLUMNS[bucket]
    return (await db.execute(select(column).where(Wallet.user_id == user_id))).scalar_one_or_none()


async def _load_wallet(db: AsyncSession, user_id: int) -> Wallet:
    wallet = await db.get(Wallet, user_id, populate_existing=True)
    if wallet is None:
        msg = "Wallet not found"
        raise NotFound(msg)
    return wallet


async def _record(
    db: AsyncSession,
    user_id: int,
    kind: str,
    bucket: Bucket,
    amount: int,
    reason: str,
    balance_after: int,
    now: datetime,
) -> RewardTransaction:
    entry = RewardTransaction(
        user_id=user_id,
        kind=kind,
        bucket=bucket,
        amount=amount,
        reason=reason,
        balance_after=balance_after,
        created_at=now,
    )
    db.add(entry)
    await db.flush()
    return entry


async def credit(
    db: AsyncSession,
    user_id: int,
    amount: int,
    reason: str,
    bucket: Bucket = "coins",
    now: datetime | None = None,
) -> tuple[Wallet, RewardTransaction]:
    """Add currency to a wallet bucket and append a credit transaction."""
    if amount <= 0:
        msg = "Credit amount must be positive"
        raise ValidationError(msg)
    now = _now(now)
    column = _BALANCE_COLUMNS[bucket]

    values: dict = {column.key: column + amount, "updated_at": now}
    if bucket == "coins":
        values["total_earned"] = Wallet.total_earned + amount

    result = await db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:  # type: ignore[attr-defined]
        msg = "Wallet not found"
        raise NotFound(msg)

    wallet = await _load_wallet(db, user_id)
    balance_after = getattr(wallet, column.key)
    entry = await _record(db, user_id, "credit", bucket, amount, reason, balance_after, now)
    return wallet, entry


async def debit(
    db: AsyncSession,
    user_id: int,
    amount: int,
    reason: str,
    bucket: Bucket = "discretionary",
    now: datetime | None = None,
) -> tuple[Wallet, RewardTransaction]:
    """Spend currency from a wallet bucket.

    The balance check and the decrement are one conditional UPDATE; if it
    matches no row the debit is rejected and nothing has changed.

    Raises:
        InsufficientBalance: If the bucket holds less than ``amount``.
        NotFound: If the account has no wallet.
    """
    if amount <= 0:
        msg = "Debit amount must be positive"
        raise ValidationError(msg)
    now = _now(now)
    column = _BALANCE_COLUMNS[bucket]

    result = await db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id, column >= amount)
        .values({column.key: column - amount, "updated_at": now})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:  # type: ignore[attr-defined]
        current = await _balance(db, user_id, bucket)
        if current is None:
            msg = "Wallet not found"
            raise NotFound(msg)
        raise InsufficientBalance(balance=current, requested=amount)

    wallet = await _load_wallet(db, user_id)
    balance_after = getattr(wallet, column.key)
    entry = await _record(db, user_id, "debit", bucket, amount, reason, balance_after, now)
    logger.info("wallet_debited", user_id=user_id, bucket=bucket, amount=amount, balance=balance_after)
    return wallet, entry


# ---------------------------------------------------------------------------
# Combined grant
# ---------------------------------------------------------------------------


async def grant(
    db: AsyncSession,
    user_id: int,
    xp_delta: int,
    currency_delta: int,
    reason: str,
    now: datetime | None = None,
) -> GrantResult:
    """Grant XP to the account and currency to its wallet.

    Order is fixed: account, wallet, transaction. A failure in any step
    raises before the caller commits, so neither change persists alone.
    """
    if xp_delta < 0 or currency_delta < 0:
        msg = "Reward amounts must not be negative"
        raise ValidationError(msg)
    now = _now(now)

    user = await add_xp(db, user_id, xp_delta, now)
    wallet, _ = await ensure_companions(db, user_id, now)

    transaction: RewardTransaction | None = None
    if currency_delta > 0:
        wallet, transaction = await credit(db, user_id, currency_delta, reason, "coins", now)

    logger.info(
        "reward_granted",
        user_id=user_id,
        xp=xp_delta,
        coins=currency_delta,
        reason=reason,
        total_xp=user.xp,
        level=user.level,
    )
    return GrantResult(user=user, wallet=wallet, transaction=transaction)


async def list_transactions(db: AsyncSession, user_id: int, limit: int = 50) -> list[RewardTransaction]:
    """Most recent transactions first."""
    result = await db.execute(
        select(RewardTransaction)
        .where(RewardTransaction.user_id == user_id)
        .order_by(RewardTransaction.created_at.desc(), RewardTransaction.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
