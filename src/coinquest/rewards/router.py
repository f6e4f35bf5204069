"""Wallet endpoints under /api/v1/wallet."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coinquest.auth.dependencies import get_current_user
from coinquest.database import get_session
from coinquest.db.models import User
from coinquest.rewards.ledger import credit, debit, ensure_companions, list_transactions
from coinquest.rewards.schemas import (
    TransactionResponse,
    WalletChangeRequest,
    WalletChangeResponse,
    WalletDetailResponse,
    WalletResponse,
)

router = APIRouter(prefix="/api/v1/wallet", tags=["Wallet"])


@router.get("", response_model=WalletDetailResponse)
async def get_wallet(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> WalletDetailResponse:
    """Balances plus the 50 most recent transactions."""
    wallet, _ = await ensure_companions(db, user.id)
    await db.commit()
    transactions = await list_transactions(db, user.id, limit=50)
    return WalletDetailResponse(
        wallet=WalletResponse.model_validate(wallet),
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
    )


@router.post("/spend", response_model=WalletChangeResponse)
async def spend(
    body: WalletChangeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> WalletChangeResponse:
    """Spend from the discretionary balance. 409 if it would go negative."""
    await ensure_companions(db, user.id)
    wallet, entry = await debit(db, user.id, body.amount, body.reason, bucket="discretionary")
    await db.commit()
    return WalletChangeResponse(
        wallet=WalletResponse.model_validate(wallet),
        transaction=TransactionResponse.model_validate(entry),
    )


@router.post("/allowance", response_model=WalletChangeResponse)
async def allowance(
    body: WalletChangeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> WalletChangeResponse:
    """Add to the discretionary balance."""
    await ensure_companions(db, user.id)
    wallet, entry = await credit(db, user.id, body.amount, body.reason, bucket="discretionary")
    await db.commit()
    return WalletChangeResponse(
        wallet=WalletResponse.model_validate(wallet),
        transaction=TransactionResponse.model_validate(entry),
    )
