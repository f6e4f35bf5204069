"""Wallet request/response schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from coinquest.schemas import CamelModel


class WalletResponse(CamelModel):
    coin_balance: int
    discretionary_balance: int
    total_earned: int
    last_payout_at: datetime | None = None


class TransactionResponse(CamelModel):
    id: int
    kind: str
    bucket: str
    amount: int
    reason: str
    balance_after: int
    created_at: datetime


class WalletDetailResponse(CamelModel):
    wallet: WalletResponse
    transactions: list[TransactionResponse]


class WalletChangeRequest(CamelModel):
    amount: int = Field(..., ge=1, le=1_000_000)
    reason: str = Field(..., min_length=1, max_length=200)


class WalletChangeResponse(CamelModel):
    wallet: WalletResponse
    transaction: TransactionResponse


class RewardSummary(CamelModel):
    """What a gamified action paid out, and the balances afterwards."""

    xp_awarded: int
    coins_awarded: int
    xp: int
    level: int
    coin_balance: int
