"""Indira Coin wallet routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from database import get_session
from dependencies import require_admin, require_user
from models import User
from services import redemption
from services.rewards import reward_summary
from services.wallet import WalletLedger

logger = logging.getLogger(__name__)
wallet_router = APIRouter(tags=["wallet"])


class CalculateDiscountRequest(BaseModel):
    order_value: float
    coins: Optional[int] = None


class RedeemRequest(BaseModel):
    order_value: Optional[float] = None
    coins: int
    order_id: Optional[int] = None


class AdjustRequest(BaseModel):
    user_id: int
    amount: int
    reason: str


@wallet_router.get("/api/wallet")
async def get_wallet(
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """Balance, lifetime totals and the most recent ledger entries."""
    ledger = WalletLedger(session)
    summary = await ledger.summary(user.id)
    recent = await ledger.history(user.id, page=1, limit=10)
    return {**summary, "recent_transactions": recent["transactions"]}


@wallet_router.get("/api/wallet/transactions")
async def get_wallet_transactions(
    page: int = 1,
    limit: int = 20,
    type: Optional[str] = None,
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    return await WalletLedger(session).history(user.id, page=page, limit=limit, transaction_type=type)


@wallet_router.get("/api/wallet/stats")
async def get_wallet_stats(
    timeframe: int = 30,
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """Earnings by type over the last `timeframe` days and a six-month trend."""
    return await WalletLedger(session).stats(user.id, days=timeframe)


@wallet_router.post("/api/wallet/calculate-discount")
async def calculate_discount(
    body: CalculateDiscountRequest,
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """
    Price a redemption without spending anything. Without `coins` the
    response only carries suggestions for the current balance.
    """
    balance = await WalletLedger(session).get_balance(user.id)
    response = {
        "balance": balance,
        "suggestions": redemption.suggestions(body.order_value, balance),
        "reward_preview": reward_summary(body.order_value),
    }
    if body.coins is not None:
        response["validation"] = redemption.validate(body.order_value, body.coins, balance).to_dict()
    return response


@wallet_router.post("/api/wallet/redeem")
async def redeem_coins(
    body: RedeemRequest,
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    try:
        result = await redemption.redeem(
            session, user.id, body.order_value, body.coins, order_id=body.order_id
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return result


@wallet_router.post("/api/admin/wallet/adjust")
async def adjust_wallet(
    body: AdjustRequest,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    try:
        balance = await WalletLedger(session).adjust(
            body.user_id, body.amount, body.reason, admin_id=admin.id
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("[Wallet] Admin %s adjusted user %s by %s coins", admin.id, body.user_id, body.amount)
    return {"user_id": body.user_id, "balance": balance}
