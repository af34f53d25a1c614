"""Indira Coin reward accrual.

Three independent sources credit the same wallet ledger:
    - delivered orders: 5 coins per full ₹100 of the order total
    - referral registrations: a flat 20-coin bonus per referred user
    - referral visits: 2 coins per full batch of 10 eligible visits
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from exceptions import ConcurrentUpdateError, StorefrontError
from models import Order, OrderStatus, ReferralVisit, TransactionType, WalletTransaction
from services.wallet import WalletLedger

logger = logging.getLogger(__name__)

ORDER_COINS_PER_BLOCK = 5
ORDER_RUPEES_PER_BLOCK = 100

REFERRAL_REGISTRATION_BONUS = 20

VISIT_COINS_PER_BATCH = 2
VISITS_PER_BATCH = 10


def order_reward(amount: Optional[float]) -> int:
    if not amount or amount < 0:
        return 0
    return int(amount // ORDER_RUPEES_PER_BLOCK) * ORDER_COINS_PER_BLOCK


def visit_reward(eligible_visit_count: Optional[int]) -> int:
    if not eligible_visit_count or eligible_visit_count < 0:
        return 0
    return (eligible_visit_count // VISITS_PER_BATCH) * VISIT_COINS_PER_BATCH


def reward_summary(order_amount: float) -> Dict[str, Any]:
    """Breakdown shown at checkout: how many coins an order total will earn."""
    blocks = int(order_amount // ORDER_RUPEES_PER_BLOCK) if order_amount > 0 else 0
    coins = order_reward(order_amount)
    return {
        "order_amount": order_amount,
        "coins_awarded": coins,
        "reward_groups": blocks,
        "coins_per_group": ORDER_COINS_PER_BLOCK,
        "rupees_per_group": ORDER_RUPEES_PER_BLOCK,
        "calculation": (
            f"₹{order_amount:g} ÷ ₹{ORDER_RUPEES_PER_BLOCK} = {blocks} groups "
            f"× {ORDER_COINS_PER_BLOCK} coins = {coins} coins"
        ),
    }


async def _has_order_reward(session: AsyncSession, order_id: int) -> bool:
    result = await session.exec(
        select(WalletTransaction.id).where(
            WalletTransaction.order_id == order_id,
            WalletTransaction.transaction_type == TransactionType.ORDER_REWARD,
        )
    )
    return result.first() is not None


async def award_order_reward(session: AsyncSession, order: Order) -> Optional[int]:
    """
    Credit the order reward for a delivered order, once.

    Returns the coins credited, or None when nothing was due (not delivered,
    below ₹100, or already rewarded). The unique (order_id, type) constraint
    backs up the check under concurrent retries.
    """
    if order.status != OrderStatus.DELIVERED:
        logger.info("[Rewards] Order %s not delivered (status=%s), skipping", order.id, order.status)
        return None

    coins = order_reward(order.total_amount)
    if coins <= 0:
        logger.info("[Rewards] Order %s total ₹%s below reward threshold", order.id, order.total_amount)
        return None

    if await _has_order_reward(session, order.id):
        logger.info("[Rewards] Order %s already rewarded", order.id)
        return None

    description = f"Order reward: {coins} coins for ₹{order.total_amount:g} purchase (Order #{order.id})"
    await WalletLedger(session).credit(
        order.user_id,
        coins,
        TransactionType.ORDER_REWARD,
        description,
        order_id=order.id,
    )
    return coins


async def backfill_order_rewards(session: AsyncSession) -> Dict[str, int]:
    """
    Scan delivered orders and credit any reward that was never recorded.
    Each order commits on its own so one bad row doesn't block the rest.
    """
    result = await session.exec(
        select(Order.id)
        .where(Order.status == OrderStatus.DELIVERED, Order.total_amount >= ORDER_RUPEES_PER_BLOCK)
        .order_by(Order.id)
    )
    order_ids = list(result.all())
    logger.info("[Rewards] Backfill checking %s delivered orders", len(order_ids))

    processed = skipped = errors = 0
    for order_id in order_ids:
        if await _has_order_reward(session, order_id):
            skipped += 1
            continue
        try:
            order = await session.get(Order, order_id)
            coins = await award_order_reward(session, order)
            await session.commit()
        except StorefrontError as e:
            await session.rollback()
            errors += 1
            logger.error("[Rewards] Backfill failed for order %s: %s", order_id, e.message)
            continue
        if coins:
            processed += 1
        else:
            skipped += 1

    logger.info(
        "[Rewards] Backfill complete: processed=%s skipped=%s errors=%s",
        processed, skipped, errors,
    )
    return {
        "total_orders": len(order_ids),
        "processed": processed,
        "skipped": skipped,
        "errors": errors,
    }


async def award_referral_bonus(
    session: AsyncSession,
    referrer_id: int,
    referred_user_id: int,
    referral_code: str,
    referred_name: Optional[str] = None,
) -> int:
    """Credit the registration bonus to the referrer; keyed by the referred user."""
    description = (
        f"Referral bonus: {REFERRAL_REGISTRATION_BONUS} coins for referring "
        f"{referred_name or 'a new customer'} (Code: {referral_code})"
    )
    return await WalletLedger(session).credit(
        referrer_id,
        REFERRAL_REGISTRATION_BONUS,
        TransactionType.REFERRAL_BONUS,
        description,
        referred_user_id=referred_user_id,
    )


async def process_visit_rewards(session: AsyncSession, referrer_id: int) -> int:
    """
    Turn full batches of eligible, unprocessed visits into coins.

    The oldest floor(n/10)*10 eligible visits are flagged processed in the
    same transaction as the credit; the remainder waits for the next batch.
    Returns the coins credited (0 when no full batch is pending).
    """
    result = await session.exec(
        select(ReferralVisit.id)
        .where(
            ReferralVisit.referrer_id == referrer_id,
            ReferralVisit.reward_eligible == True,  # noqa: E712
            ReferralVisit.reward_processed == False,  # noqa: E712
        )
        .order_by(ReferralVisit.visit_start_time, ReferralVisit.id)
    )
    eligible_ids: List[int] = list(result.all())
    count = len(eligible_ids)

    coins = visit_reward(count)
    if coins <= 0:
        logger.debug("[Rewards] Referrer %s has %s eligible visits, no full batch yet", referrer_id, count)
        return 0

    batch_ids = eligible_ids[: (count // VISITS_PER_BATCH) * VISITS_PER_BATCH]
    marked = await session.execute(
        update(ReferralVisit)
        .where(ReferralVisit.id.in_(batch_ids), ReferralVisit.reward_processed == False)  # noqa: E712
        .values(reward_processed=True)
    )
    if marked.rowcount != len(batch_ids):
        raise ConcurrentUpdateError(
            "Referral visits were processed by another request",
            detail={"referrer_id": referrer_id},
        )

    await WalletLedger(session).credit(
        referrer_id,
        coins,
        TransactionType.VISIT_REWARD,
        f"Visit reward: {coins} coins for {len(batch_ids)} referral visits",
        metadata={"visit_ids": batch_ids},
    )
    logger.info(
        "[Rewards] Awarded %s coins to referrer %s for %s visits",
        coins, referrer_id, len(batch_ids),
    )
    return coins
