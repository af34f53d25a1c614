"""Coin redemption: pricing and validating coins-for-discount at checkout.

5 coins buy ₹1 of discount. The discount is capped at 10% of the order value
(rounded down to whole rupees) and only orders of ₹100 or more qualify.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from exceptions import (
    ConcurrentUpdateError,
    ConflictError,
    DuplicateTransactionError,
    RedemptionRuleViolation,
    ResourceNotFoundError,
    ValidationError,
)
from models import Order, OrderStatus, TransactionType
from services.wallet import WalletLedger

COINS_PER_RUPEE = 5
MAX_DISCOUNT_PERCENTAGE = 10
MIN_REDEMPTION_COINS = 5
MIN_ORDER_VALUE = 100


@dataclass
class RedemptionResult:
    valid: bool
    discount_amount: int
    final_amount: float
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "discount_amount": self.discount_amount,
            "final_amount": self.final_amount,
            "errors": list(self.errors),
        }


def max_discount(order_value: Optional[float]) -> int:
    if not order_value or order_value < MIN_ORDER_VALUE:
        return 0
    return math.floor(order_value * MAX_DISCOUNT_PERCENTAGE / 100)


def discount_from_coins(coins: Optional[int]) -> int:
    if not coins or coins < MIN_REDEMPTION_COINS:
        return 0
    return coins // COINS_PER_RUPEE


def coins_needed(discount_amount: Optional[int]) -> int:
    if not discount_amount or discount_amount <= 0:
        return 0
    return discount_amount * COINS_PER_RUPEE


def validate(order_value: float, coins_requested: int, available_balance: int) -> RedemptionResult:
    """Check every redemption rule and report all violations together."""
    errors = []

    if order_value < MIN_ORDER_VALUE:
        errors.append(f"Minimum order value of ₹{MIN_ORDER_VALUE} required for coin redemption")

    if coins_requested < MIN_REDEMPTION_COINS:
        errors.append(f"Minimum {MIN_REDEMPTION_COINS} coins required for redemption")

    if coins_requested > available_balance:
        errors.append(
            f"Insufficient coin balance. Available: {available_balance}, Requested: {coins_requested}"
        )

    cap = max_discount(order_value)
    requested_discount = coins_requested // COINS_PER_RUPEE if coins_requested > 0 else 0
    if requested_discount > cap:
        errors.append(
            f"Maximum discount of ₹{cap} ({MAX_DISCOUNT_PERCENTAGE}%) exceeded. Requested: ₹{requested_discount}"
        )

    if errors:
        return RedemptionResult(valid=False, discount_amount=0, final_amount=order_value, errors=errors)
    return RedemptionResult(
        valid=True,
        discount_amount=requested_discount,
        final_amount=order_value - requested_discount,
    )


def suggestions(order_value: float, available_coins: int) -> Dict[str, Any]:
    """Best plan (largest allowed discount) plus a half-coins alternative."""
    cap = max_discount(order_value)
    affordable = discount_from_coins(available_coins)

    optimal_discount = min(cap, affordable)
    optimal_coins = coins_needed(optimal_discount)

    alternative_coins = optimal_coins // 2
    alternative = None
    if alternative_coins > 0:
        alternative = {
            "coins": alternative_coins,
            "discount": discount_from_coins(alternative_coins),
            "description": "Save some coins for future orders",
        }

    return {
        "max_possible_discount": cap,
        "coins_for_max_discount": coins_needed(cap),
        "max_discount_from_coins": affordable,
        "optimal": {
            "coins": optimal_coins,
            "discount": optimal_discount,
            "description": "Maximum discount available" if optimal_discount == cap else "Use all available coins",
        },
        "alternative": alternative,
        "limits": {
            "min_coins": MIN_REDEMPTION_COINS,
            "max_coins": min(available_coins, coins_needed(cap)),
            "min_order_value": MIN_ORDER_VALUE,
        },
    }


async def _apply_to_order(
    session: AsyncSession, user_id: int, order_id: int, coins: int
) -> Tuple[Order, RedemptionResult]:
    """
    Price the redemption against a Pending order of this customer and write
    the discount onto the order row. The client's order value is not used.
    """
    result = await session.exec(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    order = result.first()
    if not order or order.user_id != user_id:
        raise ResourceNotFoundError("Order not found", detail={"order_id": order_id})
    if order.status != OrderStatus.PENDING:
        raise ConflictError(
            "Coins can only be applied to a Pending order",
            detail={"order_id": order_id, "status": order.status},
        )
    if order.coins_redeemed:
        raise DuplicateTransactionError(
            "Coins were already redeemed on this order",
            detail={"order_id": order_id, "coins_redeemed": order.coins_redeemed},
        )

    balance = await WalletLedger(session).get_balance(user_id)
    check = validate(order.subtotal, coins, balance)
    if not check.valid:
        raise RedemptionRuleViolation(check.errors)

    new_total = round(order.subtotal + order.shipping_fee - check.discount_amount, 2)
    written = await session.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.status == OrderStatus.PENDING,
            Order.coins_redeemed == 0,
            Order.version == order.version,
        )
        .values(
            coin_discount=check.discount_amount,
            coins_redeemed=coins,
            total_amount=new_total,
            version=Order.version + 1,
        )
    )
    if written.rowcount != 1:
        raise ConcurrentUpdateError("Order was modified by another request", detail={"order_id": order.id})
    await session.refresh(order)
    return order, RedemptionResult(valid=True, discount_amount=check.discount_amount, final_amount=new_total)


async def redeem(
    session: AsyncSession,
    user_id: int,
    order_value: Optional[float],
    coins: int,
    order_id: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Validate against the current balance and debit the coins.

    With `order_id` the order must be the customer's own and still Pending;
    it is priced from its stored subtotal and its discount, coins_redeemed
    and total are updated in the same transaction as the debit, so a later
    cancel refunds the coins.

    Raises RedemptionRuleViolation with every broken rule. The debit itself
    is conditional on the balance, so a concurrent spend still cannot
    overdraw (InsufficientBalanceError).
    """
    ledger = WalletLedger(session)
    if order_id is not None:
        order, result = await _apply_to_order(session, user_id, order_id, coins)
        order_value = order.subtotal
        description = f"Coins redeemed: {coins} coins for ₹{result.discount_amount} discount on order {order_id}"
    else:
        if order_value is None:
            raise ValidationError("order_value is required when no order_id is given")
        result = validate(order_value, coins, await ledger.get_balance(user_id))
        if not result.valid:
            raise RedemptionRuleViolation(result.errors)
        description = f"Coins redeemed: {coins} coins for ₹{result.discount_amount} discount"

    new_balance = await ledger.debit(
        user_id,
        coins,
        TransactionType.COIN_REDEMPTION,
        description,
        order_id=order_id,
        metadata={"order_value": order_value, "discount_amount": result.discount_amount},
    )
    return {
        "coins_redeemed": coins,
        "discount_amount": result.discount_amount,
        "final_amount": result.final_amount,
        "new_balance": new_balance,
    }
