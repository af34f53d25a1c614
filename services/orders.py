"""Order lifecycle: checkout, shipping, OTP-confirmed delivery and cancellation.

    Pending --> Shipped --> Delivered
       |
       +------> Cancelled

No other edge exists. Each transition is written with a conditional UPDATE
matched on (id, status, version), so two requests racing on one order can't
both win; the loser gets a retryable ConcurrentUpdateError.

OrderService commits its own unit of work for every operation, then fires
best-effort notifications that can never undo the committed change.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from database import translate_db_errors
from exceptions import (
    ConcurrentUpdateError,
    ConflictError,
    InvalidTransitionError,
    OtpAlreadyUsedError,
    OtpBadFormatError,
    OtpInvalidError,
    OtpLockedError,
    RedemptionRuleViolation,
    ResourceNotFoundError,
    ValidationError,
)
from models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    ProductVariant,
    TransactionType,
)
from observability import delivery_otp_verifications_total, order_transitions_total
from services import delivery_otp, redemption
from services.inventory import InventoryLedger, StockLine
from services.notify import OrderNotifier
from services.rewards import award_order_reward
from services.wallet import WalletLedger

logger = logging.getLogger(__name__)

FREE_SHIPPING_THRESHOLD = 500
SHIPPING_FEE = 100
TOTAL_TOLERANCE = 0.01

TRANSITIONS = {
    OrderStatus.PENDING: (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
    OrderStatus.SHIPPED: (OrderStatus.DELIVERED,),
    OrderStatus.DELIVERED: (),
    OrderStatus.CANCELLED: (),
}


@dataclass
class OrderLine:
    product_id: int
    quantity: int
    variant_id: Optional[int] = None


@dataclass
class ShippingInfo:
    name: str
    address: str
    phone: str


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, ())


def shipping_fee_for(subtotal: float) -> float:
    return 0 if subtotal >= FREE_SHIPPING_THRESHOLD else SHIPPING_FEE


def otp_state(order: Order) -> delivery_otp.DeliveryOtp:
    return delivery_otp.DeliveryOtp(
        code=order.otp_code,
        generated_at=order.otp_generated_at,
        used=order.otp_used,
        failed_attempts=delivery_otp.DeliveryOtp.parse_failed_attempts(order.otp_failed_attempts),
        lockout_until=order.otp_lockout_until,
    )


def otp_for_customer(order: Order) -> Optional[str]:
    """The customer sees the delivery code only while the order is out for delivery."""
    if order.status == OrderStatus.SHIPPED and not order.otp_used:
        return order.otp_code
    return None


class OrderService:
    def __init__(self, session: AsyncSession, notifier: Optional[OrderNotifier] = None):
        self.session = session
        self.notifier = notifier or OrderNotifier()
        self.inventory = InventoryLedger(session)
        self.wallet = WalletLedger(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: int, user_id: Optional[int] = None) -> Order:
        """Fresh copy of the order; scoped to `user_id` when given."""
        result = await self.session.exec(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = result.first()
        if not order or (user_id is not None and order.user_id != user_id):
            raise ResourceNotFoundError("Order not found", detail={"order_id": order_id})
        return order

    async def get_items(self, order_id: int) -> Sequence[OrderItem]:
        result = await self.session.exec(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        )
        return result.all()

    async def list_user_orders(self, user_id: int, limit: int = 50) -> Sequence[Order]:
        result = await self.session.exec(
            select(Order)
            .where(Order.user_id == user_id)
            .order_by(Order.placed_at.desc(), Order.id.desc())
            .limit(limit)
        )
        return result.all()

    async def list_orders(
        self,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        filters = []
        if status:
            if status not in OrderStatus.ALL:
                raise ValidationError("Unknown order status", detail={"status": status})
            filters.append(Order.status == status)

        count = await self.session.exec(select(func.count()).select_from(Order).where(*filters))
        total = count.one()
        result = await self.session.exec(
            select(Order)
            .where(*filters)
            .order_by(Order.placed_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {
            "orders": result.all(),
            "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
        }

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def _price_line(self, line: OrderLine) -> OrderItem:
        product = await self.session.get(Product, line.product_id)
        if not product:
            raise ResourceNotFoundError("Product not found", detail={"product_id": line.product_id})

        if product.has_variants and line.variant_id is None:
            raise ValidationError(
                f"Please select a variant for {product.name}",
                detail={"product_id": product.id},
            )
        if not product.has_variants and line.variant_id is not None:
            raise ValidationError(
                "This product has no variants",
                detail={"product_id": product.id, "variant_id": line.variant_id},
            )

        unit_price = product.price
        variant_name = None
        if line.variant_id is not None:
            variant = await self.session.get(ProductVariant, line.variant_id)
            if not variant or variant.product_id != product.id:
                raise ResourceNotFoundError(
                    "Variant not found",
                    detail={"product_id": product.id, "variant_id": line.variant_id},
                )
            unit_price = variant.price
            variant_name = variant.name

        return OrderItem(
            order_id=0,
            product_id=product.id,
            variant_id=line.variant_id,
            name=product.name,
            variant_name=variant_name,
            unit_price=unit_price,
            quantity=line.quantity,
        )

    async def place_order(
        self,
        user_id: int,
        items: Iterable[OrderLine],
        shipping: ShippingInfo,
        payment_method: str = PaymentMethod.COD,
        total_amount: Optional[float] = None,
        upi_transaction_id: Optional[str] = None,
        coins_to_redeem: int = 0,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Turn a cart into a Pending order.

        Stock for every line is reserved, the order and its items are
        written, the delivery OTP is generated and any coins are redeemed in
        one transaction. If any step fails nothing is kept.
        """
        now = now or datetime.utcnow()
        lines = list(items)
        if not lines:
            raise ValidationError("Order must contain at least one item")
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError("Quantity must be positive", detail={"product_id": line.product_id})
        if payment_method not in PaymentMethod.ALL:
            raise ValidationError("Unsupported payment method", detail={"payment_method": payment_method})
        if not (shipping.name and shipping.address and shipping.phone):
            raise ValidationError("Shipping name, address and phone are required")
        if coins_to_redeem < 0:
            raise ValidationError("Coins to redeem cannot be negative")

        try:
            async with translate_db_errors("place_order"):
                priced = [await self._price_line(line) for line in lines]
                subtotal = round(sum(i.unit_price * i.quantity for i in priced), 2)
                shipping_fee = shipping_fee_for(subtotal)

                discount = 0
                if coins_to_redeem:
                    balance = await self.wallet.get_balance(user_id)
                    check = redemption.validate(subtotal, coins_to_redeem, balance)
                    if not check.valid:
                        raise RedemptionRuleViolation(check.errors)
                    discount = check.discount_amount

                total = round(subtotal + shipping_fee - discount, 2)
                if total_amount is not None and abs(total_amount - total) > TOTAL_TOLERANCE:
                    raise ValidationError(
                        "Order total does not match current prices",
                        detail={"expected_total": total, "submitted_total": total_amount},
                    )

                await self.inventory.reserve_many(
                    StockLine(i.product_id, i.variant_id, i.quantity) for i in priced
                )

                otp = delivery_otp.new_delivery_otp(now)
                order = Order(
                    user_id=user_id,
                    shipping_name=shipping.name,
                    shipping_address=shipping.address,
                    shipping_phone=shipping.phone,
                    subtotal=subtotal,
                    shipping_fee=shipping_fee,
                    coin_discount=discount,
                    coins_redeemed=coins_to_redeem if discount else 0,
                    total_amount=total,
                    status=OrderStatus.PENDING,
                    payment_method=payment_method,
                    payment_status=(
                        PaymentStatus.UNDER_REVIEW
                        if payment_method == PaymentMethod.UPI and upi_transaction_id
                        else PaymentStatus.PENDING
                    ),
                    upi_transaction_id=upi_transaction_id,
                    placed_at=now,
                    otp_code=otp.code,
                    otp_generated_at=otp.generated_at,
                )
                self.session.add(order)
                await self.session.flush()

                for item in priced:
                    item.order_id = order.id
                    self.session.add(item)

                if discount:
                    await self.wallet.debit(
                        user_id,
                        coins_to_redeem,
                        TransactionType.COIN_REDEMPTION,
                        f"Coins redeemed: {coins_to_redeem} coins for ₹{discount} discount on order {order.id}",
                        order_id=order.id,
                        metadata={"subtotal": subtotal, "discount_amount": discount},
                    )

                await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        order_transitions_total.labels(status=OrderStatus.PENDING).inc()
        logger.info(
            "[Orders] Order %s placed by user %s: %s items, total=%s, payment=%s",
            order.id, user_id, len(priced), total, payment_method,
        )
        await self.notifier.order_placed(order)
        return order

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _write_transition(self, order: Order, target: str, **values) -> None:
        if not can_transition(order.status, target):
            raise InvalidTransitionError(order.status, target, order_id=order.id)

        result = await self.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == order.status, Order.version == order.version)
            .values(status=target, version=Order.version + 1, **values)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(
                "Order was modified by another request",
                detail={"order_id": order.id},
            )
        await self.session.refresh(order)

    async def mark_shipped(self, order_id: int, now: Optional[datetime] = None) -> Order:
        now = now or datetime.utcnow()
        try:
            async with translate_db_errors("mark_shipped"):
                order = await self.get_order(order_id)
                await self._write_transition(order, OrderStatus.SHIPPED, shipped_at=now)
                await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        order_transitions_total.labels(status=OrderStatus.SHIPPED).inc()
        logger.info("[Orders] Order %s shipped", order_id)
        await self.notifier.transition(order)
        return order

    async def _record_failed_otp(self, order: Order, otp: delivery_otp.DeliveryOtp) -> None:
        result = await self.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == order.status, Order.version == order.version)
            .values(
                otp_failed_attempts=otp.failed_attempts_json(),
                otp_lockout_until=otp.lockout_until,
                version=Order.version + 1,
            )
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError(
                "Order was modified by another request",
                detail={"order_id": order.id},
            )

    async def mark_delivered(
        self,
        order_id: int,
        code: Optional[str],
        origin_ip: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Confirm delivery with the customer's OTP.

        Wrong codes are recorded (and may lock the order) even though the
        request fails. On success the order reward is credited in the same
        transaction as the status change.
        """
        now = now or datetime.utcnow()
        coins = None
        try:
            async with translate_db_errors("mark_delivered"):
                order = await self.get_order(order_id)
                if order.status != OrderStatus.SHIPPED:
                    raise InvalidTransitionError(order.status, OrderStatus.DELIVERED, order_id=order.id)

                check = delivery_otp.verify(otp_state(order), code, origin_ip=origin_ip, now=now)
                delivery_otp_verifications_total.labels(outcome=check.outcome).inc()

                if not check.success:
                    if check.state_changed:
                        await self._record_failed_otp(order, check.otp)
                        await self.session.commit()
                    logger.warning(
                        "[Orders] Delivery OTP rejected for order %s: outcome=%s attempts_remaining=%s",
                        order.id, check.outcome, check.attempts_remaining,
                    )
                    raise _otp_error(check)

                await self._write_transition(
                    order,
                    OrderStatus.DELIVERED,
                    delivered_at=now,
                    otp_used=True,
                    otp_failed_attempts=check.otp.failed_attempts_json(),
                )
                coins = await award_order_reward(self.session, order)
                await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        order_transitions_total.labels(status=OrderStatus.DELIVERED).inc()
        logger.info("[Orders] Order %s delivered, reward=%s coins", order_id, coins or 0)
        await self.notifier.transition(order, coins_awarded=coins)
        return order

    async def cancel(self, order_id: int, user_id: Optional[int] = None, now: Optional[datetime] = None) -> Order:
        """
        Cancel a Pending order, returning its stock and any redeemed coins.
        When `user_id` is given the order must belong to that customer.
        """
        now = now or datetime.utcnow()
        try:
            async with translate_db_errors("cancel_order"):
                order = await self.get_order(order_id, user_id=user_id)
                await self._write_transition(order, OrderStatus.CANCELLED, cancelled_at=now)

                items = await self.get_items(order.id)
                await self.inventory.release_many(
                    StockLine(i.product_id, i.variant_id, i.quantity) for i in items
                )

                if order.coins_redeemed:
                    await self.wallet.credit(
                        order.user_id,
                        order.coins_redeemed,
                        TransactionType.MANUAL_ADJUSTMENT,
                        f"Refund of {order.coins_redeemed} coins for cancelled order {order.id}",
                        order_id=order.id,
                    )
                await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        order_transitions_total.labels(status=OrderStatus.CANCELLED).inc()
        logger.info("[Orders] Order %s cancelled, %s lines restocked", order_id, len(items))
        await self.notifier.transition(order)
        return order

    async def mark_paid(self, order_id: int) -> Order:
        """Admin confirms payment (e.g. after reviewing a UPI reference)."""
        try:
            async with translate_db_errors("mark_paid"):
                order = await self.get_order(order_id)
                if order.payment_status == PaymentStatus.PAID:
                    return order
                if order.status == OrderStatus.CANCELLED:
                    raise ConflictError("Cancelled orders cannot be marked as paid", detail={"order_id": order_id})

                result = await self.session.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.version == order.version)
                    .values(payment_status=PaymentStatus.PAID, version=Order.version + 1)
                )
                if result.rowcount != 1:
                    raise ConcurrentUpdateError(
                        "Order was modified by another request",
                        detail={"order_id": order.id},
                    )
                await self.session.commit()
                await self.session.refresh(order)
        except Exception:
            await self.session.rollback()
            raise

        logger.info("[Orders] Order %s marked as paid", order_id)
        await self.notifier.status_changed(order)
        return order


def _otp_error(check: delivery_otp.OtpVerification) -> Exception:
    if check.outcome == delivery_otp.OtpOutcome.LOCKED:
        return OtpLockedError(check.lockout_minutes)
    if check.outcome == delivery_otp.OtpOutcome.ALREADY_USED:
        return OtpAlreadyUsedError()
    if check.outcome == delivery_otp.OtpOutcome.BAD_FORMAT:
        return OtpBadFormatError()
    return OtpInvalidError(check.attempts_remaining)


def serialize_order(order: Order, items: Optional[List[OrderItem]] = None, reveal_otp: bool = False) -> Dict[str, Any]:
    data = {
        "id": order.id,
        "user_id": order.user_id,
        "status": order.status,
        "payment_method": order.payment_method,
        "payment_status": order.payment_status,
        "upi_transaction_id": order.upi_transaction_id,
        "shipping": {
            "name": order.shipping_name,
            "address": order.shipping_address,
            "phone": order.shipping_phone,
        },
        "subtotal": order.subtotal,
        "shipping_fee": order.shipping_fee,
        "coin_discount": order.coin_discount,
        "coins_redeemed": order.coins_redeemed,
        "total_amount": order.total_amount,
        "placed_at": order.placed_at.isoformat(),
        "shipped_at": order.shipped_at.isoformat() if order.shipped_at else None,
        "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
        "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
    }
    if items is not None:
        data["items"] = [
            {
                "product_id": i.product_id,
                "variant_id": i.variant_id,
                "name": i.name,
                "variant_name": i.variant_name,
                "unit_price": i.unit_price,
                "quantity": i.quantity,
            }
            for i in items
        ]
    if reveal_otp:
        data["delivery_otp"] = otp_for_customer(order)
    return data
