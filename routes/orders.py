"""Order routes - checkout, order history, cancellation and admin fulfillment."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlmodel.ext.asyncio.session import AsyncSession

from database import get_session
from dependencies import get_notifier, require_admin, require_user
from models import PaymentMethod, User
from services.notify import OrderNotifier
from services.orders import OrderLine, OrderService, ShippingInfo, serialize_order
from services.rewards import backfill_order_rewards

logger = logging.getLogger(__name__)

router = APIRouter(tags=["orders"])


# ── Request models ───────────────────────────────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    quantity: int = Field(default=1, gt=0)


class ShippingRequest(BaseModel):
    name: str
    address: str
    phone: str


class PlaceOrderRequest(BaseModel):
    items: List[OrderItemRequest]
    shipping: ShippingRequest
    payment_method: str = PaymentMethod.COD
    total_amount: Optional[float] = None
    upi_transaction_id: Optional[str] = None
    coins_to_redeem: int = 0


class DeliverRequest(BaseModel):
    otp: Optional[str] = None


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# ── Customer ─────────────────────────────────────────────────────────────


@router.post("/api/orders", status_code=201)
async def place_order(
    body: PlaceOrderRequest,
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
    notifier: OrderNotifier = Depends(get_notifier),
):
    """Place an order: reserves stock, generates the delivery OTP, redeems coins."""
    service = OrderService(session, notifier)
    order = await service.place_order(
        user_id=user.id,
        items=[OrderLine(i.product_id, i.quantity, i.variant_id) for i in body.items],
        shipping=ShippingInfo(body.shipping.name, body.shipping.address, body.shipping.phone),
        payment_method=body.payment_method,
        total_amount=body.total_amount,
        upi_transaction_id=body.upi_transaction_id,
        coins_to_redeem=body.coins_to_redeem,
    )
    items = await service.get_items(order.id)
    return {"order": serialize_order(order, list(items))}


@router.get("/api/orders")
async def list_my_orders(
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    orders = await OrderService(session).list_user_orders(user.id)
    return {"orders": [serialize_order(o, reveal_otp=True) for o in orders]}


@router.get("/api/orders/{order_id}")
async def get_my_order(
    order_id: int,
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    service = OrderService(session)
    order = await service.get_order(order_id, user_id=None if user.is_admin else user.id)
    items = await service.get_items(order.id)
    return {"order": serialize_order(order, list(items), reveal_otp=order.user_id == user.id)}


@router.post("/api/orders/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
    notifier: OrderNotifier = Depends(get_notifier),
):
    """Customers cancel their own Pending orders; admins may cancel any."""
    service = OrderService(session, notifier)
    order = await service.cancel(order_id, user_id=None if user.is_admin else user.id)
    return {"order": serialize_order(order)}


# ── Admin ────────────────────────────────────────────────────────────────


@router.get("/api/admin/orders")
async def admin_list_orders(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    result = await OrderService(session).list_orders(status=status, page=page, limit=limit)
    return {
        "orders": [serialize_order(o) for o in result["orders"]],
        "pagination": result["pagination"],
    }


@router.post("/api/admin/orders/{order_id}/ship")
async def admin_ship_order(
    order_id: int,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    notifier: OrderNotifier = Depends(get_notifier),
):
    order = await OrderService(session, notifier).mark_shipped(order_id)
    return {"order": serialize_order(order)}


@router.post("/api/admin/orders/{order_id}/deliver")
async def admin_deliver_order(
    order_id: int,
    body: DeliverRequest,
    request: Request,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    notifier: OrderNotifier = Depends(get_notifier),
):
    """Confirm delivery with the code the customer hands to the delivery agent."""
    order = await OrderService(session, notifier).mark_delivered(
        order_id, body.otp, origin_ip=_client_ip(request)
    )
    return {"order": serialize_order(order)}


@router.post("/api/admin/orders/{order_id}/paid")
async def admin_mark_paid(
    order_id: int,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    notifier: OrderNotifier = Depends(get_notifier),
):
    order = await OrderService(session, notifier).mark_paid(order_id)
    return {"order": serialize_order(order)}


@router.post("/api/admin/rewards/backfill")
async def admin_backfill_rewards(
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Credit order rewards missing for already-delivered orders."""
    logger.info("[Orders] Reward backfill requested by admin %s", admin.id)
    return await backfill_order_rewards(session)
