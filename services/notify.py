"""Order notification triggers.

Called by OrderService after a transition has committed. Every trigger is
best-effort: it writes an in-app Notification row in its own session and
any failure is logged and counted, never raised back into the order flow.
"""

import logging
from typing import Callable, Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from models import Notification, Order, OrderStatus
from observability import notification_failures_total

logger = logging.getLogger(__name__)


class OrderNotifier:
    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None):
        if session_factory is None:
            from database import async_session_factory
            session_factory = async_session_factory
        self.session_factory = session_factory

    async def _send(self, order: Order, kind: str, title: str, body: str) -> bool:
        notif = Notification(user_id=order.user_id, order_id=order.id, type=kind, title=title, body=body)
        try:
            async with self.session_factory() as session:
                session.add(notif)
                await session.commit()
        except Exception as e:
            notification_failures_total.labels(kind=kind).inc()
            logger.error("[Notify] Failed to send %s for order %s: %s", kind, order.id, e)
            return False
        logger.info("[Notify] Sent %s for order %s to user %s", kind, order.id, order.user_id)
        return True

    async def order_placed(self, order: Order) -> bool:
        return await self._send(
            order,
            "order_placed",
            f"Order #{order.id} confirmed",
            f"We received your order of ₹{order.total_amount:g}. We'll let you know when it ships.",
        )

    async def delivery_otp(self, order: Order) -> bool:
        # Body carries the code; the log lines never do
        return await self._send(
            order,
            "delivery_otp",
            f"Order #{order.id} has shipped",
            f"Share code {order.otp_code} with the delivery agent to receive your order.",
        )

    async def order_delivered(self, order: Order, coins_awarded: Optional[int] = None) -> bool:
        body = "Your order has been delivered. Thank you for shopping with us!"
        if coins_awarded:
            body += f" You earned {coins_awarded} Indira Coins."
        return await self._send(order, "order_delivered", f"Order #{order.id} delivered", body)

    async def status_changed(self, order: Order) -> bool:
        return await self._send(
            order,
            "order_status",
            f"Order #{order.id} is now {order.status}",
            f"Your order status changed to {order.status}.",
        )

    async def transition(self, order: Order, coins_awarded: Optional[int] = None) -> bool:
        """Pick the message for the status the order just reached."""
        if order.status == OrderStatus.SHIPPED:
            return await self.delivery_otp(order)
        if order.status == OrderStatus.DELIVERED:
            return await self.order_delivered(order, coins_awarded)
        return await self.status_changed(order)
