"""Customer notifications raised by order transitions."""

from typing import Optional
from datetime import datetime
from sqlmodel import Field, SQLModel


class Notification(SQLModel, table=True):
    """One in-app message about one order. The delivery_otp row is the only place the code is shown."""
    __tablename__ = "order_notification"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    order_id: int = Field(foreign_key="customer_order.id", index=True)

    type: str = Field(index=True)  # order_placed | delivery_otp | order_delivered | order_status
    title: str
    body: str

    is_read: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
