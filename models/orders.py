"""Order models: orders with their embedded delivery OTP, and line items."""

from typing import Optional
from datetime import datetime
from sqlmodel import Field, SQLModel


class OrderStatus:
    PENDING = "Pending"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

    ALL = (PENDING, SHIPPED, DELIVERED, CANCELLED)


class PaymentStatus:
    PENDING = "Pending"
    UNDER_REVIEW = "UnderReview"
    PAID = "Paid"


class PaymentMethod:
    COD = "COD"
    UPI = "UPI"

    ALL = (COD, UPI)


class Order(SQLModel, table=True):
    """
    A placed order. Never deleted; cancelled orders stay for the ledger.

    The delivery OTP lives on the order row (otp_* columns). The code is
    written once at checkout and never regenerated. Failed attempts are
    kept as a JSON list of {attempted_at, attempted_code, ip_address}.

    `version` is bumped on every state write; writers match on it so two
    concurrent transitions or OTP checks for one order serialize.
    """
    __tablename__ = "customer_order"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)

    # Shipping destination
    shipping_name: str
    shipping_address: str
    shipping_phone: str

    # Amounts (rupees); coins_redeemed is in coins
    subtotal: float
    shipping_fee: float = 0
    coin_discount: float = 0
    coins_redeemed: int = 0
    total_amount: float

    status: str = Field(default=OrderStatus.PENDING, index=True)
    payment_method: str = PaymentMethod.COD
    payment_status: str = PaymentStatus.PENDING
    upi_transaction_id: Optional[str] = None

    placed_at: datetime = Field(default_factory=datetime.utcnow)
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    version: int = Field(default=1)

    # Delivery OTP
    otp_code: str
    otp_generated_at: datetime
    otp_used: bool = False
    otp_failed_attempts: str = "[]"
    otp_lockout_until: Optional[datetime] = None


class OrderItem(SQLModel, table=True):
    """Line item with the unit price captured at purchase time."""
    __tablename__ = "order_item"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="customer_order.id", index=True)
    product_id: int = Field(foreign_key="product.id")
    variant_id: Optional[int] = Field(default=None, foreign_key="product_variant.id")
    name: str
    variant_name: Optional[str] = None
    unit_price: float
    quantity: int
