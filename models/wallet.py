"""Coin ledger models: wallet transactions and referral visits."""

from typing import Optional
from datetime import datetime
from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class TransactionType:
    ORDER_REWARD = "OrderReward"
    REFERRAL_BONUS = "ReferralBonus"
    VISIT_REWARD = "VisitReward"
    COIN_REDEMPTION = "CoinRedemption"
    MANUAL_ADJUSTMENT = "ManualAdjustment"

    ALL = (ORDER_REWARD, REFERRAL_BONUS, VISIT_REWARD, COIN_REDEMPTION, MANUAL_ADJUSTMENT)


class WalletTransaction(SQLModel, table=True):
    """
    Immutable ledger entry for a coin credit or debit.
    Credits are positive; debits (redemptions, negative adjustments) are negative.

    At most one entry of a given type may reference the same order, and at
    most one the same referred user. NULL references never collide.
    """
    __tablename__ = "wallet_transaction"
    __table_args__ = (
        UniqueConstraint("order_id", "transaction_type", name="uq_wallet_txn_order_type"),
        UniqueConstraint("referred_user_id", "transaction_type", name="uq_wallet_txn_referred_type"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    amount: int
    transaction_type: str = Field(index=True)
    description: str
    order_id: Optional[int] = Field(default=None, foreign_key="customer_order.id", index=True)
    referred_user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    balance_after: int
    metadata_json: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ReferralVisit(SQLModel, table=True):
    """
    One landing-page visit through a referral link.

    Created when the visit starts, closed once when it ends. A visit counts
    toward rewards when it lasted at least two minutes and was the first
    visit from that device for that referrer.
    """
    __tablename__ = "referral_visit"

    id: Optional[int] = Field(default=None, primary_key=True)
    referrer_id: int = Field(foreign_key="user.id", index=True)
    referral_code: str = Field(index=True)
    device_fingerprint: str = Field(index=True)
    ip_address: str
    user_agent: Optional[str] = None
    source: str = "direct"  # "social", "whatsapp", "email", "direct"

    visit_start_time: datetime = Field(default_factory=datetime.utcnow)
    visit_end_time: Optional[datetime] = None
    visit_duration: int = 0  # seconds

    is_valid_visit: bool = False
    is_unique_device: bool = True
    reward_eligible: bool = Field(default=False, index=True)
    reward_processed: bool = Field(default=False, index=True)

    created_at: datetime = Field(default_factory=datetime.utcnow)
