"""Customer accounts, cached wallet figures and bearer sessions."""

from typing import Optional
from datetime import datetime, timedelta
import hashlib
import secrets
import string
from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

REFERRAL_CODE_PREFIX = "INDIRA"
_REFERRAL_ALPHABET = string.ascii_uppercase + string.digits


def hash_token(token: str) -> str:
    """Hash a session token using SHA-256."""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_session_token() -> str:
    """Generate a cryptographically secure session token."""
    return secrets.token_urlsafe(32)


def generate_referral_code() -> str:
    """Generate a shareable referral code, e.g. INDIRA7K2QXB."""
    suffix = "".join(secrets.choice(_REFERRAL_ALPHABET) for _ in range(6))
    return f"{REFERRAL_CODE_PREFIX}{suffix}"


class User(SQLModel, table=True):
    """Registered customers (and admins)."""
    __tablename__ = "user"
    __table_args__ = (CheckConstraint("wallet_balance >= 0", name="ck_user_wallet_non_negative"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    email: Optional[str] = Field(default=None, index=True)
    name: Optional[str] = Field(default=None)
    phone: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    is_admin: bool = Field(default=False)

    # Coin wallet: cached projection of the wallet_transaction ledger
    wallet_balance: int = Field(default=0)
    wallet_total_earned: int = Field(default=0)
    wallet_total_spent: int = Field(default=0)

    # Referral program
    referral_code: Optional[str] = Field(default=None, index=True, unique=True)
    referred_by_id: Optional[int] = Field(default=None, foreign_key="user.id")


class AuthSession(SQLModel, table=True):
    """Active bearer sessions. Issuing tokens is handled by the auth service."""
    __tablename__ = "auth_session"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    session_token_hash: str = Field(index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime = Field(default_factory=lambda: datetime.utcnow() + timedelta(days=7))
    revoked_at: Optional[datetime] = None
