"""
Centralized FastAPI dependencies for authentication and service wiring.

Token issuance lives in the auth service; here we only resolve an incoming
bearer token to an active session and its user.
"""

from datetime import datetime
from typing import Optional
from fastapi import Header, Depends
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select

from database import get_session
from exceptions import AuthenticationError, AuthorizationError
from models import AuthSession, User, hash_token
from services.notify import OrderNotifier


async def get_current_session(
    authorization: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session)
) -> Optional[AuthSession]:
    """
    Extract and validate session from Authorization header.

    Returns None if the header is missing, the token is unknown, revoked or
    expired.
    """
    if not authorization or not authorization.startswith("Bearer "):
        return None

    token_hash = hash_token(authorization[7:])

    result = await session.exec(
        select(AuthSession)
        .where(
            AuthSession.session_token_hash == token_hash,
            AuthSession.revoked_at == None,  # noqa: E711
            AuthSession.expires_at > datetime.utcnow(),
        )
    )
    return result.first()


async def require_user(
    authorization: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session)
) -> User:
    """
    Dependency that requires an authenticated customer.

    Raises AuthenticationError (401) if not authenticated.
    """
    auth_session = await get_current_session(authorization, session)
    if not auth_session:
        raise AuthenticationError()

    user = await session.get(User, auth_session.user_id)
    if not user:
        raise AuthenticationError()
    return user


async def require_admin(
    user: User = Depends(require_user),
) -> User:
    """
    Dependency that requires admin role.

    Raises AuthenticationError (401) if not authenticated.
    Raises AuthorizationError (403) if not admin.
    """
    if not user.is_admin:
        raise AuthorizationError()
    return user


def get_notifier() -> OrderNotifier:
    return OrderNotifier()
