"""Referral program routes."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from database import get_session
from dependencies import require_user
from models import User
from services import referrals

logger = logging.getLogger(__name__)
referral_router = APIRouter(tags=["referrals"])


class StartVisitRequest(BaseModel):
    referral_code: str
    device_fingerprint: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    source: str = "direct"


class EndVisitRequest(BaseModel):
    end_time: Optional[datetime] = None


class RegisterReferralRequest(BaseModel):
    referral_code: str


class ValidateCodeRequest(BaseModel):
    referral_code: Optional[str] = None


@referral_router.get("/api/referrals/code")
async def get_referral_code(
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """
    Return the authenticated user's referral code and shareable link.
    Generates the code on first call.
    """
    code = await referrals.get_or_create_referral_code(session, user.id)
    await session.commit()
    return {"referral_code": code, "referral_link": referrals.referral_link(code)}


@referral_router.get("/api/referrals/stats")
async def get_referral_stats(
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    stats = await referrals.referrer_stats(session, user.id)
    return {
        "referral_code": user.referral_code,
        "referral_link": referrals.referral_link(user.referral_code) if user.referral_code else None,
        "stats": stats,
    }


@referral_router.post("/api/referrals/validate")
async def validate_referral_code(
    body: ValidateCodeRequest,
    session: AsyncSession = Depends(get_session),
):
    """Anonymous: the sign-up form checks a code before the account exists."""
    return await referrals.validate_referral_code(session, body.referral_code)


@referral_router.get("/api/referrals/leaderboard")
async def get_referral_leaderboard(
    limit: int = 10,
    timeframe: str = "all",
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    return await referrals.leaderboard(session, limit=limit, timeframe=timeframe)


@referral_router.post("/api/referrals/visits", status_code=201)
async def start_referral_visit(
    body: StartVisitRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    """Anonymous: called by the landing page when opened through ?ref=CODE."""
    ip_address = body.ip_address or (request.client.host if request.client else None)
    visit = await referrals.start_visit(
        session,
        body.referral_code,
        body.device_fingerprint,
        ip_address,
        user_agent=body.user_agent or request.headers.get("user-agent"),
        source=body.source,
    )
    await session.commit()
    return {"visit_id": visit.id, "is_unique_device": visit.is_unique_device}


@referral_router.post("/api/referrals/visits/{visit_id}/end")
async def end_referral_visit(
    visit_id: int,
    body: EndVisitRequest,
    session: AsyncSession = Depends(get_session),
):
    """Anonymous: called when the visitor leaves the landing page."""
    try:
        visit, coins = await referrals.end_visit(session, visit_id, body.end_time)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return {
        "visit_id": visit.id,
        "visit_duration": visit.visit_duration,
        "is_valid_visit": visit.is_valid_visit,
        "reward_eligible": visit.reward_eligible,
        "coins_awarded": coins,
    }


@referral_router.post("/api/referrals/register")
async def register_referral(
    body: RegisterReferralRequest,
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """Record that the signed-in (newly registered) user came through a referral link."""
    try:
        result = await referrals.register_referral(session, user.id, body.referral_code)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return {"status": "attributed", **result}
