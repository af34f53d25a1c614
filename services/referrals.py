"""Referral tracking: shareable codes, landing-page visits and registrations."""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import case, func, update
from sqlalchemy.orm import aliased
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from exceptions import ConflictError, ResourceNotFoundError, ValidationError
from models import ReferralVisit, TransactionType, User, WalletTransaction, generate_referral_code
from services.rewards import award_referral_bonus, process_visit_rewards, visit_reward

logger = logging.getLogger(__name__)

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

MIN_VISIT_DURATION_SECONDS = 120
RECENT_VISIT_DAYS = 30
VISIT_SOURCES = ("social", "whatsapp", "email", "direct")

_CODE_ATTEMPTS = 5

LEADERBOARD_TIMEFRAMES = {"all": None, "30d": 30, "7d": 7}
MAX_LEADERBOARD_SIZE = 50


def referral_link(code: str) -> str:
    return f"{FRONTEND_URL}?ref={code}"


def _normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


async def _find_referrer(session: AsyncSession, referral_code: str) -> User:
    result = await session.exec(select(User).where(User.referral_code == referral_code))
    referrer = result.first()
    if not referrer:
        raise ResourceNotFoundError("Invalid referral code", detail={"referral_code": referral_code})
    return referrer


async def get_or_create_referral_code(session: AsyncSession, user_id: int) -> str:
    """Return the user's referral code, generating one on first use."""
    user = await session.get(User, user_id)
    if not user:
        raise ResourceNotFoundError("User not found", detail={"user_id": user_id})
    if user.referral_code:
        return user.referral_code

    for _ in range(_CODE_ATTEMPTS):
        code = generate_referral_code()
        taken = await session.exec(select(User.id).where(User.referral_code == code))
        if taken.first() is None:
            break
    else:
        raise ConflictError("Could not allocate a unique referral code, please retry")

    user.referral_code = code
    session.add(user)
    await session.flush()
    logger.info("[Referral] Generated code %s for user %s", code, user_id)
    return code


async def start_visit(
    session: AsyncSession,
    referral_code: str,
    device_fingerprint: str,
    ip_address: str,
    user_agent: Optional[str] = None,
    source: str = "direct",
    now: Optional[datetime] = None,
) -> ReferralVisit:
    """Record a landing-page visit made through a referral link."""
    code = _normalize_code(referral_code)
    if not code or not device_fingerprint or not ip_address:
        raise ValidationError("Referral code, device fingerprint, and IP address are required")
    if source not in VISIT_SOURCES:
        source = "direct"

    referrer = await _find_referrer(session, code)

    seen = await session.exec(
        select(ReferralVisit.id).where(
            ReferralVisit.referrer_id == referrer.id,
            ReferralVisit.device_fingerprint == device_fingerprint,
        )
    )
    is_unique_device = seen.first() is None

    visit = ReferralVisit(
        referrer_id=referrer.id,
        referral_code=code,
        device_fingerprint=device_fingerprint,
        ip_address=ip_address,
        user_agent=user_agent,
        source=source,
        visit_start_time=now or datetime.utcnow(),
        is_unique_device=is_unique_device,
    )
    session.add(visit)
    await session.flush()
    logger.info(
        "[Referral] Visit %s started for referrer %s (unique_device=%s)",
        visit.id, referrer.id, is_unique_device,
    )
    return visit


async def end_visit(
    session: AsyncSession,
    visit_id: int,
    end_time: Optional[datetime] = None,
) -> Tuple[ReferralVisit, int]:
    """
    Close a visit once: set its duration and eligibility, then try to turn
    pending eligible visits into a visit reward.

    Returns the visit and the coins credited to the referrer (usually 0).
    """
    visit = await session.get(ReferralVisit, visit_id)
    if not visit:
        raise ResourceNotFoundError("Visit not found", detail={"visit_id": visit_id})
    if visit.visit_end_time is not None:
        raise ConflictError("Visit already ended", detail={"visit_id": visit_id})

    end_time = _as_naive_utc(end_time) if end_time else datetime.utcnow()
    if end_time < visit.visit_start_time:
        raise ValidationError("End time is before the visit started", detail={"visit_id": visit_id})

    duration = int((end_time - visit.visit_start_time).total_seconds())
    is_valid = duration >= MIN_VISIT_DURATION_SECONDS
    eligible = is_valid and visit.is_unique_device

    result = await session.execute(
        update(ReferralVisit)
        .where(ReferralVisit.id == visit_id, ReferralVisit.visit_end_time.is_(None))
        .values(
            visit_end_time=end_time,
            visit_duration=duration,
            is_valid_visit=is_valid,
            reward_eligible=eligible,
        )
    )
    if result.rowcount != 1:
        raise ConflictError("Visit already ended", detail={"visit_id": visit_id})

    coins = 0
    if eligible:
        coins = await process_visit_rewards(session, visit.referrer_id)

    await session.refresh(visit)
    logger.info(
        "[Referral] Visit %s ended: duration=%ss valid=%s eligible=%s",
        visit_id, duration, is_valid, eligible,
    )
    return visit, coins


async def register_referral(
    session: AsyncSession,
    referred_user_id: int,
    referral_code: str,
) -> Dict[str, Any]:
    """Attribute a new customer to a referrer and credit the registration bonus."""
    code = _normalize_code(referral_code)
    if not code:
        raise ValidationError("Referral code is required")

    referrer = await _find_referrer(session, code)
    referred = await session.get(User, referred_user_id)
    if not referred:
        raise ResourceNotFoundError("User not found", detail={"user_id": referred_user_id})
    if referrer.id == referred.id:
        raise ValidationError("You cannot use your own referral code")

    result = await session.execute(
        update(User)
        .where(User.id == referred_user_id, User.referred_by_id.is_(None))
        .values(referred_by_id=referrer.id)
    )
    if result.rowcount != 1:
        raise ConflictError(
            "This account has already been referred",
            detail={"user_id": referred_user_id},
        )

    new_balance = await award_referral_bonus(
        session, referrer.id, referred_user_id, code, referred_name=referred.name
    )
    logger.info("[Referral] User %s registered via referrer %s", referred_user_id, referrer.id)
    return {
        "referrer_id": referrer.id,
        "referral_code": code,
        "referrer_balance": new_balance,
    }


async def referrer_stats(session: AsyncSession, referrer_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()

    counts = await session.exec(
        select(
            func.count(ReferralVisit.id),
            func.coalesce(func.sum(case((ReferralVisit.is_unique_device == True, 1), else_=0)), 0),  # noqa: E712
            func.coalesce(func.sum(case((ReferralVisit.is_valid_visit == True, 1), else_=0)), 0),  # noqa: E712
        ).where(ReferralVisit.referrer_id == referrer_id)
    )
    total_visits, unique_visits, valid_visits = counts.one()

    pending = await session.exec(
        select(func.count(ReferralVisit.id)).where(
            ReferralVisit.referrer_id == referrer_id,
            ReferralVisit.reward_eligible == True,  # noqa: E712
            ReferralVisit.reward_processed == False,  # noqa: E712
        )
    )
    pending_eligible = pending.one()

    referrals = await session.exec(
        select(func.count(User.id)).where(User.referred_by_id == referrer_id)
    )
    total_referrals = referrals.one()

    earnings = await session.exec(
        select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
            WalletTransaction.user_id == referrer_id,
            WalletTransaction.transaction_type.in_(
                [TransactionType.REFERRAL_BONUS, TransactionType.VISIT_REWARD]
            ),
        )
    )
    total_earnings = earnings.one()

    recent = await session.exec(
        select(ReferralVisit)
        .where(
            ReferralVisit.referrer_id == referrer_id,
            ReferralVisit.created_at >= now - timedelta(days=RECENT_VISIT_DAYS),
        )
        .order_by(ReferralVisit.created_at.desc())
        .limit(20)
    )

    return {
        "total_visits": total_visits,
        "unique_visits": int(unique_visits),
        "valid_visits": int(valid_visits),
        "reward_eligible_visits": pending_eligible,
        "pending_visit_rewards": visit_reward(pending_eligible),
        "total_referrals": total_referrals,
        "total_referral_earnings": int(total_earnings),
        "recent_visits": [
            {
                "id": v.id,
                "visit_duration": v.visit_duration,
                "is_valid_visit": v.is_valid_visit,
                "is_unique_device": v.is_unique_device,
                "source": v.source,
                "created_at": v.created_at.isoformat(),
            }
            for v in recent.all()
        ],
    }


async def validate_referral_code(session: AsyncSession, referral_code: Optional[str]) -> Dict[str, Any]:
    """Check a code typed at registration; NotFound when no one owns it."""
    code = _normalize_code(referral_code)
    if not code:
        raise ValidationError("Referral code is required")
    referrer = await _find_referrer(session, code)
    return {
        "valid": True,
        "referral_code": code,
        "referrer": {"id": referrer.id, "name": referrer.name},
    }


async def leaderboard(
    session: AsyncSession,
    limit: int = 10,
    timeframe: str = "all",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Top referrers by referred registrations, ties broken by referral coins.

    `timeframe` is "all", "30d" or "7d" and applies to registrations, visits
    and coins alike. Referrers with no registrations in the window are left out.
    """
    if timeframe not in LEADERBOARD_TIMEFRAMES:
        raise ValidationError(
            "Unknown timeframe", detail={"timeframe": timeframe, "allowed": list(LEADERBOARD_TIMEFRAMES)}
        )
    limit = max(1, min(limit, MAX_LEADERBOARD_SIZE))
    days = LEADERBOARD_TIMEFRAMES[timeframe]
    since = (now or datetime.utcnow()) - timedelta(days=days) if days else None

    referred = aliased(User)
    signups = select(referred.referred_by_id.label("referrer_id"), func.count(referred.id).label("referrals")).where(
        referred.referred_by_id.is_not(None)
    )
    coins = select(WalletTransaction.user_id.label("referrer_id"), func.sum(WalletTransaction.amount).label("coins")).where(
        WalletTransaction.transaction_type.in_([TransactionType.REFERRAL_BONUS, TransactionType.VISIT_REWARD])
    )
    visits = select(ReferralVisit.referrer_id.label("referrer_id"), func.count(ReferralVisit.id).label("visits"))
    if since is not None:
        signups = signups.where(referred.created_at >= since)
        coins = coins.where(WalletTransaction.created_at >= since)
        visits = visits.where(ReferralVisit.created_at >= since)
    signups = signups.group_by(referred.referred_by_id).subquery()
    coins = coins.group_by(WalletTransaction.user_id).subquery()
    visits = visits.group_by(ReferralVisit.referrer_id).subquery()

    coins_earned = func.coalesce(coins.c.coins, 0)
    result = await session.exec(
        select(
            User.id,
            User.name,
            User.referral_code,
            signups.c.referrals,
            func.coalesce(visits.c.visits, 0),
            coins_earned,
        )
        .join(signups, signups.c.referrer_id == User.id)
        .outerjoin(coins, coins.c.referrer_id == User.id)
        .outerjoin(visits, visits.c.referrer_id == User.id)
        .order_by(signups.c.referrals.desc(), coins_earned.desc(), User.id)
        .limit(limit)
    )
    rows = [
        {
            "rank": rank,
            "user_id": user_id,
            "name": name,
            "referral_code": code,
            "successful_referrals": referrals,
            "total_visits": int(visit_count),
            "coins_earned": int(earned),
        }
        for rank, (user_id, name, code, referrals, visit_count, earned) in enumerate(result.all(), start=1)
    ]
    return {"leaderboard": rows, "timeframe": timeframe, "total": len(rows)}
