"""Coin wallet ledger.

The wallet_transaction table is the source of truth; user.wallet_balance is a
cached projection kept in step by the same atomic UPDATE that writes each
entry. Every reward source (orders, referral registrations, referral visits)
and every redemption goes through WalletLedger.credit / debit.

Nothing here commits. Callers own the transaction so a credit or debit can be
bundled with the state change that caused it (a delivered order, a placed
order, a processed batch of visits).
"""

import json
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from exceptions import (
    DuplicateTransactionError,
    InsufficientBalanceError,
    ResourceNotFoundError,
    ValidationError,
)
from models import TransactionType, User, WalletTransaction
from observability import wallet_coins_total

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
MAX_STATS_DAYS = 365
TREND_WINDOW = timedelta(days=180)


class WalletLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _lock_user(self, user_id: int) -> User:
        # Row lock serializes ledger writers for one user on PostgreSQL
        result = await self.session.exec(
            select(User).where(User.id == user_id).with_for_update()
        )
        user = result.first()
        if not user:
            raise ResourceNotFoundError("User not found", detail={"user_id": user_id})
        return user

    async def _ensure_not_recorded(
        self,
        transaction_type: str,
        order_id: Optional[int],
        referred_user_id: Optional[int],
    ) -> None:
        if order_id is None and referred_user_id is None:
            return

        stmt = select(WalletTransaction.id).where(
            WalletTransaction.transaction_type == transaction_type
        )
        if order_id is not None:
            stmt = stmt.where(WalletTransaction.order_id == order_id)
        else:
            stmt = stmt.where(WalletTransaction.referred_user_id == referred_user_id)

        result = await self.session.exec(stmt)
        existing_id = result.first()
        if existing_id is not None:
            raise DuplicateTransactionError(
                f"{transaction_type} already recorded",
                detail={
                    "transaction_type": transaction_type,
                    "order_id": order_id,
                    "referred_user_id": referred_user_id,
                    "transaction_id": existing_id,
                },
            )

    async def _current_balance(self, user_id: int) -> int:
        result = await self.session.exec(select(User.wallet_balance).where(User.id == user_id))
        balance = result.first()
        if balance is None:
            raise ResourceNotFoundError("User not found", detail={"user_id": user_id})
        return balance

    async def _append(
        self,
        user_id: int,
        amount: int,
        transaction_type: str,
        description: str,
        balance_after: int,
        order_id: Optional[int],
        referred_user_id: Optional[int],
        metadata: Optional[Dict[str, Any]],
    ) -> WalletTransaction:
        txn = WalletTransaction(
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            description=description,
            order_id=order_id,
            referred_user_id=referred_user_id,
            balance_after=balance_after,
            metadata_json=json.dumps(metadata) if metadata else None,
        )
        self.session.add(txn)
        try:
            await self.session.flush()
        except IntegrityError as e:
            # A concurrent writer recorded the same idempotency key first
            raise DuplicateTransactionError(
                f"{transaction_type} already recorded",
                detail={
                    "transaction_type": transaction_type,
                    "order_id": order_id,
                    "referred_user_id": referred_user_id,
                },
            ) from e
        return txn

    async def credit(
        self,
        user_id: int,
        amount: int,
        transaction_type: str,
        description: str,
        *,
        order_id: Optional[int] = None,
        referred_user_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Append a positive entry and return the new balance."""
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Credit amount must be a positive whole number of coins", detail={"amount": amount})
        if transaction_type not in TransactionType.ALL:
            raise ValidationError("Unknown transaction type", detail={"transaction_type": transaction_type})

        await self._lock_user(user_id)
        await self._ensure_not_recorded(transaction_type, order_id, referred_user_id)

        await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                wallet_balance=User.wallet_balance + amount,
                wallet_total_earned=User.wallet_total_earned + amount,
            )
        )
        balance = await self._current_balance(user_id)
        await self._append(
            user_id, amount, transaction_type, description, balance,
            order_id, referred_user_id, metadata,
        )

        wallet_coins_total.labels(transaction_type=transaction_type, direction="credit").inc(amount)
        logger.info(
            "[Wallet] Credited %s coins (%s) to user %s, balance=%s",
            amount, transaction_type, user_id, balance,
        )
        return balance

    async def debit(
        self,
        user_id: int,
        amount: int,
        transaction_type: str,
        description: str,
        *,
        order_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Append a negative entry and return the new balance; never overdraws."""
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Debit amount must be a positive whole number of coins", detail={"amount": amount})
        if transaction_type not in TransactionType.ALL:
            raise ValidationError("Unknown transaction type", detail={"transaction_type": transaction_type})

        await self._lock_user(user_id)
        await self._ensure_not_recorded(transaction_type, order_id, None)

        result = await self.session.execute(
            update(User)
            .where(User.id == user_id, User.wallet_balance >= amount)
            .values(
                wallet_balance=User.wallet_balance - amount,
                wallet_total_spent=User.wallet_total_spent + amount,
            )
        )
        if result.rowcount != 1:
            available = await self._current_balance(user_id)
            raise InsufficientBalanceError(available=available, requested=amount)

        balance = await self._current_balance(user_id)
        await self._append(
            user_id, -amount, transaction_type, description, balance,
            order_id, None, metadata,
        )

        wallet_coins_total.labels(transaction_type=transaction_type, direction="debit").inc(amount)
        logger.info(
            "[Wallet] Debited %s coins (%s) from user %s, balance=%s",
            amount, transaction_type, user_id, balance,
        )
        return balance

    async def get_balance(self, user_id: int) -> int:
        return await self._current_balance(user_id)

    async def recompute_balance(self, user_id: int) -> int:
        """
        Rebuild the cached balance from the ledger and repair the user row
        if it drifted. Returns the ledger balance.
        """
        await self._lock_user(user_id)
        result = await self.session.exec(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.user_id == user_id
            )
        )
        ledger_balance = int(result.one())
        cached = await self._current_balance(user_id)
        if cached != ledger_balance:
            logger.warning(
                "[Wallet] Cached balance drift for user %s: cached=%s ledger=%s",
                user_id, cached, ledger_balance,
            )
            await self.session.execute(
                update(User).where(User.id == user_id).values(wallet_balance=ledger_balance)
            )
        return ledger_balance

    async def history(
        self,
        user_id: int,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        transaction_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        filters = [WalletTransaction.user_id == user_id]
        if transaction_type:
            if transaction_type not in TransactionType.ALL:
                raise ValidationError("Unknown transaction type", detail={"transaction_type": transaction_type})
            filters.append(WalletTransaction.transaction_type == transaction_type)

        count_result = await self.session.exec(
            select(func.count()).select_from(WalletTransaction).where(*filters)
        )
        total = count_result.one()

        result = await self.session.exec(
            select(WalletTransaction)
            .where(*filters)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        transactions = result.all()

        return {
            "transactions": [serialize_transaction(t) for t in transactions],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def summary(self, user_id: int) -> Dict[str, Any]:
        result = await self.session.exec(select(User).where(User.id == user_id))
        user = result.first()
        if not user:
            raise ResourceNotFoundError("User not found", detail={"user_id": user_id})

        by_type_result = await self.session.exec(
            select(WalletTransaction.transaction_type, func.sum(WalletTransaction.amount))
            .where(WalletTransaction.user_id == user_id)
            .group_by(WalletTransaction.transaction_type)
        )
        by_type = {t: int(total or 0) for t, total in by_type_result.all()}

        return {
            "balance": user.wallet_balance,
            "total_earned": user.wallet_total_earned,
            "total_spent": user.wallet_total_spent,
            "by_type": by_type,
        }

    async def stats(self, user_id: int, days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Earnings analytics: credits per transaction type over the last `days`
        days, plus a month-by-month trend of credits over the last six months.
        Debits are left out of both.
        """
        if days < 1 or days > MAX_STATS_DAYS:
            raise ValidationError(
                f"Timeframe must be between 1 and {MAX_STATS_DAYS} days", detail={"days": days}
            )
        now = now or datetime.utcnow()

        by_type_result = await self.session.exec(
            select(
                WalletTransaction.transaction_type,
                func.sum(WalletTransaction.amount),
                func.count(WalletTransaction.id),
            )
            .where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.amount > 0,
                WalletTransaction.created_at >= now - timedelta(days=days),
            )
            .group_by(WalletTransaction.transaction_type)
            .order_by(func.sum(WalletTransaction.amount).desc())
        )
        earnings_by_type = [
            {
                "transaction_type": t,
                "total_earned": int(total),
                "transaction_count": count,
                "avg_amount": round(total / count, 2),
            }
            for t, total, count in by_type_result.all()
        ]

        # Grouped here rather than in SQL: month extraction differs between backends
        credits = await self.session.exec(
            select(WalletTransaction.created_at, WalletTransaction.amount).where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.amount > 0,
                WalletTransaction.created_at >= now - TREND_WINDOW,
            )
        )
        months: Dict[Tuple[int, int], List[int]] = defaultdict(list)
        for created_at, amount in credits.all():
            months[(created_at.year, created_at.month)].append(amount)

        return {
            "timeframe": f"{days} days",
            "earnings_by_type": earnings_by_type,
            "monthly_trend": [
                {"year": year, "month": month, "total_earned": sum(amounts), "transaction_count": len(amounts)}
                for (year, month), amounts in sorted(months.items())
            ],
            "total_types": len(earnings_by_type),
        }

    async def adjust(self, user_id: int, amount: int, reason: str, *, admin_id: Optional[int] = None) -> int:
        """Admin correction: positive amounts credit, negative amounts debit."""
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for manual adjustments")
        if amount == 0:
            raise ValidationError("Adjustment amount cannot be zero")

        metadata = {"admin_id": admin_id} if admin_id else None
        description = f"Manual adjustment: {reason.strip()}"
        if amount > 0:
            return await self.credit(
                user_id, amount, TransactionType.MANUAL_ADJUSTMENT, description, metadata=metadata
            )
        return await self.debit(
            user_id, -amount, TransactionType.MANUAL_ADJUSTMENT, description, metadata=metadata
        )


def serialize_transaction(t: WalletTransaction) -> Dict[str, Any]:
    return {
        "id": t.id,
        "amount": t.amount,
        "transaction_type": t.transaction_type,
        "description": t.description,
        "order_id": t.order_id,
        "referred_user_id": t.referred_user_id,
        "balance_after": t.balance_after,
        "created_at": t.created_at.isoformat(),
    }
