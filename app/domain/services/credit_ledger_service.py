"""
Credit Ledger Service - כל שינוי ביתרת קרדיטים של משתמש עובר כאן.

כל מוטציה נועלת את שורת המשתמש (SELECT ... FOR UPDATE) כך ששינויים
מקבילים לאותו משתמש מסודרים בטור, ומוסיפה CreditTransaction עם
balance_after. השירות לא מבצע commit: הקורא מחזיק את הטרנזקציה
(למשל החזר קרדיטים + עדכון הרשומה נשמרים יחד או לא בכלל).

מודל היתרה: קרדיטי תוכנית (credits_limit - credits_used, מתאפסים בחידוש)
+ credits_balance (רכישות / החזרים שלא ניתן להחזיר לתוכנית).
חיוב צורך קודם מהתוכנית; החזר משחזר קודם ל-credits_used.
"""
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    InsufficientCreditError,
    InvalidCreditAmountError,
    UserNotFoundError,
)
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.credit_transaction import (
    CreditTransaction,
    CreditTransactionType,
    CreditSource,
)
from app.db.models.user import User

logger = get_logger(__name__)


def _validate_amount(amount: Any, user_id: str) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidCreditAmountError(amount, user_id=user_id)
    return amount


class CreditLedgerService:
    """Atomic credit mutations with an append-only transaction log"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_user_for_update(self, user_id: str) -> User:
        result = await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def _append(
        self,
        user: User,
        transaction_type: CreditTransactionType,
        source: CreditSource,
        amount: int,
        *,
        description: str | None = None,
        reference_id: str | None = None,
        credit_purchase_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        entry = CreditTransaction(
            user_id=user.id,
            type=transaction_type,
            source=source,
            amount=amount,
            balance_after=user.available_credits,
            description=description,
            reference_id=reference_id,
            credit_purchase_id=credit_purchase_id,
            meta=meta,
            created_at=utcnow(),
        )
        self.db.add(entry)
        return entry

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        source: CreditSource,
        *,
        transaction_type: CreditTransactionType = CreditTransactionType.EARNED,
        description: str | None = None,
        reference_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        """
        זיכוי קרדיטים (החזר / בונוס).

        בהחזר (REFUNDED) הסכום משוחזר קודם ל-credits_used של התוכנית,
        והיתרה (אם התוכנית כבר חודשה) נכנסת ל-credits_balance.
        """
        amount = _validate_amount(amount, user_id)
        user = await self._get_user_for_update(user_id)

        if transaction_type == CreditTransactionType.REFUNDED:
            restored_to_plan = min(amount, user.credits_used or 0)
            user.credits_used = (user.credits_used or 0) - restored_to_plan
            user.credits_balance = (user.credits_balance or 0) + (amount - restored_to_plan)
        else:
            user.credits_balance = (user.credits_balance or 0) + amount

        entry = self._append(
            user,
            transaction_type,
            source,
            amount,
            description=description,
            reference_id=reference_id,
            meta=meta,
        )
        await self.db.flush()

        logger.info(
            "Credits added",
            extra_data={
                "user_id": user_id,
                "amount": amount,
                "type": transaction_type.value,
                "source": source.value,
                "reference_id": reference_id,
                "balance_after": entry.balance_after,
            },
        )
        return entry

    async def spend_credits(
        self,
        user_id: str,
        amount: int,
        source: CreditSource,
        *,
        description: str | None = None,
        reference_id: str | None = None,
    ) -> CreditTransaction:
        """חיוב קרדיטים: קודם מהתוכנית, אחר כך מהיתרה שנרכשה"""
        amount = _validate_amount(amount, user_id)
        user = await self._get_user_for_update(user_id)

        available = user.available_credits
        if available < amount:
            raise InsufficientCreditError(user_id, available=available, required=amount)

        from_plan = min(amount, user.plan_credits_remaining)
        user.credits_used = (user.credits_used or 0) + from_plan
        user.credits_balance = (user.credits_balance or 0) - (amount - from_plan)

        entry = self._append(
            user,
            CreditTransactionType.SPENT,
            source,
            -amount,
            description=description,
            reference_id=reference_id,
        )
        await self.db.flush()

        logger.info(
            "Credits spent",
            extra_data={
                "user_id": user_id,
                "amount": amount,
                "source": source.value,
                "reference_id": reference_id,
                "balance_after": entry.balance_after,
            },
        )
        return entry

    async def add_purchased_credits(
        self,
        user_id: str,
        amount: int,
        *,
        credit_purchase_id: str,
        description: str | None = None,
    ) -> CreditTransaction:
        """זיכוי חבילת קרדיטים שנרכשה (לא פגה בחידוש תוכנית)"""
        amount = _validate_amount(amount, user_id)
        user = await self._get_user_for_update(user_id)
        user.credits_balance = (user.credits_balance or 0) + amount

        entry = self._append(
            user,
            CreditTransactionType.EARNED,
            CreditSource.PURCHASE,
            amount,
            description=description or f"Compra de {amount} créditos",
            reference_id=credit_purchase_id,
            credit_purchase_id=credit_purchase_id,
        )
        await self.db.flush()

        logger.info(
            "Purchased credits added",
            extra_data={
                "user_id": user_id,
                "amount": amount,
                "credit_purchase_id": credit_purchase_id,
                "balance_after": entry.balance_after,
            },
        )
        return entry

    async def renew_subscription_credits(
        self,
        user_id: str,
        credits_limit: int,
        *,
        expires_at: datetime | None = None,
        description: str | None = None,
    ) -> CreditTransaction:
        """
        חידוש קרדיטי תוכנית: credits_used מתאפס ו-credits_limit נקבע מחדש.

        קרדיטי תוכנית שלא נוצלו נרשמים כ-EXPIRED לפני הזיכוי החדש.
        """
        credits_limit = _validate_amount(credits_limit, user_id)
        user = await self._get_user_for_update(user_id)
        now = utcnow()

        unused = user.plan_credits_remaining
        if unused > 0:
            user.credits_used = user.credits_limit or 0
            self._append(
                user,
                CreditTransactionType.EXPIRED,
                CreditSource.EXPIRATION,
                -unused,
                description="Créditos do ciclo anterior expirados",
            )

        user.credits_limit = credits_limit
        user.credits_used = 0
        user.last_credit_renewal_at = now
        if expires_at is not None:
            user.credits_expires_at = expires_at

        entry = self._append(
            user,
            CreditTransactionType.EARNED,
            CreditSource.SUBSCRIPTION,
            credits_limit,
            description=description or "Renovação de créditos da assinatura",
        )
        await self.db.flush()

        logger.info(
            "Subscription credits renewed",
            extra_data={
                "user_id": user_id,
                "credits_limit": credits_limit,
                "expired_unused": unused,
                "balance_after": entry.balance_after,
            },
        )
        return entry

    async def get_available_credits(self, user_id: str) -> int:
        user = await self.db.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user.available_credits

    async def get_transaction_history(
        self,
        user_id: str,
        limit: int = 20
    ) -> list[CreditTransaction]:
        """Get ledger history for a user, newest first"""
        result = await self.db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
