"""
Subscription Reconciler - החלת אירועי Asaas על מנוי המשתמש ועל ה-ledger.

מכונת מצבים למנוי:
NONE → ACTIVE ⇄ {OVERDUE, PAST_DUE} → {CANCELLED, EXPIRED};
CHARGEBACK ו-PAYMENT_FAILED נגישים מ-ACTIVE. ACTIVE → ACTIVE = חידוש.
מעבר לא חוקי נרשם בלוג ומדולג (לא חריגה: webhooks מגיעים ללא סדר).

תשלום מוצלח:
- רכישת קרדיטים → CreditPurchase מסומן COMPLETED בעדכון מותנה, וזיכוי פעם אחת.
- תשלום מנוי → הפעלת המנוי עם תוכנית/מחזור, חידוש קרדיטים, ואז קופון
  (עדכון מחיר אצל Asaas) אם needs_price_update פעיל. הדגל מתאפס פעם אחת.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException, UserNotFoundError, ValidationException
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.credit_purchase import CreditPurchase, CreditPurchaseStatus
from app.db.models.payment import Payment, PaymentStatus, PaymentType
from app.db.models.usage_log import UsageLog
from app.db.models.user import User, Plan, BillingCycle, SubscriptionStatus
from app.domain.services.credit_ledger_service import CreditLedgerService
from app.domain.services.realtime_service import broadcast_credits_updated, broadcast_user_updated
from app.domain.services.status_mapper import PAYMENT_SUCCESS_EVENTS, map_asaas_event
from app.domain.webhook_payloads import AsaasPayment, AsaasSubscription, AsaasWebhookPayload

logger = get_logger(__name__)

PLAN_CREDITS: dict[Plan, int] = {
    Plan.STARTER: 500,
    Plan.PREMIUM: 1200,
    Plan.GOLD: 2500,
}

PLAN_PRICES: dict[tuple[Plan, BillingCycle], Decimal] = {
    (Plan.STARTER, BillingCycle.MONTHLY): Decimal("89.00"),
    (Plan.STARTER, BillingCycle.YEARLY): Decimal("708.00"),
    (Plan.PREMIUM, BillingCycle.MONTHLY): Decimal("269.00"),
    (Plan.PREMIUM, BillingCycle.YEARLY): Decimal("2148.00"),
    (Plan.GOLD, BillingCycle.MONTHLY): Decimal("489.00"),
    (Plan.GOLD, BillingCycle.YEARLY): Decimal("3912.00"),
}

_PRICE_TOLERANCE = Decimal("0.01")

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.NONE: frozenset({SubscriptionStatus.ACTIVE}),
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.OVERDUE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CHARGEBACK,
        SubscriptionStatus.PAYMENT_FAILED,
    }),
    SubscriptionStatus.OVERDUE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    }),
    SubscriptionStatus.PAST_DUE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.OVERDUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    }),
    SubscriptionStatus.CANCELLED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED}),
    SubscriptionStatus.EXPIRED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.CHARGEBACK: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    }),
    SubscriptionStatus.PAYMENT_FAILED: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.OVERDUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    }),
}

# החזר / מחיקה של תשלום שהוא רכישת קרדיטים לא נוגע במנוי
_PURCHASE_STATUS_BY_EVENT: dict[str, CreditPurchaseStatus] = {
    "PAYMENT_REFUNDED": CreditPurchaseStatus.REFUNDED,
    "PAYMENT_DELETED": CreditPurchaseStatus.CANCELLED,
}

_PAYMENT_STATUS_BY_EVENT: dict[str, PaymentStatus] = {
    "PAYMENT_OVERDUE": PaymentStatus.OVERDUE,
    "PAYMENT_REFUNDED": PaymentStatus.REFUNDED,
    "PAYMENT_DELETED": PaymentStatus.CANCELLED,
}


@dataclass
class ReconcileResult:
    action: str
    user_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def is_transition_allowed(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _parse_cycle(value: str | None) -> BillingCycle | None:
    if not value:
        return None
    try:
        return BillingCycle(value.strip().upper())
    except ValueError:
        return None


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable gateway date", extra_data={"value": value})
        return None
    return parsed.replace(tzinfo=None)


class SubscriptionReconciler:
    """Applies payment-gateway webhook outcomes to subscriptions and credits"""

    def __init__(
        self,
        db: AsyncSession,
        gateway: Any = None,
        ledger: CreditLedgerService | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.ledger = ledger or CreditLedgerService(db)

    # ── ניתוב אירועים ──

    async def handle_event(self, payload: AsaasWebhookPayload) -> ReconcileResult:
        event = payload.event

        if event in PAYMENT_SUCCESS_EVENTS:
            if payload.payment is None:
                raise ValidationException(f"{event} without payment object", field="payment")
            return await self.handle_payment_success(payload.payment)

        target = map_asaas_event(event)
        if target is None:
            await self._log_usage(
                None,
                "WEBHOOK_UNHANDLED",
                {
                    "event": event,
                    "paymentId": payload.payment.id if payload.payment else None,
                    "subscriptionId": payload.subscription.id if payload.subscription else None,
                },
            )
            await self.db.commit()
            logger.info("Unhandled gateway event recorded", extra_data={"event": event})
            return ReconcileResult(action="unhandled", details={"event": event})

        if event.startswith("PAYMENT_"):
            if payload.payment is None:
                raise ValidationException(f"{event} without payment object", field="payment")
            return await self._handle_payment_status_event(event, payload.payment, target)

        if payload.subscription is None:
            raise ValidationException(f"{event} without subscription object", field="subscription")
        return await self._handle_subscription_event(event, payload.subscription, target)

    async def _handle_payment_status_event(
        self,
        event: str,
        payment: AsaasPayment,
        target: SubscriptionStatus,
    ) -> ReconcileResult:
        purchase = await self._find_credit_purchase(payment)
        if purchase is not None and event in _PURCHASE_STATUS_BY_EVENT:
            new_status = _PURCHASE_STATUS_BY_EVENT[event]
            await self.db.execute(
                update(CreditPurchase)
                .where(CreditPurchase.id == purchase.id, CreditPurchase.status != new_status)
                .values(status=new_status, updated_at=utcnow())
            )
            await self.db.commit()
            logger.info(
                "Credit purchase status updated from gateway event",
                extra_data={"credit_purchase_id": purchase.id, "event": event, "status": new_status.value},
            )
            return ReconcileResult(
                action="credit_purchase_status_updated",
                user_id=purchase.user_id,
                details={"creditPurchaseId": purchase.id, "status": new_status.value},
            )

        payment_record = await self._find_payment_record(payment)
        user = await self._resolve_user(
            payment.customer,
            fallback_user_id=payment_record.user_id if payment_record else None,
        )

        if payment_record is not None and event in _PAYMENT_STATUS_BY_EVENT:
            payment_record.status = _PAYMENT_STATUS_BY_EVENT[event]

        changed = await self.update_subscription_status(user.id, target)
        await self._log_usage(user.id, event, {"paymentId": payment.id, "status": target.value})
        await self.db.commit()
        if changed:
            await broadcast_user_updated(user.id, subscriptionStatus=target.value)
        return ReconcileResult(
            action="subscription_status_updated" if changed else "subscription_status_unchanged",
            user_id=user.id,
            details={"status": target.value},
        )

    async def _handle_subscription_event(
        self,
        event: str,
        subscription: AsaasSubscription,
        target: SubscriptionStatus,
    ) -> ReconcileResult:
        customer_id = subscription.customer
        if not customer_id and self.gateway is not None:
            remote = await self.gateway.get_subscription(subscription.id)
            customer_id = remote.get("customer")

        user = await self._find_user_by_customer(customer_id)
        if user is None:
            user = (await self.db.execute(
                select(User).where(User.subscription_id == subscription.id)
            )).scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(customer_id or subscription.id)

        changed = await self.update_subscription_status(
            user.id,
            target,
            ends_at=_parse_date(subscription.end_date),
        )
        await self._log_usage(user.id, event, {"subscriptionId": subscription.id, "status": target.value})
        await self.db.commit()
        if changed:
            await broadcast_user_updated(user.id, subscriptionStatus=target.value)
        return ReconcileResult(
            action="subscription_status_updated" if changed else "subscription_status_unchanged",
            user_id=user.id,
            details={"status": target.value},
        )

    # ── תשלום מוצלח ──

    async def handle_payment_success(self, payment: AsaasPayment) -> ReconcileResult:
        purchase = await self._find_credit_purchase(payment)
        payment_record = await self._find_payment_record(payment)

        fallback_user_id = None
        if purchase is not None:
            fallback_user_id = purchase.user_id
        elif payment_record is not None:
            fallback_user_id = payment_record.user_id
        user = await self._resolve_user(payment.customer, fallback_user_id=fallback_user_id)

        if purchase is not None:
            return await self._apply_credit_purchase(user, purchase, payment, payment_record)
        return await self._apply_subscription_payment(user, payment, payment_record)

    async def _apply_credit_purchase(
        self,
        user: User,
        purchase: CreditPurchase,
        payment: AsaasPayment,
        payment_record: Payment | None,
    ) -> ReconcileResult:
        now = utcnow()
        claim = await self.db.execute(
            update(CreditPurchase)
            .where(
                CreditPurchase.id == purchase.id,
                CreditPurchase.status != CreditPurchaseStatus.COMPLETED,
            )
            .values(
                status=CreditPurchaseStatus.COMPLETED,
                asaas_payment_id=payment.id,
                confirmed_at=now,
                updated_at=now,
            )
        )
        if claim.rowcount == 0:
            await self.db.commit()
            logger.info(
                "Credit purchase already completed, skipping",
                extra_data={"credit_purchase_id": purchase.id, "payment_id": payment.id},
            )
            return ReconcileResult(
                action="credit_purchase_already_completed",
                user_id=user.id,
                details={"creditPurchaseId": purchase.id},
            )

        entry = await self.ledger.add_purchased_credits(
            user.id,
            purchase.credit_amount,
            credit_purchase_id=purchase.id,
        )
        if payment_record is not None:
            payment_record.status = PaymentStatus.CONFIRMED
            payment_record.confirmed_at = now
            payment_record.asaas_payment_id = payment_record.asaas_payment_id or payment.id

        await self._log_usage(
            user.id,
            "PAYMENT_RECEIVED",
            {"paymentId": payment.id, "value": str(payment.value), "type": PaymentType.CREDIT_PURCHASE.value},
        )
        await self.db.commit()
        await broadcast_credits_updated(
            user.id,
            entry.balance_after,
            creditPurchaseId=purchase.id,
            creditsAdded=purchase.credit_amount,
        )

        logger.info(
            "Credit purchase completed",
            extra_data={
                "user_id": user.id,
                "credit_purchase_id": purchase.id,
                "credit_amount": purchase.credit_amount,
            },
        )
        return ReconcileResult(
            action="credits_purchased",
            user_id=user.id,
            details={
                "creditPurchaseId": purchase.id,
                "creditAmount": purchase.credit_amount,
                "balanceAfter": entry.balance_after,
            },
        )

    async def _apply_subscription_payment(
        self,
        user: User,
        payment: AsaasPayment,
        payment_record: Payment | None,
    ) -> ReconcileResult:
        if (
            payment_record is not None
            and payment_record.status == PaymentStatus.CONFIRMED
            and payment_record.asaas_payment_id == payment.id
        ):
            logger.info(
                "Subscription payment already applied",
                extra_data={"user_id": user.id, "payment_id": payment.id},
            )
            return ReconcileResult(
                action="subscription_payment_already_applied",
                user_id=user.id,
                details={"paymentId": payment.id},
            )

        plan, cycle, ends_at = await self._resolve_plan(user, payment, payment_record)
        now = utcnow()

        if payment_record is None:
            payment_record = Payment(
                user_id=user.id,
                type=PaymentType.SUBSCRIPTION,
                value=payment.value,
                plan_type=plan,
                billing_cycle=cycle,
                subscription_id=payment.subscription,
            )
            self.db.add(payment_record)
        # רשומה של מחזור קודם (אותו subscription id) → רשומה חדשה לתשלום הזה
        elif payment_record.asaas_payment_id and payment_record.asaas_payment_id != payment.id:
            payment_record = Payment(
                user_id=user.id,
                type=PaymentType.SUBSCRIPTION,
                value=payment.value,
                plan_type=plan,
                billing_cycle=cycle,
                subscription_id=payment.subscription,
            )
            self.db.add(payment_record)

        payment_record.status = PaymentStatus.CONFIRMED
        payment_record.asaas_payment_id = payment.id
        payment_record.confirmed_at = now

        await self.update_subscription_status(
            user.id,
            SubscriptionStatus.ACTIVE,
            plan=plan,
            billing_cycle=cycle,
            ends_at=ends_at,
            subscription_id=payment.subscription,
        )
        await self._log_usage(
            user.id,
            "PAYMENT_RECEIVED",
            {"paymentId": payment.id, "value": str(payment.value), "type": PaymentType.SUBSCRIPTION.value},
        )
        # ההפעלה נשמרת לפני הקופון: כישלון מול Asaas לא מבטל את המנוי
        await self.db.commit()

        price_updated = await self._apply_first_cycle_coupon(user.id, payment.subscription)

        await broadcast_user_updated(
            user.id,
            subscriptionStatus=SubscriptionStatus.ACTIVE.value,
            plan=plan.value if plan else None,
            billingCycle=cycle.value if cycle else None,
        )
        await broadcast_credits_updated(user.id, user.available_credits)

        logger.info(
            "Subscription payment applied",
            extra_data={
                "user_id": user.id,
                "payment_id": payment.id,
                "plan": plan.value if plan else None,
                "billing_cycle": cycle.value if cycle else None,
                "price_updated": price_updated,
            },
        )
        return ReconcileResult(
            action="subscription_activated",
            user_id=user.id,
            details={
                "plan": plan.value if plan else None,
                "billingCycle": cycle.value if cycle else None,
                "priceUpdated": price_updated,
            },
        )

    async def _resolve_plan(
        self,
        user: User,
        payment: AsaasPayment,
        payment_record: Payment | None,
    ) -> tuple[Plan | None, BillingCycle | None, datetime | None]:
        """
        סדר העדיפויות: רשומת Payment המקורית → תשלום המנוי האחרון של המשתמש
        עם תוכנית → אובייקט המנוי ב-Asaas (cycle / endDate) → הסקה מהמחיר
        → התוכנית הנוכחית של המשתמש.
        """
        plan = payment_record.plan_type if payment_record else None
        cycle = payment_record.billing_cycle if payment_record else None
        ends_at = None

        if plan is None:
            recent = (await self.db.execute(
                select(Payment)
                .where(
                    Payment.user_id == user.id,
                    Payment.type == PaymentType.SUBSCRIPTION,
                    Payment.plan_type.is_not(None),
                )
                .order_by(Payment.created_at.desc())
                .limit(1)
            )).scalar_one_or_none()
            if recent is not None:
                plan = recent.plan_type
                cycle = cycle or recent.billing_cycle

        if payment.subscription and self.gateway is not None:
            try:
                remote = await self.gateway.get_subscription(payment.subscription)
            except AppException as e:
                logger.warning(
                    "Could not fetch gateway subscription",
                    extra_data={"subscription_id": payment.subscription, "error": str(e)},
                )
                remote = None
            if remote:
                cycle = cycle or _parse_cycle(remote.get("cycle"))
                ends_at = _parse_date(remote.get("endDate"))

        if plan is None:
            inferred = self.infer_plan_from_price(payment.value)
            if inferred is not None:
                plan = inferred[0]
                cycle = cycle or inferred[1]

        plan = plan or user.plan
        cycle = cycle or user.billing_cycle or BillingCycle.MONTHLY
        return plan, cycle, ends_at

    @staticmethod
    def infer_plan_from_price(value: Any) -> tuple[Plan, BillingCycle] | None:
        """הסקת תוכנית ומחזור ממחיר התשלום (None אם אין התאמה)"""
        if value is None:
            return None
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None
        for (plan, cycle), price in PLAN_PRICES.items():
            if abs(amount - price) <= _PRICE_TOLERANCE:
                return plan, cycle
        return None

    async def _apply_first_cycle_coupon(self, user_id: str, subscription_id: str | None) -> bool:
        """עדכון מחיר המנוי למחיר המקורי אחרי תשלום ראשון מוזל. פעם אחת בלבד."""
        if not subscription_id:
            return False

        record = (await self.db.execute(
            select(Payment)
            .where(
                Payment.user_id == user_id,
                Payment.subscription_id == subscription_id,
                Payment.needs_price_update.is_(True),
            )
            .limit(1)
        )).scalar_one_or_none()
        if record is None or record.original_price is None:
            return False

        if self.gateway is None:
            logger.warning(
                "Price update pending but no gateway client configured",
                extra_data={"payment_id": record.id, "subscription_id": subscription_id},
            )
            return False

        try:
            await self.gateway.update_subscription_value(subscription_id, record.original_price)
        except AppException as e:
            logger.error(
                "Failed to restore subscription price after coupon",
                extra_data={
                    "payment_id": record.id,
                    "subscription_id": subscription_id,
                    "error": str(e),
                },
            )
            return False

        cleared = await self.db.execute(
            update(Payment)
            .where(Payment.id == record.id, Payment.needs_price_update.is_(True))
            .values(needs_price_update=False, updated_at=utcnow())
        )
        await self.db.commit()
        logger.info(
            "Subscription price restored after first-cycle coupon",
            extra_data={
                "payment_id": record.id,
                "subscription_id": subscription_id,
                "original_price": str(record.original_price),
            },
        )
        return cleared.rowcount > 0

    # ── מכונת המצבים ──

    async def update_subscription_status(
        self,
        user_id: str,
        status: SubscriptionStatus,
        *,
        plan: Plan | None = None,
        billing_cycle: BillingCycle | None = None,
        ends_at: datetime | None = None,
        subscription_id: str | None = None,
    ) -> bool:
        """
        מעבר סטטוס מנוי. לא מבצע commit.

        Returns:
            True אם הסטטוס הוחל, False אם המעבר דולג (no-op או לא חוקי).
        """
        user = (await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(user_id)

        current = user.subscription_status or SubscriptionStatus.NONE
        if status == current and status != SubscriptionStatus.ACTIVE:
            logger.info(
                "Subscription already in target status",
                extra_data={"user_id": user_id, "status": status.value},
            )
            return False

        if not is_transition_allowed(current, status):
            logger.warning(
                "Subscription transition not allowed, skipping",
                extra_data={"user_id": user_id, "from": current.value, "to": status.value},
            )
            return False

        user.subscription_status = status
        if subscription_id:
            user.subscription_id = subscription_id
        if ends_at is not None:
            user.subscription_ends_at = ends_at

        if status == SubscriptionStatus.ACTIVE:
            await self._activate(user, plan, billing_cycle)

        logger.info(
            "Subscription status updated",
            extra_data={"user_id": user_id, "from": current.value, "to": status.value},
        )
        return True

    async def _activate(self, user: User, plan: Plan | None, billing_cycle: BillingCycle | None) -> None:
        now = utcnow()
        if plan is not None:
            user.plan = plan
        if billing_cycle is not None:
            user.billing_cycle = billing_cycle
        if user.subscription_started_at is None:
            user.subscription_started_at = now

        if user.plan is None:
            logger.error(
                "Activating subscription without a plan, credits not renewed",
                extra_data={"user_id": user.id},
            )
            return

        yearly = user.billing_cycle == BillingCycle.YEARLY
        credits = PLAN_CREDITS[Plan(user.plan)] * (12 if yearly else 1)
        expires_at = now + timedelta(days=365 if yearly else 30)
        await self.ledger.renew_subscription_credits(
            user.id,
            credits,
            expires_at=expires_at,
            description=f"Assinatura {Plan(user.plan).value} ({'YEARLY' if yearly else 'MONTHLY'})",
        )

    # ── עזרים ──

    async def _find_user_by_customer(self, customer_id: str | None) -> User | None:
        if not customer_id:
            return None
        return (await self.db.execute(
            select(User).where(User.asaas_customer_id == customer_id)
        )).scalar_one_or_none()

    async def _resolve_user(self, customer_id: str | None, fallback_user_id: str | None = None) -> User:
        """משתמש לפי customer id של Asaas, ובגיבוי לפי הרשומה המקומית (ושמירת ה-customer id)"""
        user = await self._find_user_by_customer(customer_id)
        if user is not None:
            return user

        if fallback_user_id:
            user = await self.db.get(User, fallback_user_id)
            if user is not None:
                if customer_id and not user.asaas_customer_id:
                    user.asaas_customer_id = customer_id
                    logger.info(
                        "Saved gateway customer id for user",
                        extra_data={"user_id": user.id, "customer_id": customer_id},
                    )
                return user

        raise UserNotFoundError(customer_id or "unknown")

    async def _find_credit_purchase(self, payment: AsaasPayment) -> CreditPurchase | None:
        conditions = [CreditPurchase.asaas_payment_id == payment.id]
        refs = [ref for ref in (payment.external_reference, payment.checkout_session) if ref]
        if refs:
            conditions.append(CreditPurchase.asaas_checkout_id.in_(refs))
        return (await self.db.execute(
            select(CreditPurchase).where(or_(*conditions)).limit(1)
        )).scalar_one_or_none()

    async def _find_payment_record(self, payment: AsaasPayment) -> Payment | None:
        """Payment לפי subscription id, אחר כך payment id, אחר כך checkout id"""
        lookups = []
        if payment.subscription:
            lookups.append(Payment.subscription_id == payment.subscription)
        lookups.append(Payment.asaas_payment_id == payment.id)
        refs = [ref for ref in (payment.external_reference, payment.checkout_session) if ref]
        if refs:
            lookups.append(Payment.asaas_checkout_id.in_(refs))

        for condition in lookups:
            record = (await self.db.execute(
                select(Payment).where(condition).order_by(Payment.created_at.desc()).limit(1)
            )).scalar_one_or_none()
            if record is not None:
                return record
        return None

    async def _log_usage(self, user_id: str | None, action: str, details: dict[str, Any]) -> None:
        self.db.add(UsageLog(user_id=user_id, action=action, credits_used=0, details=details))
