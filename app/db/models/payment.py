"""
Payment Model - תשלום checkout / מנוי

needs_price_update: קופון הנחה לחודש הראשון בלבד. אחרי שהתשלום הראשון נקלט,
מחיר המנוי אצל Asaas מעודכן ל-original_price והדגל מתאפס (פעם אחת).
"""
import enum
from decimal import Decimal
from sqlalchemy import Column, String, DateTime, Boolean, Numeric, ForeignKey, Enum as SQLEnum

from app.db.database import Base, utcnow
from app.db.models.media_record import generate_id
from app.db.models.user import Plan, BillingCycle


class PaymentType(str, enum.Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    CREDIT_PURCHASE = "CREDIT_PURCHASE"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    type = Column(SQLEnum(PaymentType), default=PaymentType.SUBSCRIPTION, nullable=False)
    status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True)
    value = Column(Numeric(10, 2), default=Decimal("0.00"))
    plan_type = Column(SQLEnum(Plan), nullable=True)
    billing_cycle = Column(SQLEnum(BillingCycle), nullable=True)

    asaas_payment_id = Column(String(100), nullable=True, index=True)
    asaas_checkout_id = Column(String(100), nullable=True, index=True)
    subscription_id = Column(String(100), nullable=True, index=True)

    needs_price_update = Column(Boolean, nullable=False, default=False)
    original_price = Column(Numeric(10, 2), nullable=True)
    confirmed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
