"""
Credit Purchase Model - רכישה חד-פעמית של חבילת קרדיטים
"""
import enum
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DateTime, Numeric, ForeignKey, Enum as SQLEnum

from app.db.database import Base, utcnow
from app.db.models.media_record import generate_id


class CreditPurchaseStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class CreditPurchase(Base):
    __tablename__ = "credit_purchases"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    credit_amount = Column(Integer, nullable=False)
    value = Column(Numeric(10, 2), default=Decimal("0.00"))
    status = Column(
        SQLEnum(CreditPurchaseStatus),
        default=CreditPurchaseStatus.PENDING,
        nullable=False,
        index=True
    )
    asaas_payment_id = Column(String(100), nullable=True, index=True)
    asaas_checkout_id = Column(String(100), nullable=True, index=True)
    confirmed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
