"""
User Model - חשבון משתמש, מנוי ויתרות קרדיטים
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum

from app.db.database import Base, utcnow
from app.db.models.media_record import generate_id


class Plan(str, enum.Enum):
    STARTER = "STARTER"
    PREMIUM = "PREMIUM"
    GOLD = "GOLD"


class BillingCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class SubscriptionStatus(str, enum.Enum):
    NONE = "NONE"
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    CHARGEBACK = "CHARGEBACK"
    PAYMENT_FAILED = "PAYMENT_FAILED"


class User(Base):
    """User with subscription state and credit balances"""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_id)
    email = Column(String(255), unique=True, nullable=True)
    name = Column(String(150), nullable=True)
    asaas_customer_id = Column(String(100), unique=True, nullable=True, index=True)

    plan = Column(SQLEnum(Plan), nullable=True)
    billing_cycle = Column(SQLEnum(BillingCycle), nullable=True)
    subscription_status = Column(
        SQLEnum(SubscriptionStatus),
        default=SubscriptionStatus.NONE,
        nullable=False,
        index=True
    )
    subscription_id = Column(String(100), nullable=True, index=True)
    subscription_started_at = Column(DateTime, nullable=True)
    subscription_ends_at = Column(DateTime, nullable=True)
    last_credit_renewal_at = Column(DateTime, nullable=True)
    credits_expires_at = Column(DateTime, nullable=True)

    # קרדיטים של התוכנית (מתאפסים בחידוש) + יתרה שנרכשה/הוחזרה (לא פגה)
    credits_limit = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    credits_balance = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def plan_credits_remaining(self) -> int:
        return max(0, (self.credits_limit or 0) - (self.credits_used or 0))

    @property
    def available_credits(self) -> int:
        """קרדיטים זמינים = יתרת התוכנית + יתרה שנרכשה"""
        return self.plan_credits_remaining + (self.credits_balance or 0)
