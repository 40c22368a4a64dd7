"""
Credit Transaction Model - היסטוריית ledger בלתי ניתנת לשינוי

כל שינוי ביתרת קרדיטים נרשם כאן עם balance_after (זמינות אחרי השינוי).
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, Enum as SQLEnum

from app.db.database import Base, utcnow
from app.db.models.media_record import generate_id


class CreditTransactionType(str, enum.Enum):
    EARNED = "EARNED"
    SPENT = "SPENT"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class CreditSource(str, enum.Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    PURCHASE = "PURCHASE"
    BONUS = "BONUS"
    GENERATION = "GENERATION"
    TRAINING = "TRAINING"
    REFUND = "REFUND"
    EXPIRATION = "EXPIRATION"
    UPSCALE = "UPSCALE"
    EDIT = "EDIT"
    VIDEO = "VIDEO"


class CreditTransaction(Base):
    """Append-only ledger entry"""

    __tablename__ = "credit_transactions"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    type = Column(SQLEnum(CreditTransactionType), nullable=False)
    source = Column(SQLEnum(CreditSource), nullable=False)
    amount = Column(Integer, nullable=False)  # חיובי לזיכוי, שלילי לחיוב
    balance_after = Column(Integer, nullable=False)

    description = Column(String(500), nullable=True)
    reference_id = Column(String(100), nullable=True, index=True)
    credit_purchase_id = Column(String(36), ForeignKey("credit_purchases.id"), nullable=True)
    meta = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
