"""
Webhook Event Model - טבלת idempotency ו-audit לכל webhook נכנס.

כל משלוח webhook נרשם כ-PENDING לפני כל side effect. רק רשומה עם
status=PROCESSED חוסמת עיבוד חוזר של אותו אירוע לוגי
(provider, event, payment_id, subscription_id, job_id).
רשומות לא נמחקות לעולם.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Enum as SQLEnum, Index

from app.db.database import Base, utcnow
from app.db.models.media_record import generate_id


class WebhookEventStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class WebhookProvider(str, enum.Enum):
    ASAAS = "asaas"
    REPLICATE = "replicate"
    ASTRIA = "astria"
    VIDEO = "video"


class WebhookEvent(Base):
    """רשומת משלוח webhook אחד"""

    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=generate_id)
    provider = Column(String(20), nullable=False, index=True)
    event = Column(String(100), nullable=False)
    payment_id = Column(String(100), nullable=True)
    subscription_id = Column(String(100), nullable=True)
    job_id = Column(String(100), nullable=True)

    status = Column(
        SQLEnum(WebhookEventStatus),
        nullable=False,
        default=WebhookEventStatus.PENDING
    )
    payload = Column(JSON, nullable=True)
    request_context = Column(JSON, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_status_created", "status", "created_at"),
        Index("ix_webhook_events_lookup", "provider", "event", "payment_id", "subscription_id", "job_id"),
    )
