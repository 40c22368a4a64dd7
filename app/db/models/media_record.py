"""
Media Record - עמודות משותפות לכל יחידת עבודה בתשלום שנשלחה לספק AI

Generation / VideoGeneration / EditHistory / AIModel יורשים מה-mixin הזה.
credits_used נקבע ביצירה והוא בדיוק הסכום שמוחזר בכישלון.
credits_refunded מונוטוני: False → True בלבד.
"""
import enum
import uuid
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import declared_attr

from app.db.database import utcnow


def generate_id() -> str:
    return str(uuid.uuid4())


class MediaKind(str, enum.Enum):
    IMAGE_GENERATION = "IMAGE_GENERATION"
    IMAGE_EDIT = "IMAGE_EDIT"
    VIDEO_GENERATION = "VIDEO_GENERATION"
    UPSCALE = "UPSCALE"
    MODEL_TRAINING = "MODEL_TRAINING"


class FailureReason(str, enum.Enum):
    SAFETY_BLOCKED = "SAFETY_BLOCKED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    QUOTA_ERROR = "QUOTA_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class MediaStatus(str, enum.Enum):
    """סטטוס ל-generation / upscale / edit / video"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class MediaRecordMixin:
    """עמודות ledger משותפות לכל רשומת מדיה"""

    id = Column(String(36), primary_key=True, default=generate_id)

    @declared_attr
    def user_id(cls):
        return Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    credits_used = Column(Integer, nullable=False, default=0)
    credits_refunded = Column(Boolean, nullable=False, default=False)

    failure_reason = Column(SQLEnum(FailureReason), nullable=True)
    # הודעה ידידותית למשתמש בלבד; השגיאה הגולמית נשמרת ב-meta["originalErrorMessage"]
    error_message = Column(Text, nullable=True)
    meta = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
