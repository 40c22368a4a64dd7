"""
User Package Model - הרצת חבילת תמונות (אוסף generations)
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Enum as SQLEnum

from app.db.database import Base, utcnow
from app.db.models.media_record import generate_id


class PackageStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class UserPackage(Base):
    __tablename__ = "user_packages"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(150), nullable=True)

    status = Column(SQLEnum(PackageStatus), default=PackageStatus.ACTIVE, nullable=False, index=True)
    generated_images = Column(Integer, nullable=False, default=0)
    failed_images = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
