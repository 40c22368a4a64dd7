"""
Usage Log Model - תיעוד אירועים שאינם משנים את ה-ledger
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey

from app.db.database import Base, utcnow
from app.db.models.media_record import generate_id


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    credits_used = Column(Integer, nullable=False, default=0)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
