"""
Video Generation Model
"""
from sqlalchemy import Column, String, DateTime, Text, Enum as SQLEnum

from app.db.database import Base
from app.db.models.media_record import MediaRecordMixin, MediaStatus


class VideoGeneration(MediaRecordMixin, Base):
    __tablename__ = "video_generations"

    status = Column(SQLEnum(MediaStatus), default=MediaStatus.PENDING, nullable=False, index=True)
    prompt = Column(Text, nullable=True)
    job_id = Column(String(100), nullable=True, index=True)
    video_url = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
