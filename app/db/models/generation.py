"""
Generation Model - יצירת תמונות ו-upscale
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum

from app.db.database import Base
from app.db.models.media_record import MediaRecordMixin, MediaStatus

# סימון legacy: רשומות upscale ישנות סומנו בתחילית ב-prompt במקום עמודת kind
UPSCALE_PROMPT_PREFIX = "[UPSCALED]"


class GenerationKind(str, enum.Enum):
    GENERATION = "GENERATION"
    UPSCALE = "UPSCALE"


class Generation(MediaRecordMixin, Base):
    """Image generation or upscale job"""

    __tablename__ = "generations"

    kind = Column(SQLEnum(GenerationKind), default=GenerationKind.GENERATION, nullable=False)
    status = Column(SQLEnum(MediaStatus), default=MediaStatus.PENDING, nullable=False, index=True)
    prompt = Column(Text, nullable=True)
    job_id = Column(String(100), nullable=True, index=True)

    image_urls = Column(JSON, nullable=True)
    thumbnail_urls = Column(JSON, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    package_id = Column(String(36), ForeignKey("user_packages.id"), nullable=True, index=True)

    @property
    def is_upscale(self) -> bool:
        if self.kind == GenerationKind.UPSCALE:
            return True
        return bool(self.prompt and self.prompt.startswith(UPSCALE_PROMPT_PREFIX))
