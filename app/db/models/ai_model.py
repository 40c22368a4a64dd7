"""
AI Model - אימון מודל אישי (training)
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Enum as SQLEnum

from app.db.database import Base
from app.db.models.media_record import MediaRecordMixin


class ModelStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    TRAINING = "TRAINING"
    READY = "READY"
    ERROR = "ERROR"    # כישלון אצל Replicate
    FAILED = "FAILED"  # כישלון אצל Astria


class AIModel(MediaRecordMixin, Base):
    __tablename__ = "ai_models"

    name = Column(String(150), nullable=True)
    status = Column(SQLEnum(ModelStatus), default=ModelStatus.DRAFT, nullable=False, index=True)
    job_id = Column(String(100), nullable=True, index=True)
    model_url = Column(Text, nullable=True)
    progress = Column(Integer, nullable=False, default=0)
    quality_score = Column(Integer, nullable=True)
    trained_at = Column(DateTime, nullable=True)
    training_logs = Column(JSON, nullable=True)
