"""
Edit History Model - עריכות תמונה

לעריכות אין עמודת job id: מזהה ה-prediction של הספק נשמר ב-meta["replicateId"].
"""
from sqlalchemy import Column, String, Text, Enum as SQLEnum

from app.db.database import Base
from app.db.models.media_record import MediaRecordMixin, MediaStatus

EDIT_JOB_ID_META_KEY = "replicateId"


class EditHistory(MediaRecordMixin, Base):
    __tablename__ = "edit_history"

    status = Column(SQLEnum(MediaStatus), default=MediaStatus.PENDING, nullable=False, index=True)
    operation = Column(String(50), nullable=True)
    prompt = Column(Text, nullable=True)
    original_image_url = Column(Text, nullable=True)
    edited_image_url = Column(Text, nullable=True)

    @property
    def provider_job_id(self) -> str | None:
        return (self.meta or {}).get(EDIT_JOB_ID_META_KEY)
