"""
Job Locator - איתור הרשומה הפנימית ש-callback של ספק AI שייך אליה.

מסלול מהיר: רמזי query (?type=&id=&userId=) → שליפה ישירה לפי סוג.
מסלול גיבוי (כשאין רמזים או שהמסלול המהיר נכשל), בסדר קבוע:
generation לפי job_id → עריכות אחרונות לפי meta["replicateId"] בחלון זמן
מוגבל → model לפי job_id.

אין התאמה = None, לא חריגה (webhooks זרים / בדיקות של הספק).
"""
import enum
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.ai_model import AIModel
from app.db.models.edit_history import EditHistory, EDIT_JOB_ID_META_KEY
from app.db.models.generation import Generation
from app.db.models.media_record import MediaKind

logger = get_logger(__name__)


class JobType(str, enum.Enum):
    GENERATION = "generation"
    UPSCALE = "upscale"
    EDIT = "edit"
    TRAINING = "training"


_MEDIA_KIND_BY_JOB_TYPE = {
    JobType.GENERATION: MediaKind.IMAGE_GENERATION,
    JobType.UPSCALE: MediaKind.UPSCALE,
    JobType.EDIT: MediaKind.IMAGE_EDIT,
    JobType.TRAINING: MediaKind.MODEL_TRAINING,
}


@dataclass(frozen=True)
class LocatorHints:
    type: str | None = None
    record_id: str | None = None
    user_id: str | None = None

    @classmethod
    def from_query(cls, params: dict[str, Any] | None) -> "LocatorHints | None":
        """רמזים מ-query string: type, id (או modelId), userId"""
        if not params:
            return None
        hints = cls(
            type=params.get("type") or None,
            record_id=params.get("id") or params.get("modelId") or None,
            user_id=params.get("userId") or None,
        )
        if not (hints.type or hints.record_id or hints.user_id):
            return None
        return hints


@dataclass(frozen=True)
class LocatedJob:
    type: JobType
    record: Any

    @property
    def media_kind(self) -> MediaKind:
        return _MEDIA_KIND_BY_JOB_TYPE[self.type]


def _generation_job(generation: Generation) -> LocatedJob:
    return LocatedJob(
        type=JobType.UPSCALE if generation.is_upscale else JobType.GENERATION,
        record=generation,
    )


class JobLocator:
    """Resolves a provider job id to a generation / upscale / edit / training record"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def locate(self, job_id: str | None, hints: LocatorHints | None = None) -> LocatedJob | None:
        if hints and hints.type and hints.record_id:
            located = await self._locate_by_hints(hints)
            if located:
                logger.debug(
                    "Job located via query hints",
                    extra_data={"job_id": job_id, "type": located.type.value, "record_id": hints.record_id},
                )
                return located
            logger.info(
                "Optimized lookup missed, falling back to job id scan",
                extra_data={"job_id": job_id, "type": hints.type, "record_id": hints.record_id},
            )

        if not job_id:
            return None

        located = await self._locate_by_job_id(job_id)
        if located is None:
            logger.info(
                "No record matches webhook job id",
                extra_data={"job_id": job_id},
            )
        return located

    async def _locate_by_hints(self, hints: LocatorHints) -> LocatedJob | None:
        hint_type = hints.type.strip().lower()

        if hint_type in (JobType.GENERATION.value, JobType.UPSCALE.value):
            query = select(Generation).where(Generation.id == hints.record_id)
            if hints.user_id:
                query = query.where(Generation.user_id == hints.user_id)
            generation = (await self.db.execute(query)).scalar_one_or_none()
            return _generation_job(generation) if generation else None

        if hint_type == JobType.EDIT.value:
            query = select(EditHistory).where(EditHistory.id == hints.record_id)
            if hints.user_id:
                query = query.where(EditHistory.user_id == hints.user_id)
            edit = (await self.db.execute(query)).scalar_one_or_none()
            return LocatedJob(type=JobType.EDIT, record=edit) if edit else None

        if hint_type == JobType.TRAINING.value:
            query = select(AIModel).where(AIModel.id == hints.record_id)
            if hints.user_id:
                query = query.where(AIModel.user_id == hints.user_id)
            model = (await self.db.execute(query)).scalar_one_or_none()
            return LocatedJob(type=JobType.TRAINING, record=model) if model else None

        logger.warning(
            "Unknown locator hint type",
            extra_data={"type": hints.type},
        )
        return None

    async def _locate_by_job_id(self, job_id: str) -> LocatedJob | None:
        generation = (await self.db.execute(
            select(Generation).where(Generation.job_id == job_id).limit(1)
        )).scalar_one_or_none()
        if generation:
            return _generation_job(generation)

        edit = await self._find_recent_edit(job_id)
        if edit:
            return LocatedJob(type=JobType.EDIT, record=edit)

        model = (await self.db.execute(
            select(AIModel).where(AIModel.job_id == job_id).limit(1)
        )).scalar_one_or_none()
        if model:
            return LocatedJob(type=JobType.TRAINING, record=model)

        return None

    async def _find_recent_edit(self, job_id: str) -> EditHistory | None:
        # המזהה יושב בתוך JSON, לכן סורקים חלון זמן קצר ומסננים בפייתון
        since = utcnow() - timedelta(minutes=settings.EDIT_LOOKUP_WINDOW_MINUTES)
        result = await self.db.execute(
            select(EditHistory)
            .where(EditHistory.created_at >= since)
            .order_by(EditHistory.created_at.desc())
            .limit(settings.EDIT_LOOKUP_LIMIT)
        )
        for edit in result.scalars().all():
            if (edit.meta or {}).get(EDIT_JOB_ID_META_KEY) == job_id:
                return edit
        return None
