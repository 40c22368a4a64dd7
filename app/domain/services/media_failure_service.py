"""
Media Failure Service - טיפול בכישלון סופי של רשומת מדיה בתשלום.

זרימה:
1. טעינת הרשומה לפי (סוג, מזהה). לא נמצאה → תוצאת INTERNAL_ERROR בלי שום שינוי.
2. סיווג השגיאה הגולמית + הודעה ידידותית מהקטלוג.
3. credits_refunded כבר True → אין קריאה ל-ledger, רק עדכון שדות השגיאה.
4. skip_refund או credits_used <= 0 → אין מה להחזיר.
5. תפיסת ההחזר בעדכון מותנה (credits_refunded False → True), ואז זיכוי ב-ledger
   באותה טרנזקציה. כישלון ledger → rollback, הרשומה מסומנת FAILED עם
   השגיאה המקורית ב-meta והודעת "החזר ממתין", ומוחזרת תוצאה לא מוצלחת
   (בלי retry אוטומטי).
6. שמירת failure_reason, error_message (ההודעה הידידותית בלבד), status סופי.

בטוח לקריאה חוזרת: שני משלוחים של אותו כישלון יגרמו לזיכוי אחד בלבד.
"""
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.ai_model import AIModel, ModelStatus
from app.db.models.credit_transaction import CreditSource, CreditTransactionType
from app.db.models.edit_history import EditHistory
from app.db.models.generation import Generation
from app.db.models.media_record import MediaKind, FailureReason, MediaStatus
from app.db.models.video_generation import VideoGeneration
from app.domain.services.credit_ledger_service import CreditLedgerService
from app.domain.services.error_classifier import classify_error
from app.domain.services.user_messages import REFUND_PENDING_MESSAGE, get_user_message

logger = get_logger(__name__)

MEDIA_MODELS: dict[MediaKind, type] = {
    MediaKind.IMAGE_GENERATION: Generation,
    MediaKind.UPSCALE: Generation,
    MediaKind.IMAGE_EDIT: EditHistory,
    MediaKind.VIDEO_GENERATION: VideoGeneration,
    MediaKind.MODEL_TRAINING: AIModel,
}

REFUND_SOURCES: dict[MediaKind, CreditSource] = {
    MediaKind.IMAGE_GENERATION: CreditSource.GENERATION,
    MediaKind.UPSCALE: CreditSource.UPSCALE,
    MediaKind.IMAGE_EDIT: CreditSource.EDIT,
    MediaKind.VIDEO_GENERATION: CreditSource.VIDEO,
    MediaKind.MODEL_TRAINING: CreditSource.TRAINING,
}

_DEFAULT_FINAL_STATUS: dict[MediaKind, Any] = {
    MediaKind.IMAGE_GENERATION: MediaStatus.FAILED,
    MediaKind.UPSCALE: MediaStatus.FAILED,
    MediaKind.IMAGE_EDIT: MediaStatus.FAILED,
    MediaKind.VIDEO_GENERATION: MediaStatus.FAILED,
    MediaKind.MODEL_TRAINING: ModelStatus.FAILED,
}


@dataclass(frozen=True)
class MediaFailureResult:
    success: bool
    refunded: bool
    failure_reason: FailureReason
    user_message: str
    error: str | None = None


class MediaFailureService:
    """Classifies a terminal media failure and refunds its credits at most once"""

    def __init__(self, db: AsyncSession, ledger: CreditLedgerService | None = None):
        self.db = db
        self.ledger = ledger or CreditLedgerService(db)

    async def handle_failure(
        self,
        kind: MediaKind,
        media_id: str,
        raw_error: str | None,
        *,
        skip_refund: bool = False,
        final_status: Any = None,
    ) -> MediaFailureResult:
        kind = MediaKind(kind)
        model = MEDIA_MODELS[kind]
        final_status = final_status or _DEFAULT_FINAL_STATUS[kind]

        record = (await self.db.execute(
            select(model)
            .where(model.id == media_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()

        if record is None:
            logger.warning(
                "Media record not found for failure handling",
                extra_data={"kind": kind.value, "media_id": media_id},
            )
            return MediaFailureResult(
                success=False,
                refunded=False,
                failure_reason=FailureReason.INTERNAL_ERROR,
                user_message=get_user_message(kind, FailureReason.INTERNAL_ERROR),
                error="Media not found",
            )

        failure_reason = classify_error(raw_error)
        user_message = get_user_message(kind, failure_reason)
        user_id = record.user_id
        credits_used = record.credits_used or 0

        meta = dict(record.meta or {})
        meta["originalErrorMessage"] = raw_error
        meta["failureReason"] = failure_reason.value
        meta["failedAt"] = utcnow().isoformat()

        log_context = {
            "kind": kind.value,
            "media_id": media_id,
            "user_id": user_id,
            "credits_used": credits_used,
            "failure_reason": failure_reason.value,
        }

        if record.credits_refunded:
            logger.info("Credits already refunded, skipping ledger", extra_data=log_context)
            await self._persist_failure(model, media_id, final_status, failure_reason, user_message, meta)
            await self.db.commit()
            return MediaFailureResult(True, False, failure_reason, user_message)

        if skip_refund or credits_used <= 0:
            logger.info(
                "No refund required",
                extra_data={**log_context, "skip_refund": skip_refund},
            )
            await self._persist_failure(model, media_id, final_status, failure_reason, user_message, meta)
            await self.db.commit()
            return MediaFailureResult(True, False, failure_reason, user_message)

        claim = await self.db.execute(
            update(model)
            .where(model.id == media_id, model.credits_refunded.is_(False))
            .values(credits_refunded=True)
        )
        if claim.rowcount == 0:
            # משלוח מקביל כבר תפס את ההחזר
            logger.info("Refund already claimed concurrently", extra_data=log_context)
            await self._persist_failure(model, media_id, final_status, failure_reason, user_message, meta)
            await self.db.commit()
            return MediaFailureResult(True, False, failure_reason, user_message)

        try:
            await self.ledger.add_credits(
                user_id,
                credits_used,
                REFUND_SOURCES[kind],
                transaction_type=CreditTransactionType.REFUNDED,
                description=f"Reembolso automático: {kind.value} {media_id} ({failure_reason.value})",
                reference_id=media_id,
                meta={"mediaKind": kind.value, "failureReason": failure_reason.value},
            )
        except (AppException, SQLAlchemyError) as e:
            await self.db.rollback()
            logger.error(
                "Refund failed, marking record failed without refund",
                extra_data={**log_context, "error": str(e)},
                exc_info=True,
            )
            meta["refundError"] = str(e)
            meta["refundPending"] = True
            await self._persist_failure(
                model, media_id, final_status, failure_reason, REFUND_PENDING_MESSAGE, meta
            )
            await self.db.commit()
            return MediaFailureResult(False, False, failure_reason, REFUND_PENDING_MESSAGE, error=str(e))

        await self._persist_failure(model, media_id, final_status, failure_reason, user_message, meta)
        await self.db.commit()

        logger.info("Credits refunded for failed media", extra_data=log_context)
        return MediaFailureResult(True, True, failure_reason, user_message)

    async def _persist_failure(
        self,
        model: type,
        media_id: str,
        final_status: Any,
        failure_reason: FailureReason,
        user_message: str,
        meta: dict[str, Any],
    ) -> None:
        await self.db.execute(
            update(model)
            .where(model.id == media_id)
            .values(
                status=final_status,
                failure_reason=failure_reason,
                error_message=user_message,
                meta=meta,
                updated_at=utcnow(),
            )
        )
