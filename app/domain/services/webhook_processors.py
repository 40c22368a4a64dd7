"""
Webhook Processors - החלת callback של ספק על הרשומה הפנימית.

כל processor מקבל session, את ה-payload הגולמי שנשמר ב-WebhookEvent ואת
request_context (רמזי query), ומחזיר dict קצר שמתאר מה נעשה.
processor לא נוגע בסטטוס ה-WebhookEvent; זה תפקיד ה-dispatcher.

כללים משותפים:
- עדכון לא-סופי (PROCESSING / TRAINING) לעולם לא מוריד רשומה שכבר סופית
  (עדכון מותנה WHERE status IN (PENDING, PROCESSING)).
- COMPLETED נכתב רק מרשומה לא-סופית; משלוח נוסף של succeeded הוא no-op.
- כישלון / ביטול עובר דרך MediaFailureService (זיכוי אחד לכל היותר).
- שידור realtime אחרי commit בלבד.
"""
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.ai_model import AIModel, ModelStatus
from app.db.models.edit_history import EditHistory, EDIT_JOB_ID_META_KEY
from app.db.models.generation import Generation
from app.db.models.media_record import MediaKind, MediaStatus
from app.db.models.video_generation import VideoGeneration
from app.domain.services import realtime_service
from app.domain.services.job_locator import JobLocator, JobType, LocatorHints
from app.domain.services.media_failure_service import MediaFailureService
from app.domain.services.package_reconciliation import PackageReconciliationService
from app.domain.services.status_mapper import (
    map_astria_prompt_status,
    map_astria_tune_status,
    map_replicate_status,
    map_replicate_training_status,
    map_video_status,
    should_apply_training_status,
)
from app.domain.services.subscription_reconciler import SubscriptionReconciler
from app.domain.webhook_payloads import (
    AsaasWebhookPayload,
    AstriaPromptPayload,
    AstriaTunePayload,
    ReplicatePrediction,
    parse_astria_payload,
)

logger = get_logger(__name__)

_OPEN_MEDIA_STATUSES = (MediaStatus.PENDING, MediaStatus.PROCESSING)
_OPEN_MODEL_STATUSES = (ModelStatus.DRAFT, ModelStatus.TRAINING)

TRAINING_PROGRESS = {"starting": 5, "queued": 5, "processing": 50, "training": 50}
TRAINING_PROGRESS_DEFAULT = 50
TRAINING_PROGRESS_DONE = 100
GENERATION_PROGRESS_PROCESSING = 50

_CANCELLED_GENERATION_ERROR = "Generation was cancelled"
_CANCELLED_TRAINING_ERROR = "Training was cancelled"


def calculate_training_quality_score(
    status: str | None,
    total_time_seconds: float | None,
    logs: str | None,
) -> int:
    """
    ציון איכות היוריסטי לאימון: בסיס 80, +15 על הצלחה, בונוס/קנס לפי משך
    האימון, -5 אם הלוגים מזכירים error, +5 אם מזכירים lora / flux. תחום 20..100.
    """
    score = 80
    if (status or "").lower() == "succeeded":
        score += 15

    if total_time_seconds:
        minutes = total_time_seconds / 60
        if minutes < 15:
            score += 10
        elif minutes < 30:
            score += 5
        elif minutes > 60:
            score -= 5

    lines = [line.lower() for line in (logs or "").splitlines()]
    if any("error" in line for line in lines):
        score -= 5
    if any("lora" in line or "flux" in line for line in lines):
        score += 5

    return max(20, min(100, score))


# ==================== Generation / Upscale ====================


async def _reconcile_package(db: AsyncSession, package_id: str | None) -> None:
    if package_id:
        await PackageReconciliationService(db).reconcile(package_id)


async def apply_generation_update(
    db: AsyncSession,
    generation: Generation,
    status: MediaStatus,
    *,
    image_urls: list[str] | None = None,
    raw_error: str | None = None,
    processing_time_ms: int | None = None,
) -> dict[str, Any]:
    """החלת סטטוס פנימי על generation (משותף ל-Replicate ול-Astria prompt)"""
    generation_id = generation.id
    user_id = generation.user_id
    package_id = generation.package_id
    kind = MediaKind.UPSCALE if generation.is_upscale else MediaKind.IMAGE_GENERATION
    now = utcnow()

    if status == MediaStatus.COMPLETED:
        result = await db.execute(
            update(Generation)
            .where(Generation.id == generation_id, Generation.status.in_(_OPEN_MEDIA_STATUSES))
            .values(
                status=MediaStatus.COMPLETED,
                image_urls=image_urls or [],
                thumbnail_urls=image_urls or [],
                processing_time_ms=processing_time_ms,
                completed_at=now,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            await db.commit()
            logger.info(
                "Generation already terminal, completion ignored",
                extra_data={"generation_id": generation_id, "current_status": str(generation.status)},
            )
            return {"type": kind.value, "updated": False}

        await db.commit()
        await realtime_service.broadcast_generation_status(
            user_id,
            generation_id,
            MediaStatus.COMPLETED.value,
            imageUrls=image_urls or [],
            processingTime=processing_time_ms,
            isUpscale=kind == MediaKind.UPSCALE,
        )
        if kind == MediaKind.UPSCALE:
            await realtime_service.broadcast_notification(
                user_id,
                "Upscale Concluído!",
                "Sua imagem foi ampliada com sucesso e está pronta para download!",
                "success",
            )
        await _reconcile_package(db, package_id)
        logger.info(
            "Generation completed",
            extra_data={"generation_id": generation_id, "images": len(image_urls or [])},
        )
        return {"type": kind.value, "updated": True, "status": MediaStatus.COMPLETED.value}

    if status in (MediaStatus.FAILED, MediaStatus.CANCELLED):
        if generation.status == MediaStatus.COMPLETED:
            logger.warning(
                "Failure delivered for completed generation, ignoring",
                extra_data={"generation_id": generation_id, "incoming": status.value},
            )
            return {"type": kind.value, "updated": False}

        outcome = await MediaFailureService(db).handle_failure(
            kind,
            generation_id,
            raw_error or (_CANCELLED_GENERATION_ERROR if status == MediaStatus.CANCELLED else None),
            final_status=status,
        )
        await realtime_service.broadcast_generation_status(
            user_id,
            generation_id,
            status.value,
            errorMessage=outcome.user_message,
            failureReason=outcome.failure_reason.value,
            creditsRefunded=outcome.refunded,
            isUpscale=kind == MediaKind.UPSCALE,
        )
        await _reconcile_package(db, package_id)
        return {
            "type": kind.value,
            "updated": True,
            "status": status.value,
            "refunded": outcome.refunded,
            "failureReason": outcome.failure_reason.value,
        }

    result = await db.execute(
        update(Generation)
        .where(Generation.id == generation_id, Generation.status == MediaStatus.PENDING)
        .values(status=MediaStatus.PROCESSING, updated_at=now)
    )
    await db.commit()
    if result.rowcount:
        await realtime_service.broadcast_generation_status(
            user_id, generation_id, MediaStatus.PROCESSING.value
        )
        await realtime_service.broadcast_generation_progress(
            user_id, generation_id, GENERATION_PROGRESS_PROCESSING
        )
        await _reconcile_package(db, package_id)
    return {"type": kind.value, "updated": bool(result.rowcount), "status": MediaStatus.PROCESSING.value}


# ==================== Edit ====================


async def apply_edit_update(
    db: AsyncSession,
    edit: EditHistory,
    prediction: ReplicatePrediction,
) -> dict[str, Any]:
    edit_id = edit.id
    user_id = edit.user_id
    status = map_replicate_status(prediction.status)
    now = utcnow()

    if status == MediaStatus.COMPLETED:
        urls = prediction.output_urls()
        meta = dict(edit.meta or {})
        meta.update({
            EDIT_JOB_ID_META_KEY: prediction.id,
            "status": MediaStatus.COMPLETED.value,
            "completedAt": now.isoformat(),
        })
        if prediction.predict_time_seconds is not None:
            meta["processingTime"] = round(prediction.predict_time_seconds * 1000)

        result = await db.execute(
            update(EditHistory)
            .where(EditHistory.id == edit_id, EditHistory.status.in_(_OPEN_MEDIA_STATUSES))
            .values(
                status=MediaStatus.COMPLETED,
                edited_image_url=urls[0] if urls else None,
                meta=meta,
                updated_at=now,
            )
        )
        await db.commit()
        if result.rowcount:
            await realtime_service.broadcast_generation_status(
                user_id,
                edit_id,
                MediaStatus.COMPLETED.value,
                imageUrls=urls[:1],
                editHistoryId=edit_id,
                source="editor",
            )
        return {"type": JobType.EDIT.value, "updated": bool(result.rowcount), "status": status.value}

    if status in (MediaStatus.FAILED, MediaStatus.CANCELLED):
        if edit.status == MediaStatus.COMPLETED:
            return {"type": JobType.EDIT.value, "updated": False}
        outcome = await MediaFailureService(db).handle_failure(
            MediaKind.IMAGE_EDIT,
            edit_id,
            prediction.error_text
            or (_CANCELLED_GENERATION_ERROR if status == MediaStatus.CANCELLED else None),
            final_status=status,
        )
        await realtime_service.broadcast_generation_status(
            user_id,
            edit_id,
            status.value,
            errorMessage=outcome.user_message,
            creditsRefunded=outcome.refunded,
            editHistoryId=edit_id,
            source="editor",
        )
        return {
            "type": JobType.EDIT.value,
            "updated": True,
            "status": status.value,
            "refunded": outcome.refunded,
        }

    result = await db.execute(
        update(EditHistory)
        .where(EditHistory.id == edit_id, EditHistory.status == MediaStatus.PENDING)
        .values(status=MediaStatus.PROCESSING, updated_at=now)
    )
    await db.commit()
    return {"type": JobType.EDIT.value, "updated": bool(result.rowcount), "status": MediaStatus.PROCESSING.value}


# ==================== Training ====================


async def apply_training_update(
    db: AsyncSession,
    model: AIModel,
    incoming: ModelStatus,
    *,
    provider_status: str | None = None,
    model_url: str | None = None,
    raw_error: str | None = None,
    total_time_seconds: float | None = None,
    logs: str | None = None,
    failure_status: ModelStatus = ModelStatus.ERROR,
) -> dict[str, Any]:
    """החלת סטטוס אימון. failure_status: ERROR ל-Replicate, FAILED ל-Astria."""
    model_id = model.id
    user_id = model.user_id
    current = model.status
    now = utcnow()

    if not should_apply_training_status(current, incoming):
        logger.info(
            "Training status update skipped",
            extra_data={
                "model_id": model_id,
                "current": current.value if current else None,
                "incoming": incoming.value,
            },
        )
        return {"type": JobType.TRAINING.value, "updated": False}

    if incoming == ModelStatus.TRAINING:
        progress = TRAINING_PROGRESS.get((provider_status or "").lower(), TRAINING_PROGRESS_DEFAULT)
        result = await db.execute(
            update(AIModel)
            .where(AIModel.id == model_id, AIModel.status.in_(_OPEN_MODEL_STATUSES))
            .values(status=ModelStatus.TRAINING, progress=progress, updated_at=now)
        )
        await db.commit()
        if result.rowcount:
            await realtime_service.broadcast_training_progress(user_id, model_id, progress)
        return {"type": JobType.TRAINING.value, "updated": bool(result.rowcount), "progress": progress}

    if incoming == ModelStatus.READY:
        quality_score = calculate_training_quality_score("succeeded", total_time_seconds, logs)
        training_logs = list(model.training_logs or [])
        if logs:
            training_logs.append({"at": now.isoformat(), "logs": logs})

        result = await db.execute(
            update(AIModel)
            .where(AIModel.id == model_id, AIModel.status != ModelStatus.READY)
            .values(
                status=ModelStatus.READY,
                progress=TRAINING_PROGRESS_DONE,
                trained_at=now,
                model_url=model_url or model.model_url,
                quality_score=quality_score,
                training_logs=training_logs,
                updated_at=now,
            )
        )
        await db.commit()
        if not result.rowcount:
            return {"type": JobType.TRAINING.value, "updated": False}

        await realtime_service.broadcast_model_status(
            user_id,
            model_id,
            ModelStatus.READY.value,
            progress=TRAINING_PROGRESS_DONE,
            qualityScore=quality_score,
            modelUrl=model_url,
        )
        await realtime_service.broadcast_notification(
            user_id,
            "Modelo Treinado!",
            f'Seu modelo "{model.name or model_id}" foi treinado com sucesso e está pronto para gerar fotos!',
            "success",
        )
        logger.info(
            "Model training completed",
            extra_data={"model_id": model_id, "quality_score": quality_score},
        )
        return {
            "type": JobType.TRAINING.value,
            "updated": True,
            "status": ModelStatus.READY.value,
            "qualityScore": quality_score,
        }

    # כישלון או ביטול (DRAFT)
    if current == ModelStatus.READY:
        logger.warning(
            "Failure delivered for ready model, ignoring",
            extra_data={"model_id": model_id, "incoming": incoming.value},
        )
        return {"type": JobType.TRAINING.value, "updated": False}

    final_status = ModelStatus.DRAFT if incoming == ModelStatus.DRAFT else failure_status
    outcome = await MediaFailureService(db).handle_failure(
        MediaKind.MODEL_TRAINING,
        model_id,
        raw_error or (_CANCELLED_TRAINING_ERROR if final_status == ModelStatus.DRAFT else None),
        final_status=final_status,
    )
    await db.execute(
        update(AIModel).where(AIModel.id == model_id).values(progress=0)
    )
    await db.commit()

    await realtime_service.broadcast_model_status(
        user_id,
        model_id,
        final_status.value,
        progress=0,
        errorMessage=outcome.user_message,
        creditsRefunded=outcome.refunded,
    )
    return {
        "type": JobType.TRAINING.value,
        "updated": True,
        "status": final_status.value,
        "refunded": outcome.refunded,
    }


# ==================== Provider entry points ====================


async def process_replicate_webhook(
    db: AsyncSession,
    payload: dict[str, Any],
    request_context: dict[str, Any] | None = None,
) -> dict[str, Any]:
    prediction = ReplicatePrediction.model_validate(payload)
    hints = LocatorHints.from_query((request_context or {}).get("query"))

    located = await JobLocator(db).locate(prediction.id, hints)
    if located is None:
        logger.warning(
            "No record found for provider job",
            extra_data={"job_id": prediction.id, "status": prediction.status},
        )
        return {"matched": False, "jobId": prediction.id}

    if located.type == JobType.TRAINING:
        result = await apply_training_update(
            db,
            located.record,
            map_replicate_training_status(prediction.status),
            provider_status=prediction.status,
            model_url=next(iter(prediction.output_urls()), None),
            raw_error=prediction.error_text,
            total_time_seconds=(prediction.metrics or {}).get("total_time"),
            logs=prediction.logs,
            failure_status=ModelStatus.ERROR,
        )
    elif located.type == JobType.EDIT:
        result = await apply_edit_update(db, located.record, prediction)
    else:
        predict_time = prediction.predict_time_seconds
        result = await apply_generation_update(
            db,
            located.record,
            map_replicate_status(prediction.status),
            image_urls=prediction.output_urls(),
            raw_error=prediction.error_text,
            processing_time_ms=round(predict_time * 1000) if predict_time is not None else None,
        )
    return {"matched": True, **result}


async def process_astria_webhook(
    db: AsyncSession,
    payload: dict[str, Any],
    request_context: dict[str, Any] | None = None,
) -> dict[str, Any]:
    parsed = parse_astria_payload(payload)

    if isinstance(parsed, AstriaTunePayload):
        model = (await db.execute(
            select(AIModel).where(AIModel.job_id == parsed.id).limit(1)
        )).scalar_one_or_none()
        if model is None:
            logger.warning("No model found for tune", extra_data={"tune_id": parsed.id})
            return {"matched": False, "jobId": parsed.id}

        provider_status = parsed.effective_status
        result = await apply_training_update(
            db,
            model,
            map_astria_tune_status(provider_status),
            provider_status=provider_status,
            raw_error=parsed.error_message,
            failure_status=ModelStatus.FAILED,
        )
        return {"matched": True, **result}

    return await _process_astria_prompt(db, parsed)


async def _process_astria_prompt(db: AsyncSession, parsed: AstriaPromptPayload) -> dict[str, Any]:
    generation = (await db.execute(
        select(Generation).where(Generation.job_id == parsed.id).limit(1)
    )).scalar_one_or_none()
    if generation is None:
        logger.warning("No generation found for prompt", extra_data={"prompt_id": parsed.id})
        return {"matched": False, "jobId": parsed.id}

    urls = parsed.image_urls()
    provider_status = parsed.effective_status
    result = await apply_generation_update(
        db,
        generation,
        map_astria_prompt_status(provider_status),
        image_urls=urls,
        raw_error=parsed.error_message,
    )
    return {"matched": True, **result}


async def process_video_webhook(
    db: AsyncSession,
    payload: dict[str, Any],
    request_context: dict[str, Any] | None = None,
) -> dict[str, Any]:
    prediction = ReplicatePrediction.model_validate(payload)
    video = (await db.execute(
        select(VideoGeneration).where(VideoGeneration.job_id == prediction.id).limit(1)
    )).scalar_one_or_none()
    if video is None:
        logger.warning("No video found for provider job", extra_data={"job_id": prediction.id})
        return {"matched": False, "jobId": prediction.id}

    video_id = video.id
    user_id = video.user_id
    status = map_video_status(prediction.status)
    now = utcnow()

    if status == MediaStatus.COMPLETED:
        urls = prediction.output_urls()
        result = await db.execute(
            update(VideoGeneration)
            .where(VideoGeneration.id == video_id, VideoGeneration.status.in_(_OPEN_MEDIA_STATUSES))
            .values(
                status=MediaStatus.COMPLETED,
                video_url=urls[0] if urls else None,
                completed_at=now,
                updated_at=now,
            )
        )
        await db.commit()
        if result.rowcount:
            await realtime_service.broadcast_generation_status(
                user_id, video_id, MediaStatus.COMPLETED.value, videoUrl=urls[0] if urls else None
            )
        return {"matched": True, "type": "video", "updated": bool(result.rowcount), "status": status.value}

    if status in (MediaStatus.FAILED, MediaStatus.CANCELLED):
        if video.status == MediaStatus.COMPLETED:
            return {"matched": True, "type": "video", "updated": False}
        outcome = await MediaFailureService(db).handle_failure(
            MediaKind.VIDEO_GENERATION,
            video_id,
            prediction.error_text
            or (_CANCELLED_GENERATION_ERROR if status == MediaStatus.CANCELLED else None),
            final_status=status,
        )
        await realtime_service.broadcast_generation_status(
            user_id,
            video_id,
            status.value,
            errorMessage=outcome.user_message,
            creditsRefunded=outcome.refunded,
        )
        return {
            "matched": True,
            "type": "video",
            "updated": True,
            "status": status.value,
            "refunded": outcome.refunded,
        }

    result = await db.execute(
        update(VideoGeneration)
        .where(VideoGeneration.id == video_id, VideoGeneration.status == MediaStatus.PENDING)
        .values(status=MediaStatus.PROCESSING, updated_at=now)
    )
    await db.commit()
    return {"matched": True, "type": "video", "updated": bool(result.rowcount), "status": MediaStatus.PROCESSING.value}


async def process_asaas_webhook(
    db: AsyncSession,
    payload: dict[str, Any],
    request_context: dict[str, Any] | None = None,
    *,
    gateway: Any = None,
) -> dict[str, Any]:
    parsed = AsaasWebhookPayload.model_validate(payload)
    result = await SubscriptionReconciler(db, gateway=gateway).handle_event(parsed)
    return {"action": result.action, "userId": result.user_id, **result.details}
