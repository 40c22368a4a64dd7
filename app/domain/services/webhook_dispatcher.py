"""
Webhook Dispatcher - עיבוד רשומת WebhookEvent ברקע.

נקודת הכניסה של ה-BackgroundTask שה-router מתזמן אחרי ה-ack, של ה-retry
sweep ושל retry ידני מה-admin. כל הרצה:
1. טוענת את הרשומה; PROCESSED → לא נוגעים.
2. בודקת אם משלוח מקביל של אותו אירוע לוגי כבר הושלם → סוגרת כ-duplicate.
3. מריצה את ה-processor של הספק על ה-payload השמור.
4. PROCESSED בהצלחה; כל חריגה → rollback, FAILED, retry_count += 1.
"""
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger, log_async_operation, webhook_log_context
from app.db.models.webhook_event import WebhookEventStatus, WebhookProvider
from app.domain.services.webhook_dedup_service import WebhookDedupService
from app.domain.services.webhook_processors import (
    process_asaas_webhook,
    process_astria_webhook,
    process_replicate_webhook,
    process_video_webhook,
)

logger = get_logger(__name__)

Processor = Callable[..., Awaitable[dict[str, Any]]]

PROCESSORS: dict[str, Processor] = {
    WebhookProvider.REPLICATE.value: process_replicate_webhook,
    WebhookProvider.ASTRIA.value: process_astria_webhook,
    WebhookProvider.VIDEO.value: process_video_webhook,
}


async def dispatch_event(db: AsyncSession, event_id: str, *, gateway: Any = None) -> dict[str, Any]:
    """
    עיבוד רשומה אחת על session נתון.

    לעולם לא זורק (מלבד רשומה שלא קיימת); תוצאת העיבוד נשמרת ברשומה עצמה.
    """
    dedup = WebhookDedupService(db)
    record = await dedup.get(event_id)
    provider = record.provider

    with webhook_log_context(provider, event_id, event=record.event):
        if record.status == WebhookEventStatus.PROCESSED:
            logger.info("Webhook event already processed", extra_data={"webhook_event_id": event_id})
            return {"success": True, "skipped": True}

        sibling_id = await dedup.find_processed_sibling(record)
        if sibling_id:
            await dedup.mark_duplicate_of(event_id, sibling_id)
            return {"success": True, "duplicateOf": sibling_id}

        payload = record.payload or {}
        request_context = record.request_context or {}

        try:
            if provider == WebhookProvider.ASAAS.value:
                result = await process_asaas_webhook(db, payload, request_context, gateway=gateway)
            else:
                processor = PROCESSORS.get(provider)
                if processor is None:
                    raise ValueError(f"No processor registered for provider {provider!r}")
                result = await processor(db, payload, request_context)
        except Exception as e:
            await db.rollback()
            logger.error(
                "Webhook processing failed",
                extra_data={"webhook_event_id": event_id, "error": str(e)},
                exc_info=True,
            )
            await dedup.mark_failed(event_id, str(e) or type(e).__name__)
            return {"success": False, "error": str(e)}

        await dedup.mark_processed(event_id)
        return {"success": True, "result": result}


async def process_webhook_event(
    session_factory: Callable[[], Any],
    event_id: str,
    *,
    gateway: Any = None,
) -> dict[str, Any]:
    """BackgroundTask: session חדש מה-factory (session הבקשה כבר נסגר)"""
    async with session_factory() as db:
        return await dispatch_event(db, event_id, gateway=gateway)


@log_async_operation("retry_failed_webhooks")
async def retry_failed_events(db: AsyncSession, *, gateway: Any = None) -> dict[str, Any]:
    """retry sweep: FAILED ו-PENDING תקועים, עד WEBHOOK_RETRY_BATCH_SIZE בהרצה"""
    events = await WebhookDedupService(db).find_retryable()
    event_ids = [event.id for event in events]

    succeeded = 0
    failed = 0
    for event_id in event_ids:
        outcome = await dispatch_event(db, event_id, gateway=gateway)
        if outcome.get("success"):
            succeeded += 1
        else:
            failed += 1

    if event_ids:
        logger.info(
            "Webhook retry sweep finished",
            extra_data={"total": len(event_ids), "succeeded": succeeded, "failed": failed},
        )
    return {"total": len(event_ids), "succeeded": succeeded, "failed": failed}
