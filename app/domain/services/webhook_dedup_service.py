"""
Webhook Dedup Service - רישום כל משלוח webhook ומניעת עיבוד כפול.

כל משלוח נרשם כ-PENDING לפני כל side effect, ורק אחרי שהרשומה נשמרה
(commit) מחזירים 200 לספק. אירוע לוגי מזוהה לפי
(provider, event, payment_id, subscription_id, job_id); רק רשומה
במצב PROCESSED חוסמת עיבוד חוזר. FAILED ו-PENDING תקוע חוזרים לעיבוד
ע"י ה-retry sweep.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import WebhookEventNotFoundError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus

logger = get_logger(__name__)

_MAX_ERROR_MESSAGE_CHARS = 1000


@dataclass(frozen=True)
class DedupResult:
    is_duplicate: bool
    event_id: str | None


def _null_safe_eq(column, value):
    """השוואה שמתייחסת ל-NULL כערך (NULL == NULL)"""
    return column.is_(None) if value is None else column == value


class WebhookDedupService:
    """Persists inbound webhook deliveries and gates reprocessing"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _logical_key_filter(
        self,
        provider: str,
        event: str,
        payment_id: str | None,
        subscription_id: str | None,
        job_id: str | None,
    ) -> list:
        return [
            WebhookEvent.provider == provider,
            WebhookEvent.event == event,
            _null_safe_eq(WebhookEvent.payment_id, payment_id),
            _null_safe_eq(WebhookEvent.subscription_id, subscription_id),
            _null_safe_eq(WebhookEvent.job_id, job_id),
        ]

    async def record_and_check_duplicate(
        self,
        event: str,
        payment_id: str | None = None,
        subscription_id: str | None = None,
        *,
        provider: str,
        job_id: str | None = None,
        payload: dict[str, Any] | None = None,
        request_context: dict[str, Any] | None = None,
    ) -> DedupResult:
        """
        בדיקת כפילות ורישום משלוח חדש.

        Returns:
            DedupResult(is_duplicate=True, event_id=<processed record>) אם האירוע
            כבר עובד בהצלחה; אחרת רשומת PENDING חדשה (committed).
        """
        result = await self.db.execute(
            select(WebhookEvent.id)
            .where(
                *self._logical_key_filter(provider, event, payment_id, subscription_id, job_id),
                WebhookEvent.status == WebhookEventStatus.PROCESSED,
            )
            .limit(1)
        )
        processed_id = result.scalar_one_or_none()
        if processed_id:
            logger.info(
                "Duplicate webhook short-circuited",
                extra_data={
                    "provider": provider,
                    "event": event,
                    "payment_id": payment_id,
                    "subscription_id": subscription_id,
                    "job_id": job_id,
                    "processed_event_id": processed_id,
                },
            )
            return DedupResult(is_duplicate=True, event_id=processed_id)

        record = WebhookEvent(
            provider=provider,
            event=event,
            payment_id=payment_id,
            subscription_id=subscription_id,
            job_id=job_id,
            status=WebhookEventStatus.PENDING,
            payload=payload,
            request_context=request_context,
            retry_count=0,
            created_at=utcnow(),
        )
        self.db.add(record)
        # commit מיידי: הרשומה חייבת לשרוד גם אם העיבוד ברקע קורס
        await self.db.commit()

        logger.info(
            "Webhook event recorded",
            extra_data={
                "webhook_event_id": record.id,
                "provider": provider,
                "event": event,
                "payment_id": payment_id,
                "subscription_id": subscription_id,
                "job_id": job_id,
            },
        )
        return DedupResult(is_duplicate=False, event_id=record.id)

    async def get(self, event_id: str) -> WebhookEvent:
        record = await self.db.get(WebhookEvent, event_id)
        if record is None:
            raise WebhookEventNotFoundError(event_id)
        return record

    async def find_processed_sibling(self, record: WebhookEvent) -> str | None:
        """מזהה רשומת PROCESSED אחרת לאותו אירוע לוגי (משלוח מקביל שכבר הושלם)"""
        result = await self.db.execute(
            select(WebhookEvent.id)
            .where(
                *self._logical_key_filter(
                    record.provider, record.event, record.payment_id,
                    record.subscription_id, record.job_id,
                ),
                WebhookEvent.status == WebhookEventStatus.PROCESSED,
                WebhookEvent.id != record.id,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def mark_processed(self, event_id: str) -> None:
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                status=WebhookEventStatus.PROCESSED,
                processed_at=utcnow(),
                error_message=None,
            )
        )
        await self.db.commit()
        logger.info(
            "Webhook event processed",
            extra_data={"webhook_event_id": event_id},
        )

    async def mark_failed(self, event_id: str, error: str) -> None:
        """FAILED + retry_count += 1. נקרא אחרי rollback של העבודה שנכשלה."""
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                status=WebhookEventStatus.FAILED,
                error_message=(error or "")[:_MAX_ERROR_MESSAGE_CHARS],
                retry_count=WebhookEvent.retry_count + 1,
            )
        )
        await self.db.commit()
        logger.warning(
            "Webhook event failed",
            extra_data={"webhook_event_id": event_id, "error": error},
        )

    async def mark_duplicate_of(self, event_id: str, processed_event_id: str) -> None:
        """
        משלוח שאיבד במרוץ למשלוח מקביל של אותו אירוע.

        נסגר כ-FAILED עם retry_count מקסימלי כדי שה-retry sweep לא ירים אותו.
        """
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                status=WebhookEventStatus.FAILED,
                error_message=f"duplicate of {processed_event_id}",
                retry_count=settings.WEBHOOK_MAX_RETRIES,
                processed_at=utcnow(),
            )
        )
        await self.db.commit()
        logger.info(
            "Webhook event superseded by processed duplicate",
            extra_data={"webhook_event_id": event_id, "processed_event_id": processed_event_id},
        )

    async def find_retryable(
        self,
        now: datetime | None = None,
        limit: int | None = None,
        max_retries: int | None = None,
    ) -> list[WebhookEvent]:
        """
        אירועים לעיבוד חוזר: FAILED, או PENDING שתקוע מעבר לסף,
        עם retry_count < max ושגילם מעל המינימום. הישנים ראשונים.
        """
        now = now or utcnow()
        max_retries = max_retries if max_retries is not None else settings.WEBHOOK_MAX_RETRIES
        limit = limit or settings.WEBHOOK_RETRY_BATCH_SIZE
        min_age_cutoff = now - timedelta(seconds=settings.WEBHOOK_RETRY_MIN_AGE_SECONDS)
        stuck_cutoff = now - timedelta(seconds=settings.WEBHOOK_STUCK_PENDING_SECONDS)

        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.retry_count < max_retries,
                WebhookEvent.created_at < min_age_cutoff,
                (
                    (WebhookEvent.status == WebhookEventStatus.FAILED)
                    | (
                        (WebhookEvent.status == WebhookEventStatus.PENDING)
                        & (WebhookEvent.created_at < stuck_cutoff)
                    )
                ),
            )
            .order_by(WebhookEvent.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_failed(self, limit: int = 50) -> list[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.status == WebhookEventStatus.FAILED)
            .order_by(WebhookEvent.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def summary(self) -> dict[str, dict[str, int]]:
        """ספירת אירועים לפי provider וסטטוס"""
        result = await self.db.execute(
            select(WebhookEvent.provider, WebhookEvent.status, func.count(WebhookEvent.id))
            .group_by(WebhookEvent.provider, WebhookEvent.status)
        )
        counts: dict[str, dict[str, int]] = {}
        for provider, status, count in result.all():
            status_value = status.value if hasattr(status, "value") else str(status)
            counts.setdefault(provider, {})[status_value] = count
        return counts
