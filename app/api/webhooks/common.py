"""
עזרים משותפים ל-webhook routers: רישום dedup, ack מיידי, ותזמון העיבוד ברקע.

חוזה התשובה לכל הספקים:
- 401 על כישלון אימות (ב-dependency).
- 200 ``{"success": false}`` על payload שלא ניתן לפענח.
- 200 ``{"received": true, "webhookEventId": ...}`` ברגע שרשומת ה-WebhookEvent נשמרה;
  העיבוד עצמו רץ ב-BackgroundTask עם session משלו.
"""
import json
from typing import Any

from fastapi import BackgroundTasks, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.domain.services.webhook_dedup_service import WebhookDedupService
from app.domain.services.webhook_dispatcher import process_webhook_event

logger = get_logger(__name__)

_USER_AGENT_MAX_CHARS = 200


def build_request_context(request: Request) -> dict[str, Any]:
    """רמזי query + פרטי לקוח לשמירה ב-WebhookEvent.request_context"""
    query = {k: v for k, v in request.query_params.items() if k != "secret"}
    return {
        "query": query,
        "client_ip": request.client.host if request.client else None,
        "user_agent": (request.headers.get("user-agent") or "")[:_USER_AGENT_MAX_CHARS],
    }


async def read_json_body(request: Request) -> dict[str, Any] | None:
    """גוף הבקשה כ-dict, או None אם אינו JSON object"""
    body = await request.body()
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def invalid_payload_response(provider: str, reason: str) -> dict[str, Any]:
    logger.warning(
        "Webhook payload rejected",
        extra_data={"provider": provider, "reason": reason},
    )
    return {"success": False, "error": "Invalid payload"}


async def accept_webhook(
    db: AsyncSession,
    background_tasks: BackgroundTasks,
    session_factory: Any,
    *,
    provider: str,
    event: str,
    payload: dict[str, Any],
    request_context: dict[str, Any],
    payment_id: str | None = None,
    subscription_id: str | None = None,
    job_id: str | None = None,
    gateway: Any = None,
) -> dict[str, Any]:
    """רישום המשלוח ותזמון העיבוד. משלוח כפול של אירוע שכבר עובד לא מתוזמן."""
    dedup = await WebhookDedupService(db).record_and_check_duplicate(
        event,
        payment_id,
        subscription_id,
        provider=provider,
        job_id=job_id,
        payload=payload,
        request_context=request_context,
    )
    if dedup.is_duplicate:
        return {"received": True, "duplicate": True, "webhookEventId": dedup.event_id}

    kwargs = {"gateway": gateway} if gateway is not None else {}
    background_tasks.add_task(process_webhook_event, session_factory, dedup.event_id, **kwargs)
    return {"received": True, "webhookEventId": dedup.event_id}
