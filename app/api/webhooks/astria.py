"""
Astria Webhook - tunes (אימון מודל) ו-prompts (יצירת תמונות).
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import verify_astria_secret
from app.api.webhooks.common import (
    accept_webhook,
    build_request_context,
    invalid_payload_response,
    read_json_body,
)
from app.core.logging import get_logger
from app.db.database import get_db, get_session_factory
from app.db.models.webhook_event import WebhookProvider
from app.domain.webhook_payloads import parse_astria_payload

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/astria",
    summary="Astria Webhook",
    description="סוד משותף ב-Authorization Bearer, בכותרת x-astria-secret או ב-?secret=.",
    responses={
        200: {"description": "האירוע נרשם (העיבוד רץ ברקע)"},
        401: {"description": "סוד חסר או שגוי"},
    },
)
async def astria_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
    _: None = Depends(verify_astria_secret),
) -> dict:
    data = await read_json_body(request)
    if data is None:
        return invalid_payload_response(WebhookProvider.ASTRIA.value, "body is not a JSON object")

    try:
        parsed = parse_astria_payload(data)
    except ValidationError as e:
        return invalid_payload_response(WebhookProvider.ASTRIA.value, str(e))

    status = (parsed.effective_status or "unknown").lower()
    logger.info(
        "Astria webhook received",
        extra_data={"object": parsed.object, "job_id": parsed.id, "status": status},
    )
    return await accept_webhook(
        db,
        background_tasks,
        session_factory,
        provider=WebhookProvider.ASTRIA.value,
        event=f"{parsed.object}.{status}",
        job_id=parsed.id,
        payload=data,
        request_context=build_request_context(request),
    )
