"""
Video Webhook - עדכוני סטטוס של יצירת וידאו (Replicate, אותה חתימה).
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import verify_replicate_request
from app.api.webhooks.common import (
    accept_webhook,
    build_request_context,
    invalid_payload_response,
    read_json_body,
)
from app.db.database import get_db, get_session_factory
from app.db.models.webhook_event import WebhookProvider
from app.domain.webhook_payloads import ReplicatePrediction

router = APIRouter()


@router.post(
    "/video",
    summary="Video Webhook",
    responses={
        200: {"description": "האירוע נרשם (העיבוד רץ ברקע)"},
        401: {"description": "חתימה לא תקינה"},
    },
)
async def video_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
    _: None = Depends(verify_replicate_request),
) -> dict:
    data = await read_json_body(request)
    if data is None:
        return invalid_payload_response(WebhookProvider.VIDEO.value, "body is not a JSON object")

    try:
        prediction = ReplicatePrediction.model_validate(data)
    except ValidationError as e:
        return invalid_payload_response(WebhookProvider.VIDEO.value, str(e))

    return await accept_webhook(
        db,
        background_tasks,
        session_factory,
        provider=WebhookProvider.VIDEO.value,
        event=f"video.{prediction.status.lower()}",
        job_id=prediction.id,
        payload=data,
        request_context=build_request_context(request),
    )
