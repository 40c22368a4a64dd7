"""
Replicate Webhook - predictions (generation / upscale / edit) ו-trainings.

רמזי query אופציונליים ל-locator: ``?type=generation|upscale|edit|training&id=<recordId>&userId=<userId>``.
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
from app.core.logging import get_logger
from app.db.database import get_db, get_session_factory
from app.db.models.webhook_event import WebhookProvider
from app.domain.webhook_payloads import ReplicatePrediction

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/replicate",
    summary="Replicate Webhook",
    description="עדכוני סטטוס של predictions ו-trainings. חתימת HMAC בכותרות webhook-*.",
    responses={
        200: {"description": "האירוע נרשם (העיבוד רץ ברקע)"},
        401: {"description": "חתימה לא תקינה או timestamp מחוץ לחלון"},
    },
)
async def replicate_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
    _: None = Depends(verify_replicate_request),
) -> dict:
    data = await read_json_body(request)
    if data is None:
        return invalid_payload_response(WebhookProvider.REPLICATE.value, "body is not a JSON object")

    try:
        prediction = ReplicatePrediction.model_validate(data)
    except ValidationError as e:
        return invalid_payload_response(WebhookProvider.REPLICATE.value, str(e))

    logger.info(
        "Replicate webhook received",
        extra_data={"job_id": prediction.id, "status": prediction.status},
    )
    return await accept_webhook(
        db,
        background_tasks,
        session_factory,
        provider=WebhookProvider.REPLICATE.value,
        event=f"prediction.{prediction.status.lower()}",
        job_id=prediction.id,
        payload=data,
        request_context=build_request_context(request),
    )
