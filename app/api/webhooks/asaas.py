"""
Asaas Webhook - אירועי תשלום ומנוי משער התשלומים.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import verify_asaas_token
from app.api.webhooks.common import (
    accept_webhook,
    build_request_context,
    invalid_payload_response,
    read_json_body,
)
from app.core.logging import get_logger
from app.db.database import get_db, get_session_factory
from app.db.models.webhook_event import WebhookProvider
from app.domain.services.payment_gateway_client import AsaasClient, get_payment_gateway
from app.domain.webhook_payloads import AsaasWebhookPayload

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/asaas",
    summary="Asaas Webhook",
    description="אירועי תשלום / מנוי מ-Asaas. האימות בכותרת asaas-access-token.",
    responses={
        200: {"description": "האירוע נרשם (העיבוד רץ ברקע)"},
        401: {"description": "טוקן אימות חסר או שגוי"},
    },
)
async def asaas_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
    gateway: AsaasClient = Depends(get_payment_gateway),
    _: None = Depends(verify_asaas_token),
) -> dict:
    data = await read_json_body(request)
    if data is None:
        return invalid_payload_response(WebhookProvider.ASAAS.value, "body is not a JSON object")

    try:
        payload = AsaasWebhookPayload.model_validate(data)
    except ValidationError as e:
        return invalid_payload_response(WebhookProvider.ASAAS.value, str(e))

    logger.info(
        "Asaas webhook received",
        extra_data={
            "event": payload.event,
            "payment_id": payload.payment.id if payload.payment else None,
            "subscription_id": payload.subscription.id if payload.subscription else None,
        },
    )

    # מנוי מגיע לפעמים רק כ-payment.subscription
    subscription_id = None
    if payload.subscription:
        subscription_id = payload.subscription.id
    elif payload.payment:
        subscription_id = payload.payment.subscription

    return await accept_webhook(
        db,
        background_tasks,
        session_factory,
        provider=WebhookProvider.ASAAS.value,
        event=payload.event,
        payload=data,
        request_context=build_request_context(request),
        payment_id=payload.payment.id if payload.payment else None,
        subscription_id=subscription_id,
        gateway=gateway,
    )
