"""
Admin Endpoints — ניטור ותחזוקה של webhooks, ledger וחבילות ללא גישה ישירה ל-DB.

1. סיכום ורשימת אירועי webhook כושלים + retry ידני / sweep
2. היסטוריית ledger ויתרה של משתמש
3. reconcile לחבילה בודדת או לכל החבילות התקועות
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.credit_ledger_service import CreditLedgerService
from app.domain.services.package_reconciliation import PackageReconciliationService
from app.domain.services.payment_gateway_client import AsaasClient, get_payment_gateway
from app.domain.services.webhook_dedup_service import WebhookDedupService
from app.domain.services.webhook_dispatcher import dispatch_event, retry_failed_events

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

_AUTH_RESPONSES = {
    401: {"description": "חסר מפתח API"},
    403: {"description": "מפתח API שגוי"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class WebhookEventResponse(BaseModel):
    """אירוע webhook בודד"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    event: str
    payment_id: str | None
    subscription_id: str | None
    job_id: str | None
    status: str
    retry_count: int
    error_message: str | None
    created_at: datetime | None
    processed_at: datetime | None


class WebhookRetryResponse(BaseModel):
    event_id: str
    success: bool
    details: dict[str, Any] = Field(default_factory=dict)


class CreditTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    source: str
    amount: int
    balance_after: int
    description: str | None
    reference_id: str | None
    created_at: datetime | None


class CreditHistoryResponse(BaseModel):
    user_id: str
    available_credits: int
    transactions: list[CreditTransactionResponse]


def _event_to_response(event) -> WebhookEventResponse:
    return WebhookEventResponse(
        id=event.id,
        provider=event.provider,
        event=event.event,
        payment_id=event.payment_id,
        subscription_id=event.subscription_id,
        job_id=event.job_id,
        status=event.status.value if hasattr(event.status, "value") else str(event.status),
        retry_count=event.retry_count or 0,
        error_message=event.error_message,
        created_at=event.created_at,
        processed_at=event.processed_at,
    )


# ─── 1. Webhook events ──────────────────────────────────────────────────────

@router.get(
    "/webhooks/summary",
    summary="סיכום אירועי webhook",
    description="ספירת אירועים לפי provider וסטטוס.",
    responses=_AUTH_RESPONSES,
)
async def get_webhook_summary(
    db: AsyncSession = Depends(get_db),
) -> dict[str, dict[str, int]]:
    return await WebhookDedupService(db).summary()


@router.get(
    "/webhooks/failed",
    response_model=list[WebhookEventResponse],
    summary="אירועי webhook כושלים",
    responses=_AUTH_RESPONSES,
)
async def list_failed_webhooks(
    db: AsyncSession = Depends(get_db),
    limit: int = Query(default=50, ge=1, le=200, description="מספר אירועים מקסימלי"),
) -> list[WebhookEventResponse]:
    events = await WebhookDedupService(db).list_failed(limit)
    return [_event_to_response(event) for event in events]


@router.post(
    "/webhooks/retry",
    summary="הרצת retry sweep",
    description="עיבוד חוזר של אירועים FAILED ו-PENDING תקועים (כמו ה-job המתוזמן).",
    responses=_AUTH_RESPONSES,
)
async def run_webhook_retry_sweep(
    db: AsyncSession = Depends(get_db),
    gateway: AsaasClient = Depends(get_payment_gateway),
) -> dict[str, int]:
    return await retry_failed_events(db, gateway=gateway)


@router.post(
    "/webhooks/{event_id}/retry",
    response_model=WebhookRetryResponse,
    summary="retry ידני לאירוע webhook",
    description="מריץ מחדש את העיבוד של אירוע בודד. אירוע PROCESSED לא מעובד שוב.",
    responses={**_AUTH_RESPONSES, 404: {"description": "אירוע לא נמצא"}},
)
async def retry_webhook_event(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: AsaasClient = Depends(get_payment_gateway),
) -> WebhookRetryResponse:
    outcome = await dispatch_event(db, event_id, gateway=gateway)
    logger.info(
        "Manual webhook retry",
        extra_data={"webhook_event_id": event_id, "success": outcome.get("success")},
    )
    return WebhookRetryResponse(
        event_id=event_id,
        success=bool(outcome.get("success")),
        details={k: v for k, v in outcome.items() if k != "success"},
    )


# ─── 2. Credit ledger ───────────────────────────────────────────────────────

@router.get(
    "/users/{user_id}/credits",
    response_model=CreditHistoryResponse,
    summary="יתרה והיסטוריית ledger של משתמש",
    responses={**_AUTH_RESPONSES, 404: {"description": "משתמש לא נמצא"}},
)
async def get_user_credit_history(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    limit: int = Query(default=20, ge=1, le=200),
) -> CreditHistoryResponse:
    ledger = CreditLedgerService(db)
    available = await ledger.get_available_credits(user_id)
    transactions = await ledger.get_transaction_history(user_id, limit=limit)
    return CreditHistoryResponse(
        user_id=user_id,
        available_credits=available,
        transactions=[
            CreditTransactionResponse(
                id=tx.id,
                type=tx.type.value if hasattr(tx.type, "value") else str(tx.type),
                source=tx.source.value if hasattr(tx.source, "value") else str(tx.source),
                amount=tx.amount,
                balance_after=tx.balance_after,
                description=tx.description,
                reference_id=tx.reference_id,
                created_at=tx.created_at,
            )
            for tx in transactions
        ],
    )


# ─── 3. Packages ────────────────────────────────────────────────────────────

@router.post(
    "/packages/reconcile",
    summary="reconcile לחבילות",
    description="ללא package_id: sweep על כל החבילות ב-ACTIVE / GENERATING.",
    responses=_AUTH_RESPONSES,
)
async def reconcile_packages(
    db: AsyncSession = Depends(get_db),
    package_id: Optional[str] = Query(default=None),
) -> dict[str, Any]:
    service = PackageReconciliationService(db)
    if package_id is None:
        return await service.reconcile_stuck()

    result = await service.reconcile(package_id)
    return {
        "success": result.success,
        "updated": result.updated,
        "previousStatus": result.previous_status.value if result.previous_status else None,
        "newStatus": result.new_status.value if result.new_status else None,
        "stats": result.stats.to_dict(),
        "error": result.error,
    }
