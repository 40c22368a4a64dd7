"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- בוני payload ל-Asaas, Replicate ו-Astria
- פונקציות שליחה תמציתיות (כולל חתימת Replicate)
- פונקציות אימות DB (ledger, קרדיטים, אירועי webhook)
"""
import json
import time

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.webhook_auth import compute_replicate_signature
from app.db.models.credit_transaction import CreditTransaction
from app.db.models.user import User
from app.db.models.webhook_event import WebhookEvent
from tests.conftest import TEST_ASAAS_TOKEN, TEST_ASTRIA_SECRET, TEST_REPLICATE_SECRET


# ============================================================================
# בוני Payload
# ============================================================================

_message_counter = 0


def _next_message_id() -> str:
    """מייצר webhook-id ייחודי לכל משלוח"""
    global _message_counter
    _message_counter += 1
    return f"msg_{_message_counter}"


def build_asaas_payment(event: str, payment_id: str, *, customer: str = "cus_1", **payment_fields) -> dict:
    """בניית payload אירוע תשלום Asaas"""
    return {
        "event": event,
        "payment": {"id": payment_id, "customer": customer, **payment_fields},
    }


def build_replicate_prediction(job_id: str, status: str, **fields) -> dict:
    """בניית payload prediction / training של Replicate"""
    return {"id": job_id, "status": status, **fields}


# ============================================================================
# שליחה
# ============================================================================


async def send_asaas(client, payload: dict):
    return await client.post(
        "/api/webhooks/asaas",
        json=payload,
        headers={"asaas-access-token": TEST_ASAAS_TOKEN},
    )


async def send_replicate(client, payload: dict, *, query: str = ""):
    """שליחת payload חתום ל-Replicate webhook"""
    body = json.dumps(payload).encode()
    webhook_id = _next_message_id()
    timestamp = str(int(time.time()))
    url = "/api/webhooks/replicate" + (f"?{query}" if query else "")
    return await client.post(
        url,
        content=body,
        headers={
            "content-type": "application/json",
            "webhook-id": webhook_id,
            "webhook-timestamp": timestamp,
            "webhook-signature": compute_replicate_signature(
                TEST_REPLICATE_SECRET, webhook_id, timestamp, body
            ),
        },
    )


async def send_astria(client, payload: dict):
    return await client.post(
        "/api/webhooks/astria",
        json=payload,
        headers={"authorization": f"Bearer {TEST_ASTRIA_SECRET}"},
    )


# ============================================================================
# אימות DB
# ============================================================================


async def assert_ledger_count(db: AsyncSession, user_id: str, expected: int) -> list[CreditTransaction]:
    rows = (await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at)
    )).scalars().all()
    assert len(rows) == expected, f"expected {expected} ledger entries, got {len(rows)}"
    return list(rows)


async def assert_available_credits(db: AsyncSession, user_id: str, expected: int) -> User:
    user = await db.get(User, user_id, populate_existing=True)
    assert user.available_credits == expected, (
        f"expected {expected} available credits, got {user.available_credits}"
    )
    return user


async def webhook_event_count(db: AsyncSession) -> int:
    return (await db.execute(select(func.count(WebhookEvent.id)))).scalar_one()
