"""
בדיקות ל-endpoints של אדמין — אימות מפתח, אירועי webhook, ledger וחבילות.
"""
from datetime import timedelta

import pytest

from app.core.config import settings
from app.db.database import utcnow
from app.db.models.credit_transaction import CreditSource
from app.db.models.media_record import MediaStatus
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus, WebhookProvider
from app.domain.services.credit_ledger_service import CreditLedgerService
from tests.conftest import TEST_ADMIN_API_KEY

ADMIN_HEADERS = {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


async def _failed_event(db_session, job_id: str, payload: dict | None = None, minutes_ago: int = 30):
    record = WebhookEvent(
        provider=WebhookProvider.REPLICATE.value,
        event="prediction.succeeded",
        job_id=job_id,
        payload=payload or {"id": job_id, "status": "succeeded", "output": "https://x"},
        status=WebhookEventStatus.FAILED,
        retry_count=1,
        error_message="db timeout",
        created_at=utcnow() - timedelta(minutes=minutes_ago),
    )
    db_session.add(record)
    await db_session.commit()
    return record


class TestAdminAuth:

    @pytest.mark.integration
    async def test_missing_key(self, test_client):
        response = await test_client.get("/api/admin/webhooks/summary")
        assert response.status_code == 401

    @pytest.mark.integration
    async def test_wrong_key(self, test_client):
        response = await test_client.get("/api/admin/webhooks/summary", headers={"X-Admin-API-Key": "x"})
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_unconfigured_key_blocks_everything(self, test_client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
        response = await test_client.get("/api/admin/webhooks/summary", headers=ADMIN_HEADERS)
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_responses_not_cached(self, test_client):
        response = await test_client.get("/api/admin/webhooks/summary", headers=ADMIN_HEADERS)
        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "no-store"


class TestWebhookAdmin:

    @pytest.mark.integration
    async def test_summary_and_failed_list(self, test_client, db_session):
        record = await _failed_event(db_session, "job_1")

        summary = await test_client.get("/api/admin/webhooks/summary", headers=ADMIN_HEADERS)
        failed = await test_client.get("/api/admin/webhooks/failed", headers=ADMIN_HEADERS)

        assert summary.json() == {"replicate": {"FAILED": 1}}
        body = failed.json()
        assert len(body) == 1
        assert body[0]["id"] == record.id
        assert body[0]["status"] == "FAILED"
        assert body[0]["error_message"] == "db timeout"

    @pytest.mark.integration
    async def test_manual_retry(self, test_client, db_session, sample_user, generation_factory):
        generation = await generation_factory(sample_user.id, job_id="job_2")
        record = await _failed_event(db_session, "job_2")

        response = await test_client.post(f"/api/admin/webhooks/{record.id}/retry", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json()["success"] is True
        refreshed = await db_session.get(WebhookEvent, record.id, populate_existing=True)
        assert refreshed.status == WebhookEventStatus.PROCESSED
        await db_session.refresh(generation)
        assert generation.status == MediaStatus.COMPLETED

    @pytest.mark.integration
    async def test_manual_retry_unknown_event(self, test_client):
        response = await test_client.post("/api/admin/webhooks/missing/retry", headers=ADMIN_HEADERS)
        assert response.status_code == 404

    @pytest.mark.integration
    async def test_retry_sweep(self, test_client, db_session):
        await _failed_event(db_session, "job_3")
        await _failed_event(db_session, "job_4", minutes_ago=1)

        response = await test_client.post("/api/admin/webhooks/retry", headers=ADMIN_HEADERS)

        assert response.json() == {"total": 1, "succeeded": 1, "failed": 0}


class TestLedgerAdmin:

    @pytest.mark.integration
    async def test_credit_history(self, test_client, db_session, sample_user):
        await CreditLedgerService(db_session).add_credits(sample_user.id, 15, CreditSource.BONUS)
        await db_session.commit()

        response = await test_client.get(f"/api/admin/users/{sample_user.id}/credits", headers=ADMIN_HEADERS)

        body = response.json()
        assert body["available_credits"] == 415
        assert body["transactions"][0]["amount"] == 15
        assert body["transactions"][0]["source"] == "BONUS"

    @pytest.mark.integration
    async def test_unknown_user(self, test_client):
        response = await test_client.get("/api/admin/users/ghost/credits", headers=ADMIN_HEADERS)
        assert response.status_code == 404


class TestPackageAdmin:

    @pytest.mark.integration
    async def test_reconcile_single_package(
        self, test_client, sample_user, package_factory, generation_factory
    ):
        package = await package_factory(sample_user.id)
        await generation_factory(sample_user.id, status=MediaStatus.COMPLETED, package_id=package.id)

        response = await test_client.post(
            f"/api/admin/packages/reconcile?package_id={package.id}", headers=ADMIN_HEADERS
        )

        body = response.json()
        assert body["success"] is True
        assert body["newStatus"] == "COMPLETED"
        assert body["stats"]["completed"] == 1

    @pytest.mark.integration
    async def test_reconcile_all(self, test_client, sample_user, package_factory):
        await package_factory(sample_user.id)

        response = await test_client.post("/api/admin/packages/reconcile", headers=ADMIN_HEADERS)
        assert response.json()["total"] == 1
