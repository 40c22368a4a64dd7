"""
תרחיש 3 — איתור אימון לפי job id ללא רמזי query

מכסה:
- locate("job_42") ללא רמזים → training + ה-model
- webhook training של Replicate ללא query → model READY עם ציון איכות
- רמזים שגויים → נפילה למסלול הגיבוי
"""
import pytest

from app.db.models.ai_model import AIModel, ModelStatus
from app.domain.services.job_locator import JobLocator, JobType, LocatorHints

from tests.scenarios.conftest import build_replicate_prediction, send_replicate


@pytest.mark.scenario
class TestLocatorFallback:
    """callback ללא רמזים מגיע לרשומת האימון הנכונה"""

    @pytest.mark.asyncio
    async def test_locate_training_by_job_id(self, db_session, sample_user, model_factory):
        model = await model_factory(sample_user.id, job_id="job_42")

        located = await JobLocator(db_session).locate("job_42")

        assert located.type == JobType.TRAINING
        assert located.record.id == model.id

    @pytest.mark.asyncio
    async def test_wrong_hints_fall_back(self, db_session, sample_user, model_factory):
        model = await model_factory(sample_user.id, job_id="job_42")
        hints = LocatorHints(type="generation", record_id="missing", user_id=sample_user.id)

        located = await JobLocator(db_session).locate("job_42", hints)

        assert located.type == JobType.TRAINING
        assert located.record.id == model.id

    @pytest.mark.asyncio
    async def test_training_webhook_without_hints(
        self, test_client, db_session, sample_user, model_factory, fake_redis
    ):
        model = await model_factory(sample_user.id, job_id="job_42")
        payload = build_replicate_prediction(
            "job_42",
            "succeeded",
            output={"weights": "https://cdn/lora.safetensors"},
            metrics={"total_time": 600},
            logs="flux lora training done",
        )

        response = await send_replicate(test_client, payload)

        assert response.status_code == 200
        refreshed = await db_session.get(AIModel, model.id, populate_existing=True)
        assert refreshed.status == ModelStatus.READY
        assert refreshed.quality_score == 100
        assert fake_redis.messages_of_type("model_status_changed")
