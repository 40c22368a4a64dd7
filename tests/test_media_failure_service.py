"""
בדיקות ל-MediaFailureService — סיווג, הודעה למשתמש והחזר קרדיטים פעם אחת.
"""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import Update, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidCreditAmountError
from app.db.models.ai_model import AIModel, ModelStatus
from app.db.models.credit_transaction import CreditSource, CreditTransaction, CreditTransactionType
from app.db.models.generation import Generation
from app.db.models.media_record import FailureReason, MediaKind, MediaStatus
from app.db.models.user import User
from app.db.models.video_generation import VideoGeneration
from app.domain.services.media_failure_service import MediaFailureService
from app.domain.services.user_messages import REFUND_PENDING_MESSAGE, get_user_message


async def _refunds(db_session, reference_id):
    result = await db_session.execute(
        select(CreditTransaction).where(
            CreditTransaction.reference_id == reference_id,
            CreditTransaction.type == CreditTransactionType.REFUNDED,
        )
    )
    return list(result.scalars().all())


class TestHandleFailure:

    @pytest.mark.unit
    async def test_refunds_and_marks_failed(self, db_session, sample_user, generation_factory):
        await generation_factory(sample_user.id, id="gen_1", credits_used=10)

        result = await MediaFailureService(db_session).handle_failure(
            MediaKind.IMAGE_GENERATION, "gen_1", "NSFW content detected"
        )

        assert result.success is True
        assert result.refunded is True
        assert result.failure_reason == FailureReason.SAFETY_BLOCKED

        generation = await db_session.get(Generation, "gen_1", populate_existing=True)
        assert generation.status == MediaStatus.FAILED
        assert generation.credits_refunded is True
        assert generation.failure_reason == FailureReason.SAFETY_BLOCKED
        assert generation.error_message == get_user_message(
            MediaKind.IMAGE_GENERATION, FailureReason.SAFETY_BLOCKED
        )
        assert generation.meta["originalErrorMessage"] == "NSFW content detected"

        refunds = await _refunds(db_session, "gen_1")
        assert len(refunds) == 1
        assert refunds[0].amount == 10
        assert refunds[0].source == CreditSource.GENERATION

    @pytest.mark.unit
    async def test_second_call_does_not_refund_again(self, db_session, sample_user, generation_factory):
        await generation_factory(sample_user.id, id="gen_2", credits_used=10)
        service = MediaFailureService(db_session)

        first = await service.handle_failure(MediaKind.IMAGE_GENERATION, "gen_2", "timeout")
        second = await service.handle_failure(MediaKind.IMAGE_GENERATION, "gen_2", "timeout")

        assert first.refunded is True
        assert second.success is True
        assert second.refunded is False
        assert len(await _refunds(db_session, "gen_2")) == 1

        user = await db_session.get(User, sample_user.id, populate_existing=True)
        assert user.credits_used == 90

    @pytest.mark.unit
    async def test_already_refunded_record_only_updates_fields(
        self, db_session, sample_user, generation_factory
    ):
        await generation_factory(sample_user.id, id="gen_3", credits_refunded=True)

        result = await MediaFailureService(db_session).handle_failure(
            MediaKind.IMAGE_GENERATION, "gen_3", "Upload failed"
        )

        assert result.refunded is False
        assert await _refunds(db_session, "gen_3") == []
        generation = await db_session.get(Generation, "gen_3", populate_existing=True)
        assert generation.failure_reason == FailureReason.STORAGE_ERROR

    @pytest.mark.unit
    async def test_skip_refund(self, db_session, sample_user, generation_factory):
        await generation_factory(sample_user.id, id="gen_4")

        result = await MediaFailureService(db_session).handle_failure(
            MediaKind.IMAGE_GENERATION, "gen_4", "boom", skip_refund=True
        )

        assert result.success is True
        assert result.refunded is False
        generation = await db_session.get(Generation, "gen_4", populate_existing=True)
        assert generation.credits_refunded is False
        assert generation.status == MediaStatus.FAILED

    @pytest.mark.unit
    async def test_zero_credits_nothing_to_refund(self, db_session, sample_user, generation_factory):
        await generation_factory(sample_user.id, id="gen_5", credits_used=0)

        result = await MediaFailureService(db_session).handle_failure(
            MediaKind.IMAGE_GENERATION, "gen_5", None
        )
        assert result.refunded is False
        assert result.failure_reason == FailureReason.UNKNOWN_ERROR

    @pytest.mark.unit
    async def test_missing_record(self, db_session):
        result = await MediaFailureService(db_session).handle_failure(
            MediaKind.VIDEO_GENERATION, "nope", "boom"
        )
        assert result.success is False
        assert result.error == "Media not found"
        assert result.failure_reason == FailureReason.INTERNAL_ERROR

    @pytest.mark.unit
    async def test_custom_final_status(self, db_session, sample_user, video_factory):
        video = await video_factory(sample_user.id, credits_used=50)

        await MediaFailureService(db_session).handle_failure(
            MediaKind.VIDEO_GENERATION, video.id, "cancelled by user", final_status=MediaStatus.CANCELLED
        )

        refreshed = await db_session.get(VideoGeneration, video.id, populate_existing=True)
        assert refreshed.status == MediaStatus.CANCELLED
        refunds = await _refunds(db_session, video.id)
        assert refunds[0].source == CreditSource.VIDEO

    @pytest.mark.unit
    async def test_training_defaults_to_failed(self, db_session, sample_user, model_factory):
        model = await model_factory(sample_user.id, credits_used=100)

        result = await MediaFailureService(db_session).handle_failure(
            MediaKind.MODEL_TRAINING, model.id, "Invalid input images"
        )

        assert result.failure_reason == FailureReason.INVALID_INPUT
        refreshed = await db_session.get(AIModel, model.id, populate_existing=True)
        assert refreshed.status == ModelStatus.FAILED
        assert refreshed.credits_refunded is True

    @pytest.mark.unit
    async def test_ledger_failure_rolls_back_claim(self, db_session, sample_user, generation_factory):
        await generation_factory(sample_user.id, id="gen_6", credits_used=10)
        ledger = AsyncMock()
        ledger.add_credits = AsyncMock(side_effect=InvalidCreditAmountError(10, user_id=sample_user.id))

        result = await MediaFailureService(db_session, ledger=ledger).handle_failure(
            MediaKind.IMAGE_GENERATION, "gen_6", "Prediction failed"
        )

        assert result.success is False
        assert result.refunded is False
        generation = await db_session.get(Generation, "gen_6", populate_existing=True)
        assert generation.credits_refunded is False
        assert generation.status == MediaStatus.FAILED
        assert "refundError" in generation.meta
        assert generation.meta["refundPending"] is True

    @pytest.mark.unit
    async def test_ledger_failure_message_does_not_claim_refund(
        self, db_session, sample_user, generation_factory
    ):
        await generation_factory(sample_user.id, id="gen_7", credits_used=10)
        ledger = AsyncMock()
        ledger.add_credits = AsyncMock(side_effect=InvalidCreditAmountError(10, user_id=sample_user.id))

        result = await MediaFailureService(db_session, ledger=ledger).handle_failure(
            MediaKind.IMAGE_GENERATION, "gen_7", "timeout"
        )

        assert result.user_message == REFUND_PENDING_MESSAGE
        generation = await db_session.get(Generation, "gen_7", populate_existing=True)
        assert generation.error_message == REFUND_PENDING_MESSAGE
        assert "créditos foram devolvidos" not in generation.error_message
        assert generation.failure_reason == FailureReason.TIMEOUT_ERROR

    @pytest.mark.unit
    async def test_concurrent_claim_skips_ledger(self, db_session, sample_user, generation_factory):
        """תהליך אחר מסמן credits_refunded בין הטעינה לעדכון המותנה"""
        await generation_factory(sample_user.id, id="gen_race", credits_used=10)
        ledger = AsyncMock()
        original_execute = AsyncSession.execute
        rival_claims: list[str] = []

        async def execute_with_rival_claim(session, statement, *args, **kwargs):
            if isinstance(statement, Update) and not rival_claims:
                rival_claims.append("gen_race")
                await original_execute(
                    session,
                    update(Generation)
                    .where(Generation.id == "gen_race")
                    .values(credits_refunded=True)
                )
            return await original_execute(session, statement, *args, **kwargs)

        with patch.object(AsyncSession, "execute", execute_with_rival_claim):
            result = await MediaFailureService(db_session, ledger=ledger).handle_failure(
                MediaKind.IMAGE_GENERATION, "gen_race", "timeout"
            )

        assert rival_claims == ["gen_race"]
        assert result.success is True
        assert result.refunded is False
        ledger.add_credits.assert_not_awaited()
        assert await _refunds(db_session, "gen_race") == []

        generation = await db_session.get(Generation, "gen_race", populate_existing=True)
        assert generation.credits_refunded is True
        assert generation.status == MediaStatus.FAILED
        assert generation.failure_reason == FailureReason.TIMEOUT_ERROR
