"""
בדיקות ל-PackageReconciliationService
"""
import pytest

from app.db.models.media_record import MediaStatus
from app.db.models.user_package import PackageStatus, UserPackage
from app.domain.services.package_reconciliation import (
    ALL_FAILED_MESSAGE,
    NO_GENERATIONS_MESSAGE,
    PARTIAL_FAILURE_MESSAGE,
    PackageReconciliationService,
)


async def _with_generations(generation_factory, user_id, package_id, statuses):
    for status in statuses:
        await generation_factory(user_id, status=status, package_id=package_id)


class TestReconcile:

    @pytest.mark.unit
    async def test_in_flight_generations_keep_generating(
        self, db_session, sample_user, package_factory, generation_factory
    ):
        package = await package_factory(sample_user.id, status=PackageStatus.ACTIVE)
        await _with_generations(
            generation_factory, sample_user.id, package.id,
            [MediaStatus.COMPLETED, MediaStatus.PROCESSING, MediaStatus.PENDING],
        )

        result = await PackageReconciliationService(db_session).reconcile(package.id)

        assert result.new_status == PackageStatus.GENERATING
        assert result.stats.to_dict() == {
            "total": 3, "pending": 1, "processing": 1, "completed": 1, "failed": 0,
        }

    @pytest.mark.unit
    async def test_partial_failure_completes_with_message(
        self, db_session, sample_user, package_factory, generation_factory
    ):
        package = await package_factory(sample_user.id)
        await _with_generations(
            generation_factory, sample_user.id, package.id,
            [MediaStatus.COMPLETED, MediaStatus.COMPLETED, MediaStatus.FAILED, MediaStatus.CANCELLED],
        )

        result = await PackageReconciliationService(db_session).reconcile(package.id)

        assert result.updated is True
        refreshed = await db_session.get(UserPackage, package.id, populate_existing=True)
        assert refreshed.status == PackageStatus.COMPLETED
        assert refreshed.generated_images == 2
        assert refreshed.failed_images == 2
        assert refreshed.completed_at is not None
        assert refreshed.error_message == PARTIAL_FAILURE_MESSAGE

    @pytest.mark.unit
    async def test_all_failed(self, db_session, sample_user, package_factory, generation_factory):
        package = await package_factory(sample_user.id)
        await _with_generations(
            generation_factory, sample_user.id, package.id, [MediaStatus.FAILED, MediaStatus.CANCELLED]
        )

        await PackageReconciliationService(db_session).reconcile(package.id)

        refreshed = await db_session.get(UserPackage, package.id, populate_existing=True)
        assert refreshed.status == PackageStatus.FAILED
        assert refreshed.error_message == ALL_FAILED_MESSAGE

    @pytest.mark.unit
    async def test_existing_error_message_is_kept(
        self, db_session, sample_user, package_factory, generation_factory
    ):
        package = await package_factory(sample_user.id)
        package.error_message = "erro anterior"
        await db_session.commit()
        await _with_generations(generation_factory, sample_user.id, package.id, [MediaStatus.FAILED])

        await PackageReconciliationService(db_session).reconcile(package.id)

        refreshed = await db_session.get(UserPackage, package.id, populate_existing=True)
        assert refreshed.error_message == "erro anterior"

    @pytest.mark.unit
    async def test_empty_package_within_grace_period(self, db_session, sample_user, package_factory):
        package = await package_factory(sample_user.id, status=PackageStatus.GENERATING)

        result = await PackageReconciliationService(db_session).reconcile(package.id)

        assert result.new_status == PackageStatus.ACTIVE
        assert result.previous_status == PackageStatus.GENERATING

    @pytest.mark.unit
    async def test_empty_package_after_grace_period_fails(self, db_session, sample_user, package_factory):
        package = await package_factory(sample_user.id, created_minutes_ago=30)

        await PackageReconciliationService(db_session).reconcile(package.id)

        refreshed = await db_session.get(UserPackage, package.id, populate_existing=True)
        assert refreshed.status == PackageStatus.FAILED
        assert refreshed.error_message == NO_GENERATIONS_MESSAGE

    @pytest.mark.unit
    async def test_unchanged_package_not_updated(
        self, db_session, sample_user, package_factory, generation_factory
    ):
        package = await package_factory(sample_user.id)
        await _with_generations(generation_factory, sample_user.id, package.id, [MediaStatus.PROCESSING])
        service = PackageReconciliationService(db_session)

        await service.reconcile(package.id)
        second = await service.reconcile(package.id)

        assert second.success is True
        assert second.updated is False

    @pytest.mark.unit
    async def test_missing_package(self, db_session):
        result = await PackageReconciliationService(db_session).reconcile("ghost")
        assert result.success is False
        assert result.error == "UserPackage not found"


class TestReconcileStuck:

    @pytest.mark.unit
    async def test_sweeps_only_open_packages(
        self, db_session, sample_user, package_factory, generation_factory
    ):
        open_package = await package_factory(sample_user.id)
        await _with_generations(generation_factory, sample_user.id, open_package.id, [MediaStatus.COMPLETED])
        await package_factory(sample_user.id, status=PackageStatus.COMPLETED)

        summary = await PackageReconciliationService(db_session).reconcile_stuck()

        assert summary["total"] == 1
        assert summary["reconciled"] == 1
        assert summary["results"][0] == {
            "userPackageId": open_package.id,
            "previousStatus": "GENERATING",
            "newStatus": "COMPLETED",
            "updated": True,
        }
