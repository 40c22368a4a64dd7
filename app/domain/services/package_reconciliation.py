"""
Package Reconciliation - גזירת סטטוס UserPackage ממצב ה-generations שלו.

- אין generations אחרי תקופת החסד → FAILED
- יש PENDING / PROCESSING → GENERATING
- כולן נכשלו → FAILED
- לפחות אחת הושלמה וכולן סופיות → COMPLETED

CANCELLED נספר ככישלון. error_message נכתב רק אם עדיין ריק; חבילה שהושלמה
עם כישלונות חלקיים מקבלת את הודעת "concluído com falhas".
"""
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger, log_async_operation
from app.db.database import utcnow
from app.db.models.generation import Generation
from app.db.models.media_record import MediaStatus
from app.db.models.user_package import UserPackage, PackageStatus

logger = get_logger(__name__)

NO_GENERATIONS_MESSAGE = "Nenhuma geração foi criada. O pacote pode ter falhado ao iniciar."
ALL_FAILED_MESSAGE = "Todas as gerações falharam."
PARTIAL_FAILURE_MESSAGE = "Pacote concluído com falhas."


@dataclass
class PackageStats:
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
        }


@dataclass
class PackageReconcileResult:
    success: bool
    package_id: str
    previous_status: PackageStatus | None = None
    new_status: PackageStatus | None = None
    updated: bool = False
    stats: PackageStats = field(default_factory=PackageStats)
    error: str | None = None


class PackageReconciliationService:
    """Rolls generation outcomes up into their UserPackage status"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _count_generations(self, package_id: str) -> PackageStats:
        rows = (await self.db.execute(
            select(Generation.status, func.count(Generation.id))
            .where(Generation.package_id == package_id)
            .group_by(Generation.status)
        )).all()

        stats = PackageStats()
        for status, count in rows:
            stats.total += count
            if status == MediaStatus.PENDING:
                stats.pending += count
            elif status == MediaStatus.PROCESSING:
                stats.processing += count
            elif status == MediaStatus.COMPLETED:
                stats.completed += count
            else:
                stats.failed += count
        return stats

    async def reconcile(self, package_id: str) -> PackageReconcileResult:
        """מחשב מחדש את סטטוס החבילה ומבצע commit אם השתנה משהו"""
        package = await self.db.get(UserPackage, package_id, populate_existing=True)
        if package is None:
            logger.warning("User package not found", extra_data={"package_id": package_id})
            return PackageReconcileResult(success=False, package_id=package_id, error="UserPackage not found")

        previous = package.status
        stats = await self._count_generations(package_id)
        new_status = previous
        error_message = None
        now = utcnow()

        if stats.total == 0:
            grace = timedelta(minutes=settings.PACKAGE_GRACE_PERIOD_MINUTES)
            if package.created_at and now - package.created_at > grace:
                new_status = PackageStatus.FAILED
                error_message = NO_GENERATIONS_MESSAGE
            else:
                new_status = PackageStatus.ACTIVE
        elif stats.pending or stats.processing:
            new_status = PackageStatus.GENERATING
        elif stats.failed == stats.total:
            new_status = PackageStatus.FAILED
            error_message = ALL_FAILED_MESSAGE
        elif stats.completed > 0:
            new_status = PackageStatus.COMPLETED
            if stats.failed:
                error_message = PARTIAL_FAILURE_MESSAGE

        changed = (
            new_status != previous
            or package.generated_images != stats.completed
            or package.failed_images != stats.failed
        )
        if not changed:
            return PackageReconcileResult(
                success=True,
                package_id=package_id,
                previous_status=previous,
                new_status=new_status,
                stats=stats,
            )

        package.status = new_status
        package.generated_images = stats.completed
        package.failed_images = stats.failed
        if new_status == PackageStatus.COMPLETED and package.completed_at is None:
            package.completed_at = now
        if error_message and not package.error_message:
            package.error_message = error_message
        await self.db.commit()

        logger.info(
            "Package reconciled",
            extra_data={
                "package_id": package_id,
                "from": previous.value if previous else None,
                "to": new_status.value,
                **stats.to_dict(),
            },
        )
        return PackageReconcileResult(
            success=True,
            package_id=package_id,
            previous_status=previous,
            new_status=new_status,
            updated=True,
            stats=stats,
        )

    @log_async_operation("reconcile_stuck_packages")
    async def reconcile_stuck(self) -> dict:
        """sweep על כל החבילות ב-ACTIVE / GENERATING"""
        package_ids = (await self.db.execute(
            select(UserPackage.id)
            .where(UserPackage.status.in_([PackageStatus.ACTIVE, PackageStatus.GENERATING]))
            .order_by(UserPackage.created_at)
        )).scalars().all()

        results = []
        for package_id in package_ids:
            try:
                result = await self.reconcile(package_id)
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(
                    "Package reconciliation failed",
                    extra_data={"package_id": package_id, "error": str(e)},
                    exc_info=True,
                )
                result = PackageReconcileResult(success=False, package_id=package_id, error=str(e))
            results.append(result)

        reconciled = sum(1 for r in results if r.updated)
        return {
            "total": len(package_ids),
            "reconciled": reconciled,
            "results": [
                {
                    "userPackageId": r.package_id,
                    "previousStatus": r.previous_status.value if r.previous_status else None,
                    "newStatus": r.new_status.value if r.new_status else None,
                    "updated": r.updated,
                }
                for r in results
            ],
        }
