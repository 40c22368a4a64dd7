"""
Celery Tasks - sweeps תקופתיים לשחזור מצב שלא הושלם.

- retry_failed_webhooks: אירועי webhook FAILED / PENDING תקועים חוזרים ל-processor.
- reconcile_stuck_packages: חבילות ACTIVE / GENERATING מחושבות מחדש מה-generations.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.services.package_reconciliation import PackageReconciliationService
from app.domain.services.payment_gateway_client import get_payment_gateway
from app.domain.services.webhook_dispatcher import retry_failed_events
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop — מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.retry_failed_webhooks")
def retry_failed_webhooks():
    """עיבוד חוזר של אירועי webhook שנכשלו או נתקעו ב-PENDING"""

    async def _retry():
        async with get_task_session() as db:
            return await retry_failed_events(db, gateway=get_payment_gateway())

    return run_async(_retry())


@celery_app.task(name="app.workers.tasks.reconcile_stuck_packages")
def reconcile_stuck_packages():
    """חישוב מחדש של סטטוס חבילות ACTIVE / GENERATING"""

    async def _reconcile():
        async with get_task_session() as db:
            result = await PackageReconciliationService(db).reconcile_stuck()
            logger.info(
                "Package sweep finished",
                extra_data={"total": result["total"], "reconciled": result["reconciled"]},
            )
            return {"total": result["total"], "reconciled": result["reconciled"]}

    return run_async(_reconcile())
