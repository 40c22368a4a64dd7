"""
Domain Services
"""
from app.domain.services.credit_ledger_service import CreditLedgerService
from app.domain.services.job_locator import JobLocator
from app.domain.services.media_failure_service import MediaFailureService
from app.domain.services.package_reconciliation import PackageReconciliationService
from app.domain.services.subscription_reconciler import SubscriptionReconciler
from app.domain.services.webhook_dedup_service import WebhookDedupService

__all__ = [
    "CreditLedgerService",
    "JobLocator",
    "MediaFailureService",
    "PackageReconciliationService",
    "SubscriptionReconciler",
    "WebhookDedupService",
]
