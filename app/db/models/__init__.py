"""
Database Models
"""
from app.db.models.media_record import MediaKind, FailureReason, MediaStatus
from app.db.models.user import User, Plan, BillingCycle, SubscriptionStatus
from app.db.models.user_package import UserPackage, PackageStatus
from app.db.models.generation import Generation, GenerationKind
from app.db.models.video_generation import VideoGeneration
from app.db.models.edit_history import EditHistory
from app.db.models.ai_model import AIModel, ModelStatus
from app.db.models.credit_purchase import CreditPurchase, CreditPurchaseStatus
from app.db.models.credit_transaction import CreditTransaction, CreditTransactionType, CreditSource
from app.db.models.payment import Payment, PaymentType, PaymentStatus
from app.db.models.usage_log import UsageLog
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus, WebhookProvider

__all__ = [
    "MediaKind",
    "FailureReason",
    "MediaStatus",
    "User",
    "Plan",
    "BillingCycle",
    "SubscriptionStatus",
    "UserPackage",
    "PackageStatus",
    "Generation",
    "GenerationKind",
    "VideoGeneration",
    "EditHistory",
    "AIModel",
    "ModelStatus",
    "CreditPurchase",
    "CreditPurchaseStatus",
    "CreditTransaction",
    "CreditTransactionType",
    "CreditSource",
    "Payment",
    "PaymentType",
    "PaymentStatus",
    "UsageLog",
    "WebhookEvent",
    "WebhookEventStatus",
    "WebhookProvider",
]
