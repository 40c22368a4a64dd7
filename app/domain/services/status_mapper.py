"""
Status Mapper - תרגום סטטוסים של ספקים לסטטוסים פנימיים.

כל פונקציית מיפוי טוטאלית: סטטוס לא מוכר לא זורק חריגה ומתורגם
ל"עדיין בעיבוד", לעולם לא למצב סופי.
"""
from app.db.models.ai_model import ModelStatus
from app.db.models.media_record import MediaStatus
from app.db.models.user import SubscriptionStatus

# Replicate (generation / upscale / edit / video)
_REPLICATE_STATUS_MAP: dict[str, MediaStatus] = {
    "starting": MediaStatus.PROCESSING,
    "processing": MediaStatus.PROCESSING,
    "succeeded": MediaStatus.COMPLETED,
    "failed": MediaStatus.FAILED,
    "canceled": MediaStatus.CANCELLED,
    "cancelled": MediaStatus.CANCELLED,
}

# Replicate training — ביטול מחזיר ל-DRAFT כדי לאפשר שליחה מחדש
_REPLICATE_TRAINING_STATUS_MAP: dict[str, ModelStatus] = {
    "starting": ModelStatus.TRAINING,
    "processing": ModelStatus.TRAINING,
    "succeeded": ModelStatus.READY,
    "failed": ModelStatus.ERROR,
    "canceled": ModelStatus.DRAFT,
    "cancelled": ModelStatus.DRAFT,
}

_COMPLETED_PROVIDER_STATUSES = frozenset({"succeeded", "trained", "generated"})
_PROCESSING_PROVIDER_STATUSES = frozenset({
    "starting", "processing", "queued", "training", "generating",
})

_TERMINAL_MEDIA_STATUSES = frozenset({
    MediaStatus.COMPLETED, MediaStatus.FAILED, MediaStatus.CANCELLED,
})
_TERMINAL_MODEL_STATUSES = frozenset({
    ModelStatus.READY, ModelStatus.ERROR, ModelStatus.FAILED,
})

# אירועי Asaas שמשנים סטטוס מנוי. PAYMENT_CONFIRMED/RECEIVED מטופלים כתשלום מוצלח.
PAYMENT_SUCCESS_EVENTS = frozenset({"PAYMENT_CONFIRMED", "PAYMENT_RECEIVED"})

_ASAAS_EVENT_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "PAYMENT_CONFIRMED": SubscriptionStatus.ACTIVE,
    "PAYMENT_RECEIVED": SubscriptionStatus.ACTIVE,
    "PAYMENT_OVERDUE": SubscriptionStatus.OVERDUE,
    "PAYMENT_DELETED": SubscriptionStatus.CANCELLED,
    "PAYMENT_REFUNDED": SubscriptionStatus.CANCELLED,
    "PAYMENT_UNAUTHORIZED": SubscriptionStatus.PAYMENT_FAILED,
    "PAYMENT_CHARGEBACK_REQUESTED": SubscriptionStatus.CHARGEBACK,
    "SUBSCRIPTION_EXPIRED": SubscriptionStatus.EXPIRED,
    "SUBSCRIPTION_CANCELLED": SubscriptionStatus.CANCELLED,
    "SUBSCRIPTION_REACTIVATED": SubscriptionStatus.ACTIVE,
}


def _normalize(status: str | None) -> str:
    return (status or "").strip().lower()


def map_replicate_status(status: str | None) -> MediaStatus:
    return _REPLICATE_STATUS_MAP.get(_normalize(status), MediaStatus.PROCESSING)


def map_replicate_training_status(status: str | None) -> ModelStatus:
    return _REPLICATE_TRAINING_STATUS_MAP.get(_normalize(status), ModelStatus.TRAINING)


def map_video_status(status: str | None) -> MediaStatus:
    """Video jobs use the same vocabulary as Replicate predictions"""
    return map_replicate_status(status)


def map_astria_tune_status(status: str | None) -> ModelStatus:
    normalized = _normalize(status)
    if normalized == "trained":
        return ModelStatus.READY
    if normalized in ("failed", "cancelled", "canceled"):
        return ModelStatus.FAILED
    return ModelStatus.TRAINING


def map_astria_prompt_status(status: str | None) -> MediaStatus:
    normalized = _normalize(status)
    if normalized == "generated":
        return MediaStatus.COMPLETED
    if normalized in ("failed", "cancelled", "canceled"):
        return MediaStatus.FAILED
    return MediaStatus.PROCESSING


def is_completed(provider_status: str | None) -> bool:
    return _normalize(provider_status) in _COMPLETED_PROVIDER_STATUSES


def is_processing(provider_status: str | None) -> bool:
    return _normalize(provider_status) in _PROCESSING_PROVIDER_STATUSES


def is_terminal(status: MediaStatus | ModelStatus | str | None) -> bool:
    """האם סטטוס פנימי הוא סופי (לא צפוי להשתנות ע"י webhook נוסף)"""
    if status is None:
        return False
    value = status.value if hasattr(status, "value") else str(status)
    return (
        value in {s.value for s in _TERMINAL_MEDIA_STATUSES}
        or value in {s.value for s in _TERMINAL_MODEL_STATUSES}
    )


def should_apply_training_status(current: ModelStatus | None, incoming: ModelStatus) -> bool:
    """
    האם להחיל סטטוס אימון נכנס.

    READY → READY הוא משלוח כפול ולכן no-op. בנוסף, סטטוס ביניים (TRAINING)
    שמגיע אחרי סטטוס סופי לא מוריד את הרשומה אחורה: אין הבטחת סדר בין webhooks.
    """
    if current == ModelStatus.READY and incoming == ModelStatus.READY:
        return False
    if current in _TERMINAL_MODEL_STATUSES and incoming == ModelStatus.TRAINING:
        return False
    return True


def map_asaas_event(event: str | None) -> SubscriptionStatus | None:
    """אירוע Asaas → סטטוס מנוי, או None לאירוע שאינו משנה סטטוס"""
    if not event:
        return None
    return _ASAAS_EVENT_STATUS_MAP.get(event.strip().upper())
