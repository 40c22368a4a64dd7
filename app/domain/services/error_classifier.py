"""
Error Classifier - מיפוי הודעת שגיאה גולמית מספק לסיבת כישלון סגורה.

התאמת substring ללא תלות ברישיות מול טבלת חוקים מסודרת.
מילות safety/moderation נבדקות ראשונות וגוברות על כל קטגוריה אחרת:
שגיאת safety לעולם לא תסווג כשגיאה חולפת.
"""
from app.core.logging import get_logger
from app.db.models.media_record import FailureReason

logger = get_logger(__name__)

SAFETY_KEYWORDS: tuple[str, ...] = (
    "nsfw", "safety", "moderation", "content policy", "inappropriate", "violation",
    "blocked", "restricted", "prohibited", "unsafe", "sensitive content",
    "policy violation", "content filter", "flagged", "censored",
    "safety system", "content moderation", "policy filter", "adult content",
    "explicit content", "inappropriate content", "violates policy", "content blocked",
    "filter triggered", "moderation filter", "safety filter", "content safety",
    "safety check", "policy check", "content violation", "terms of service",
    "community guidelines", "safety violation", "banned content", "disallowed content",
    # פורטוגזית
    "conteúdo sensível", "conteúdo inapropriado", "conteúdo bloqueado",
    "bloqueado por segurança", "violação de política", "política de segurança",
    "filtro de segurança", "moderação de conteúdo",
)

# הסדר קובע: ההתאמה הראשונה מנצחת
ERROR_PATTERNS: tuple[tuple[FailureReason, tuple[str, ...]], ...] = (
    (FailureReason.QUOTA_ERROR, ("quota", "limit exceeded", "rate limit", "too many requests")),
    (FailureReason.TIMEOUT_ERROR, ("timeout", "timed out", "deadline exceeded")),
    (FailureReason.NETWORK_ERROR, (
        "network", "connection", "unreachable", "dns",
        "econnreset", "econnrefused", "socket hang up",
    )),
    (FailureReason.INVALID_INPUT, ("invalid input", "invalid parameter", "validation error", "bad request")),
    (FailureReason.PROVIDER_ERROR, ("model error", "prediction failed", "processing failed")),
    (FailureReason.STORAGE_ERROR, ("storage", "upload failed", "s3", "bucket")),
    (FailureReason.INTERNAL_ERROR, ("internal error", "internal server error", "database", "unhandled exception")),
)


def classify_error(message: str | None) -> FailureReason:
    """סיווג הודעת שגיאה. פונקציה טהורה, ללא side effects מלבד לוג debug."""
    if not message:
        return FailureReason.UNKNOWN_ERROR

    lowered = message.lower()

    for keyword in SAFETY_KEYWORDS:
        if keyword in lowered:
            logger.debug(
                "Error classified as safety block",
                extra_data={"keyword": keyword}
            )
            return FailureReason.SAFETY_BLOCKED

    for reason, keywords in ERROR_PATTERNS:
        for keyword in keywords:
            if keyword in lowered:
                logger.debug(
                    f"Error classified as {reason.value}",
                    extra_data={"keyword": keyword}
                )
                return reason

    logger.debug(
        "Error could not be classified",
        extra_data={"error_preview": message[:100]}
    )
    return FailureReason.UNKNOWN_ERROR
