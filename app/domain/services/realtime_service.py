"""
Realtime Service - שידור עדכוני סטטוס למשתמש דרך Redis pub/sub.

fire-and-forget: כישלון בשידור נרשם כאזהרה ולעולם לא מפיל את עיבוד ה-webhook.
הודעה: {"type", "userId", "data", "timestamp"} לערוץ <prefix>:<userId>.
"""
import enum
from typing import Any

from redis.exceptions import RedisError

from app.core.logging import get_logger
from app.core.redis_client import publish_json, user_channel
from app.db.database import utcnow

logger = get_logger(__name__)


class RealtimeEvent(str, enum.Enum):
    MODEL_STATUS_CHANGED = "model_status_changed"
    GENERATION_STATUS_CHANGED = "generation_status_changed"
    TRAINING_PROGRESS = "training_progress"
    GENERATION_PROGRESS = "generation_progress"
    CREDITS_UPDATED = "credits_updated"
    USER_UPDATED = "user_updated"
    NOTIFICATION = "notification"


async def broadcast(user_id: str | None, event: RealtimeEvent, data: dict[str, Any]) -> bool:
    """שידור אירוע למשתמש. מחזיר False אם השידור נכשל."""
    if not user_id:
        return False

    message = {
        "type": event.value,
        "userId": user_id,
        "data": data,
        "timestamp": utcnow().isoformat() + "Z",
    }
    try:
        await publish_json(user_channel(user_id), message)
    except (RedisError, OSError) as e:
        logger.warning(
            "Realtime broadcast failed",
            extra_data={"user_id": user_id, "event": event.value, "error": str(e)},
        )
        return False
    return True


async def broadcast_generation_status(
    user_id: str,
    generation_id: str,
    status: str,
    **extra: Any,
) -> bool:
    return await broadcast(
        user_id,
        RealtimeEvent.GENERATION_STATUS_CHANGED,
        {"generationId": generation_id, "status": status, **extra},
    )


async def broadcast_model_status(
    user_id: str,
    model_id: str,
    status: str,
    **extra: Any,
) -> bool:
    return await broadcast(
        user_id,
        RealtimeEvent.MODEL_STATUS_CHANGED,
        {"modelId": model_id, "status": status, **extra},
    )


async def broadcast_training_progress(
    user_id: str,
    model_id: str,
    progress: int,
    message: str | None = None,
) -> bool:
    return await broadcast(
        user_id,
        RealtimeEvent.TRAINING_PROGRESS,
        {"modelId": model_id, "progress": progress, "message": message},
    )


async def broadcast_generation_progress(user_id: str, generation_id: str, progress: int) -> bool:
    return await broadcast(
        user_id,
        RealtimeEvent.GENERATION_PROGRESS,
        {"generationId": generation_id, "progress": progress},
    )


async def broadcast_credits_updated(user_id: str, available_credits: int, **extra: Any) -> bool:
    return await broadcast(
        user_id,
        RealtimeEvent.CREDITS_UPDATED,
        {"availableCredits": available_credits, **extra},
    )


async def broadcast_user_updated(user_id: str, **fields: Any) -> bool:
    return await broadcast(user_id, RealtimeEvent.USER_UPDATED, fields)


async def broadcast_notification(user_id: str, title: str, message: str, level: str = "info") -> bool:
    return await broadcast(
        user_id,
        RealtimeEvent.NOTIFICATION,
        {"title": title, "message": message, "level": level},
    )
