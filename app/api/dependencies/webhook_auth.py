"""
אימות webhooks נכנסים לפי ספק.

- Asaas: כותרת ``asaas-access-token`` מול ASAAS_WEBHOOK_TOKEN.
- Astria: ``Authorization: Bearer``, כותרת ``x-astria-secret`` או ``?secret=``.
- Replicate (כולל video): חתימת HMAC-SHA256 על ``{id}.{timestamp}.{body}``
  עם סוד ``whsec_<base64>``, חלון timestamp של
  WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS נגד replay.

סוד לא מוגדר → הבקשה עוברת עם אזהרה (מצב פיתוח; אזהרה נרשמת גם ב-startup).
כישלון אימות → 401.

שימוש:
    @router.post("/asaas")
    async def asaas_webhook(
        ...,
        _: None = Depends(verify_asaas_token),
    ):
        ...
"""
import base64
import binascii
import hashlib
import hmac
import time

from fastapi import Header, HTTPException, Request, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_SECRET_PREFIX = "whsec_"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def verify_asaas_token(
    asaas_access_token: str | None = Header(None),
) -> None:
    """אימות כותרת ``asaas-access-token``"""
    expected = settings.ASAAS_WEBHOOK_TOKEN
    if not expected:
        logger.warning("ASAAS_WEBHOOK_TOKEN not configured, accepting unauthenticated webhook")
        return

    if not asaas_access_token:
        logger.warning("Asaas webhook without access token header")
        raise _unauthorized("חסר טוקן אימות webhook")

    # השוואה בטוחה מפני timing attacks
    if not hmac.compare_digest(asaas_access_token, expected):
        logger.warning("Asaas webhook with invalid access token")
        raise _unauthorized("טוקן אימות webhook לא תקין")


async def verify_astria_secret(request: Request) -> None:
    """אימות סוד Astria מאחד משלושת המקורות הנתמכים"""
    expected = settings.ASTRIA_WEBHOOK_SECRET
    if not expected:
        logger.warning("ASTRIA_WEBHOOK_SECRET not configured, accepting unauthenticated webhook")
        return

    candidates = []
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        candidates.append(authorization[7:].strip())
    if request.headers.get("x-astria-secret"):
        candidates.append(request.headers["x-astria-secret"])
    if request.query_params.get("secret"):
        candidates.append(request.query_params["secret"])

    if not any(hmac.compare_digest(candidate, expected) for candidate in candidates):
        logger.warning(
            "Astria webhook secret mismatch",
            extra_data={"sources_checked": len(candidates)},
        )
        raise _unauthorized("סוד webhook לא תקין")


def _decode_secret(secret: str) -> bytes:
    raw = secret[len(_SECRET_PREFIX):] if secret.startswith(_SECRET_PREFIX) else secret
    try:
        return base64.b64decode(raw)
    except (binascii.Error, ValueError):
        # סוד שאינו base64 תקין משמש כמו שהוא
        return raw.encode()


def compute_replicate_signature(secret: str, webhook_id: str, timestamp: str, body: bytes) -> str:
    """חתימה בפורמט ``v1,<base64>`` (גם לשימוש בטסטים)"""
    signed = f"{webhook_id}.{timestamp}.".encode() + body
    digest = hmac.new(_decode_secret(secret), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode()


def verify_replicate_signature(
    secret: str,
    webhook_id: str | None,
    timestamp: str | None,
    signature_header: str | None,
    body: bytes,
    now: float | None = None,
) -> str | None:
    """
    Returns:
        None אם החתימה תקינה, אחרת סיבת הכישלון (ללוג).
    """
    if not (webhook_id and timestamp and signature_header):
        return "missing signature headers"

    try:
        sent_at = int(timestamp)
    except ValueError:
        return "invalid timestamp"

    current = now if now is not None else time.time()
    if abs(current - sent_at) > settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS:
        return "timestamp outside tolerance"

    expected = compute_replicate_signature(secret, webhook_id, timestamp, body).split(",", 1)[1]
    # הכותרת יכולה להכיל כמה חתימות מופרדות ברווח (rotation)
    for entry in signature_header.split():
        version, _, value = entry.partition(",")
        if version == "v1" and hmac.compare_digest(value, expected):
            return None
    return "signature mismatch"


async def verify_replicate_request(request: Request) -> None:
    """
    אימות חתימת Replicate. timestamp מחוץ לחלון נדחה תמיד (replay);
    חתימה שגויה מתקבלת רק כש-REPLICATE_WEBHOOK_ALLOW_INVALID_SIGNATURE פעיל.
    """
    secret = settings.REPLICATE_WEBHOOK_SECRET
    if not secret:
        logger.warning("REPLICATE_WEBHOOK_SECRET not configured, accepting unsigned webhook")
        return

    body = await request.body()
    failure = verify_replicate_signature(
        secret,
        request.headers.get("webhook-id"),
        request.headers.get("webhook-timestamp"),
        request.headers.get("webhook-signature"),
        body,
    )
    if failure is None:
        return

    context = {"reason": failure, "webhook_id": request.headers.get("webhook-id"), "path": request.url.path}
    if failure != "timestamp outside tolerance" and settings.REPLICATE_WEBHOOK_ALLOW_INVALID_SIGNATURE:
        logger.error(
            "Invalid webhook signature accepted by lenient mode",
            extra_data=context,
        )
        return

    logger.warning("Webhook signature rejected", extra_data=context)
    raise _unauthorized("חתימת webhook לא תקינה")
