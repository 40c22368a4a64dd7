"""
סכמות payload של webhooks נכנסים - ולידציה בגבול המערכת.

כל ספק מקבל מודל משלו; Astria מגיע כ-union מובחן לפי השדה object
(tune / prompt). שדות לא מוכרים נשמרים (extra="allow") כדי שה-payload
הגולמי יישמר במלואו ב-WebhookEvent.
"""
from decimal import Decimal
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class _ProviderModel(BaseModel):
    # Astria שולח מזהים מספריים
    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)


# ==================== Asaas ====================


class AsaasPayment(_ProviderModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    value: Optional[Decimal] = None
    status: Optional[str] = None
    due_date: Optional[str] = Field(default=None, alias="dueDate")
    external_reference: Optional[str] = Field(default=None, alias="externalReference")
    checkout_session: Optional[str] = Field(default=None, alias="checkoutSession")


class AsaasSubscription(_ProviderModel):
    id: str
    customer: Optional[str] = None
    value: Optional[Decimal] = None
    cycle: Optional[str] = None
    status: Optional[str] = None
    end_date: Optional[str] = Field(default=None, alias="endDate")
    next_due_date: Optional[str] = Field(default=None, alias="nextDueDate")


class AsaasWebhookPayload(_ProviderModel):
    event: str
    payment: Optional[AsaasPayment] = None
    subscription: Optional[AsaasSubscription] = None
    checkout: Optional[dict[str, Any]] = None

    @field_validator("event")
    @classmethod
    def normalize_event(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("event must not be empty")
        return v


# ==================== Replicate (predictions / trainings / video) ====================


class ReplicatePrediction(_ProviderModel):
    id: str
    status: str
    output: Any = None
    error: Any = None
    logs: Optional[str] = None
    metrics: Optional[dict[str, Any]] = None
    model: Optional[str] = None
    version: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def error_text(self) -> Optional[str]:
        if self.error is None:
            return None
        if isinstance(self.error, str):
            return self.error
        if isinstance(self.error, dict):
            return str(self.error.get("detail") or self.error.get("message") or self.error)
        return str(self.error)

    def output_urls(self) -> List[str]:
        """output יכול להיות מחרוזת, רשימה, או אובייקט עם url / weights"""
        return extract_urls(self.output)

    @property
    def predict_time_seconds(self) -> Optional[float]:
        if not self.metrics:
            return None
        value = self.metrics.get("predict_time") or self.metrics.get("total_time")
        return float(value) if value is not None else None


# ==================== Astria ====================


class AstriaTunePayload(_ProviderModel):
    object: Literal["tune"]
    id: str
    status: Optional[str] = None
    trained_at: Optional[str] = None
    error_message: Optional[str] = None
    title: Optional[str] = None

    @property
    def effective_status(self) -> Optional[str]:
        """Astria לא תמיד שולח status; trained_at מסמן אימון שהסתיים"""
        return self.status or ("trained" if self.trained_at else None)


class AstriaPromptPayload(_ProviderModel):
    object: Literal["prompt"]
    id: str
    status: Optional[str] = None
    images: List[Any] = Field(default_factory=list)
    error_message: Optional[str] = None
    tune_id: Optional[Any] = None

    def image_urls(self) -> List[str]:
        return extract_urls(self.images)

    @property
    def effective_status(self) -> Optional[str]:
        return self.status or ("generated" if self.image_urls() else None)


AstriaWebhookPayload = Union[AstriaTunePayload, AstriaPromptPayload]

astria_payload_adapter: TypeAdapter = TypeAdapter(
    Union[AstriaTunePayload, AstriaPromptPayload]
)


def parse_astria_payload(data: dict[str, Any]) -> AstriaWebhookPayload:
    """Astria לא תמיד שולח object; ברירת מחדל: prompt אם יש images, אחרת tune"""
    if "object" not in data:
        data = {**data, "object": "prompt" if "images" in data else "tune"}
    return astria_payload_adapter.validate_python(data)


def extract_urls(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, dict):
        for key in ("url", "weights", "video", "image"):
            if isinstance(value.get(key), str) and value[key]:
                return [value[key]]
        return []
    if isinstance(value, (list, tuple)):
        urls: List[str] = []
        for item in value:
            urls.extend(extract_urls(item))
        return urls
    return []
