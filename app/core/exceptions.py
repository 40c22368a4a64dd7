"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # User errors (3xxx)
    USER_NOT_FOUND = "ERR_3001"

    # Credit ledger errors (4xxx)
    INSUFFICIENT_CREDIT = "ERR_4002"
    INVALID_AMOUNT = "ERR_4003"

    # External service errors (5xxx)
    PAYMENT_GATEWAY_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"

    # Webhook errors (6xxx)
    WEBHOOK_EVENT_NOT_FOUND = "ERR_6002"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class UserNotFoundError(NotFoundException):
    """Raised when user is not found (by id or by payment-gateway customer id)"""

    def __init__(self, identifier: str):
        super().__init__(
            resource="User",
            identifier=identifier,
            error_code=ErrorCode.USER_NOT_FOUND
        )


class WebhookEventNotFoundError(NotFoundException):
    """Raised when a stored webhook event id does not exist"""

    def __init__(self, event_id: str):
        super().__init__(
            resource="WebhookEvent",
            identifier=event_id,
            error_code=ErrorCode.WEBHOOK_EVENT_NOT_FOUND
        )


class CreditLedgerException(AppException):
    """Base exception for credit-ledger errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        user_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if user_id:
            self.details["user_id"] = user_id


class InsufficientCreditError(CreditLedgerException):
    """Raised when a user doesn't have enough credits for a spend"""

    def __init__(self, user_id: str, available: int, required: int):
        super().__init__(
            message=f"Insufficient credits for user {user_id}",
            error_code=ErrorCode.INSUFFICIENT_CREDIT,
            user_id=user_id,
            details={
                "available_credits": available,
                "required_credits": required,
            }
        )


class InvalidCreditAmountError(CreditLedgerException):
    """Raised when a ledger operation receives a non-positive amount"""

    def __init__(self, amount: Any, user_id: str | None = None):
        super().__init__(
            message=f"Credit amount must be a positive integer, got {amount!r}",
            error_code=ErrorCode.INVALID_AMOUNT,
            user_id=user_id,
            details={"amount": str(amount)}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class PaymentGatewayError(ExternalServiceException):
    """Raised when the Asaas API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="asaas",
            message=f"Asaas API error: {message}",
            error_code=ErrorCode.PAYMENT_GATEWAY_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "PaymentGatewayError":
        """
        יצירת PaymentGatewayError מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (לדוגמה: get_subscription, update_subscription)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text (מניעת לוגים גדולים)
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )
