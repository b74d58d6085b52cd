"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
Webhook-facing errors render the wire format the platforms expect
({"status": "error", "message": ...}) and never leak internal details.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    UNAUTHORIZED = "ERR_1004"

    # Configuration errors (2xxx)
    UNSUPPORTED_PLATFORM = "ERR_2001"
    WEBHOOK_NOT_CONFIGURED = "ERR_2002"
    CHALLENGE_FAILED = "ERR_2003"

    # Security violations (3xxx)
    PAYLOAD_TOO_LARGE = "ERR_3001"
    UNSUPPORTED_CONTENT_TYPE = "ERR_3002"
    IP_NOT_ALLOWED = "ERR_3003"
    IP_BLOCKED = "ERR_3004"
    RATE_LIMIT_EXCEEDED = "ERR_3005"

    # Authentication errors (4xxx)
    INVALID_SIGNATURE = "ERR_4001"
    REPLAY_DETECTED = "ERR_4002"

    # External service errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"

    # State machine / processing errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    EVENT_NOT_FOUND = "ERR_6002"
    EVENT_PROCESSING_FAILED = "ERR_6003"


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


# ──────────────────────────────────────────────
#  Webhook errors
# ──────────────────────────────────────────────


class WebhookException(AppException):
    """
    Base exception for errors answered to a webhook sender.

    `message` is the public reason sent back to the platform. Anything that
    helps operators goes into `details`, which is logged but never rendered.
    `violation_type` marks errors that count toward IP auto-blocking.
    """

    violation_type: str | None = None

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.headers = headers or {}

    def to_dict(self) -> dict[str, Any]:
        return {"status": "error", "message": self.message}


class UnsupportedPlatformError(WebhookException):
    """Raised when the platform tag is not one of the supported platforms"""

    def __init__(self, platform: str | None):
        super().__init__(
            message="Unsupported platform",
            error_code=ErrorCode.UNSUPPORTED_PLATFORM,
            status_code=404,
            details={"platform": platform}
        )


class WebhookNotConfiguredError(WebhookException):
    """Raised when no active webhook configuration matches the request"""

    def __init__(self, platform: str, config_id: int | None = None):
        super().__init__(
            message="Webhook not configured",
            error_code=ErrorCode.WEBHOOK_NOT_CONFIGURED,
            status_code=404,
            details={"platform": platform, "config_id": config_id}
        )


class ChallengeVerificationError(WebhookException):
    """Raised when a handshake request carries a wrong or missing token"""

    def __init__(self, platform: str, reason: str = "Verification failed"):
        super().__init__(
            message=reason,
            error_code=ErrorCode.CHALLENGE_FAILED,
            status_code=403,
            details={"platform": platform}
        )


class SecurityViolationError(WebhookException):
    """Base for gate rejections. Every one of them is booked as a violation."""

    violation_type = "suspicious_activity"


class PayloadTooLargeError(SecurityViolationError):
    """Raised when the body exceeds WEBHOOK_MAX_PAYLOAD_BYTES"""

    violation_type = "validation_error"

    def __init__(self, size: int, max_size: int):
        super().__init__(
            message="Payload too large",
            error_code=ErrorCode.PAYLOAD_TOO_LARGE,
            status_code=422,
            details={"size": size, "max_size": max_size}
        )


class UnsupportedContentTypeError(SecurityViolationError):
    """Raised when the content type is neither JSON nor form-encoded"""

    violation_type = "validation_error"

    def __init__(self, content_type: str | None):
        super().__init__(
            message="Unsupported content type",
            error_code=ErrorCode.UNSUPPORTED_CONTENT_TYPE,
            status_code=422,
            details={"content_type": content_type}
        )


class IpNotAllowedError(SecurityViolationError):
    """Raised in strict mode when the source IP is outside the platform ranges"""

    violation_type = "ip_violation"

    def __init__(self, ip: str, platform: str):
        super().__init__(
            message="IP address not allowed",
            error_code=ErrorCode.IP_NOT_ALLOWED,
            status_code=403,
            details={"ip": ip, "platform": platform}
        )


class IpBlockedError(SecurityViolationError):
    """Raised when the source IP is on the block list"""

    violation_type = "ip_violation"

    def __init__(self, ip: str):
        super().__init__(
            message="IP address blocked",
            error_code=ErrorCode.IP_BLOCKED,
            status_code=403,
            details={"ip": ip}
        )


class RateLimitExceededError(SecurityViolationError):
    """Raised when a rate limit window is exhausted"""

    violation_type = "rate_limit_violation"

    def __init__(
        self,
        violations: list[str],
        limit: int,
        retry_after: int,
        reset_at: int,
    ):
        super().__init__(
            message="Rate limit exceeded",
            error_code=ErrorCode.RATE_LIMIT_EXCEEDED,
            status_code=429,
            details={"violations": violations, "retry_after": retry_after},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(reset_at),
            },
        )
        self.violations = violations
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["violations"] = self.violations
        body["retry_after"] = self.retry_after
        return body


class InvalidSignatureError(WebhookException):
    """Raised when the body signature is missing, malformed or wrong"""

    violation_type = "signature_failure"

    def __init__(self, platform: str, config_id: int | None = None):
        super().__init__(
            message="Invalid signature",
            error_code=ErrorCode.INVALID_SIGNATURE,
            status_code=401,
            details={"platform": platform, "config_id": config_id}
        )


class ReplayDetectedError(WebhookException):
    """Raised when a signature was already accepted inside the replay window"""

    violation_type = "signature_failure"

    def __init__(self, platform: str):
        super().__init__(
            message="Replay attack detected",
            error_code=ErrorCode.REPLAY_DETECTED,
            status_code=401,
            details={"platform": platform}
        )


class WebhookValidationError(WebhookException):
    """Raised when the extracted envelope is missing required fields"""

    violation_type = "validation_error"

    def __init__(self, errors: dict[str, str]):
        super().__init__(
            message="Request validation failed",
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=422,
            details={"errors": errors}
        )
        self.errors = errors

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["errors"] = self.errors
        return body


class EventProcessingError(AppException):
    """Raised by the async processor. Marks the event failed and triggers a retry."""

    def __init__(self, event_id: int, reason: str, retry_count: int = 0):
        super().__init__(
            message=f"Processing webhook event {event_id} failed: {reason}",
            error_code=ErrorCode.EVENT_PROCESSING_FAILED,
            status_code=500,
            details={"event_id": event_id, "retry_count": retry_count}
        )
        self.event_id = event_id
        self.retry_count = retry_count


# ──────────────────────────────────────────────
#  External services
# ──────────────────────────────────────────────


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


class AlertDeliveryError(ExternalServiceException):
    """Raised when the alert endpoint answers with a non-2xx status"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="security_alerts",
            message=f"Alert delivery error: {message}",
            details=details
        )

    @classmethod
    def from_response(
        cls,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "AlertDeliveryError":
        """Build the error from an httpx response, truncating the body for the log"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"alert endpoint returned status {status_code}",
            details={
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


class InvalidStateTransitionError(AppException):
    """Raised when a state transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, event_id: int | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=409,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "event_id": event_id
            }
        )
