"""
Custom Exception Hierarchy

Structured exceptions shared by ingestion, dispatch and outgoing delivery.
Verification failures are deliberately absent: a bad signature is a boolean
rejection, not an exception.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Ingestion errors (2xxx)
    UNKNOWN_PROVIDER = "ERR_2001"
    UNKNOWN_VERIFIER = "ERR_2002"
    PAYLOAD_TOO_LARGE = "ERR_2003"

    # Dispatch errors (3xxx)
    ACTION_LOCK_CONFLICT = "ERR_3001"
    ACTION_FAILED = "ERR_3002"
    ACTION_NOT_CONFIGURED = "ERR_3003"

    # Outgoing delivery errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    DELIVERY_TRANSPORT_ERROR = "ERR_5005"
    UNSAFE_TARGET_URL = "ERR_5006"


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


class UnknownVerifierError(AppException):
    """Raised when a provider names a verifier that is not in the verifier map"""

    def __init__(self, verifier_name: str, available: list[str]):
        super().__init__(
            message=f"Unknown verifier '{verifier_name}'",
            error_code=ErrorCode.UNKNOWN_VERIFIER,
            status_code=500,
            details={"verifier": verifier_name, "available": sorted(available)}
        )


class RateLimitExceededError(AppException):
    """Raised by RateLimiter.record when the provider's window is full"""

    def __init__(
        self,
        provider: str,
        current_count: int,
        limit: int,
        period: int,
        retry_after_seconds: float = 0.0
    ):
        super().__init__(
            message=(
                f"Rate limit exceeded for provider {provider}: "
                f"{current_count}/{limit} requests in {period}s"
            ),
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={
                "provider": provider,
                "current_count": current_count,
                "limit": limit,
                "period": period,
                "retry_after_seconds": retry_after_seconds,
            }
        )
        self.provider = provider
        self.retry_after_seconds = retry_after_seconds


class ActionLockConflictError(AppException):
    """
    Raised when a version-checked write on an action execution record
    matched no row: another worker claimed or modified it first.
    """

    def __init__(self, record_id: int, expected_version: int, worker_id: str | None = None):
        super().__init__(
            message=f"Action record {record_id} changed concurrently (expected version {expected_version})",
            error_code=ErrorCode.ACTION_LOCK_CONFLICT,
            status_code=409,
            details={
                "record_id": record_id,
                "expected_version": expected_version,
                "worker_id": worker_id,
            }
        )
        self.record_id = record_id
        self.expected_version = expected_version


class ActionExecutionError(Exception):
    """
    Base class handlers may raise to classify a failure.

    Any other exception raised by a handler is treated as retryable.
    """

    retryable = True


class RetryableActionError(ActionExecutionError):
    """Transient failure; the attempt is retried while attempts remain"""

    retryable = True


class FatalActionError(ActionExecutionError):
    """Permanent failure; the record is failed without further retries"""

    retryable = False


class ExternalServiceException(AppException):
    """Base exception for outgoing delivery errors"""

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


class DeliveryTransportError(ExternalServiceException):
    """Raised when an outgoing webhook could not be sent (no HTTP response)"""

    def __init__(self, target_url: str, message: str, error_code: ErrorCode = ErrorCode.DELIVERY_TRANSPORT_ERROR):
        super().__init__(
            service_name=target_url,
            message=f"Delivery to {target_url} failed: {message}",
            error_code=error_code,
            details={"target_url": target_url}
        )


class UnsafeTargetURLError(DeliveryTransportError):
    """Raised when an outgoing target resolves to a private or non-HTTP address"""

    def __init__(self, target_url: str, reason: str):
        super().__init__(target_url, reason, error_code=ErrorCode.UNSAFE_TARGET_URL)
        self.status_code = 400


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
        self.retry_after_seconds = retry_after_seconds
