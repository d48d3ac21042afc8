"""
Custom Exception Hierarchy

Intake errors map one-to-one onto HTTP responses; execution and delivery
errors are recovered by the retry machinery and only surface as terminal state.
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

    # Intake errors (2xxx)
    INVALID_TOKEN = "ERR_2001"
    INVALID_SIGNATURE = "ERR_2002"
    PAYLOAD_TOO_LARGE = "ERR_2003"
    INVALID_JSON = "ERR_2004"
    STALE_TIMESTAMP = "ERR_2005"
    PROVIDER_INACTIVE = "ERR_2006"
    UNKNOWN_VERIFIER = "ERR_2007"

    # Execution errors (3xxx)
    EXECUTION_TRANSIENT = "ERR_3001"
    EXECUTION_PERMANENT = "ERR_3002"
    LOCK_NOT_ACQUIRED = "ERR_3003"
    STALE_RECORD = "ERR_3004"

    # External service errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    UNSAFE_TARGET = "ERR_5005"


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


# ==================== Intake ====================


class AuthenticationError(AppException):
    """Bad URL token or bad signature"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNAUTHORIZED,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=401,
            details=details
        )


class ValidationException(AppException):
    """Raised when input validation fails (malformed JSON, stale timestamp)"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class PayloadTooLargeError(ValidationException):
    """Raised when the body exceeds the provider's maximum payload size"""

    def __init__(self, provider: str, size: int, limit: int):
        super().__init__(
            message=f"Payload too large for provider {provider}",
            error_code=ErrorCode.PAYLOAD_TOO_LARGE,
            details={"provider": provider, "size": size, "limit": limit}
        )
        self.status_code = 413


class RateLimitError(AppException):
    """Raised when a provider exceeds its request quota"""

    def __init__(self, provider: str, limit: int, period_seconds: int):
        super().__init__(
            message=f"Rate limit exceeded for provider {provider}",
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={"provider": provider, "limit": limit, "period_seconds": period_seconds}
        )


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


class ProviderInactiveError(AppException):
    """Raised when a webhook arrives for a deactivated provider"""

    def __init__(self, provider: str):
        super().__init__(
            message=f"Provider is inactive: {provider}",
            error_code=ErrorCode.PROVIDER_INACTIVE,
            status_code=403,
            details={"provider": provider}
        )


class ProviderMisconfiguredError(AppException):
    """Raised when a provider names a verifier that is not registered"""

    def __init__(self, provider: str, verifier: str):
        super().__init__(
            message=f"Unknown verifier '{verifier}' for provider '{provider}'",
            error_code=ErrorCode.UNKNOWN_VERIFIER,
            status_code=500,
            details={"provider": provider, "verifier": verifier}
        )


# ==================== Execution ====================


class ExecutionException(AppException):
    """Base exception for handler execution and outbound delivery errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        record_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=500,
            details=details
        )
        if record_id:
            self.details["record_id"] = record_id


class TransientExecutionError(ExecutionException):
    """Raised by a handler for a failure that is eligible for retry"""

    def __init__(self, message: str, record_id: str | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.EXECUTION_TRANSIENT,
            record_id=record_id
        )


class PermanentExecutionError(ExecutionException):
    """Raised by a handler for a failure that must not be retried"""

    def __init__(self, message: str, record_id: str | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.EXECUTION_PERMANENT,
            record_id=record_id
        )


class LockNotAcquiredError(ExecutionException):
    """
    Raised when a record is leased by a live holder, terminal or not yet due.

    ``retry_in`` is set when the record will be runnable later: the seconds
    until the live lease expires or the retry falls due.
    """

    def __init__(self, record_id: str, reason: str, retry_in: float | None = None):
        super().__init__(
            message=f"Lock not acquired for {record_id}: {reason}",
            error_code=ErrorCode.LOCK_NOT_ACQUIRED,
            record_id=record_id,
            details={"reason": reason}
        )
        self.reason = reason
        self.retry_in = retry_in
        self.status_code = 409


class StaleRecordError(ExecutionException):
    """Raised when a compare-and-swap finds a newer version in the store"""

    def __init__(self, record_id: str, expected_version: int):
        super().__init__(
            message=f"Record {record_id} changed since version {expected_version}",
            error_code=ErrorCode.STALE_RECORD,
            record_id=record_id,
            details={"expected_version": expected_version}
        )
        self.status_code = 409


# ==================== External services ====================


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


class UnsafeTargetError(ExternalServiceException):
    """Raised when an outbound URL is not http(s) or resolves to a private network"""

    def __init__(self, url: str, reason: str):
        super().__init__(
            service_name=url,
            message=f"Refusing to deliver to {url}: {reason}",
            error_code=ErrorCode.UNSAFE_TARGET,
            details={"reason": reason}
        )
        self.status_code = 400
