"""
Custom Exception Hierarchy

Structured exceptions shared by the engine, the workers and the HTTP layer.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Persistence errors (2xxx)
    PERSISTENCE_ERROR = "ERR_2001"

    # Session errors (3xxx)
    SESSION_NOT_FOUND = "ERR_3001"

    # External provider errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    LLM_PROVIDER_ERROR = "ERR_5010"
    EMBEDDING_PROVIDER_ERROR = "ERR_5011"
    MEDIA_SERVICE_ERROR = "ERR_5012"
    WHATSAPP_ERROR = "ERR_5013"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    STATE_MACHINE_CONFIGURATION = "ERR_6004"


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


class PersistenceError(AppException):
    """A store operation failed; fatal for the current processing attempt"""

    def __init__(self, operation: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"{operation} failed: {message}",
            error_code=ErrorCode.PERSISTENCE_ERROR,
            status_code=500,
            details=details
        )
        self.details["operation"] = operation


# ==================== External providers ====================

class TransientProviderError(AppException):
    """Base exception for model / embedding / media / channel failures"""

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
        self.service_name = service_name
        self.details["service"] = service_name

    @classmethod
    def from_response(
        cls,
        service_name: str,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "TransientProviderError":
        """Build the error from an httpx response without logging huge bodies"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            service_name=service_name,
            message=f"{service_name} {operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class LLMProviderError(TransientProviderError):
    """Raised when a chat completion call fails"""

    def __init__(self, service_name: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name=service_name,
            message=message,
            error_code=ErrorCode.LLM_PROVIDER_ERROR,
            details=details
        )


class EmbeddingProviderError(TransientProviderError):
    """Raised when an embedding call fails"""

    def __init__(self, service_name: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name=service_name,
            message=message,
            error_code=ErrorCode.EMBEDDING_PROVIDER_ERROR,
            details=details
        )


class MediaServiceError(TransientProviderError):
    """Raised when transcription or image analysis fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="media",
            message=message,
            error_code=ErrorCode.MEDIA_SERVICE_ERROR,
            details=details
        )


class WhatsAppError(TransientProviderError):
    """Raised when the WhatsApp Cloud API rejects a send"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="whatsapp",
            message=f"WhatsApp API error: {message}",
            error_code=ErrorCode.WHATSAPP_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "WhatsAppError":
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ServiceTimeoutError(TransientProviderError):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(TransientProviderError):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


# ==================== State machine ====================

class StateMachineException(AppException):
    """Base exception for state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class ConfigurationError(StateMachineException):
    """The session references a state the loaded definition does not know"""

    def __init__(self, state: str, definition: str | None = None):
        super().__init__(
            message=f"State '{state}' is not defined in state machine '{definition or 'default'}'",
            error_code=ErrorCode.STATE_MACHINE_CONFIGURATION,
            details={"state": state, "definition": definition}
        )


class InvalidTransitionError(StateMachineException):
    """Raised when state transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, session_id: int | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "session_id": session_id
            }
        )
