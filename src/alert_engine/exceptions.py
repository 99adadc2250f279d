"""Exception hierarchy for the alert engine.

Every error raised by the engine derives from AlertEngineError and carries
an ErrorCode, so callers (and the HTTP layer) can handle the whole family
with one handler.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for engine failures."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    SCHEDULING_FAILED = "SCHEDULING_FAILED"
    SYNC_CONFLICT = "SYNC_CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_STATUS_MAP: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.DELIVERY_FAILED: 502,
    ErrorCode.SCHEDULING_FAILED: 500,
    ErrorCode.SYNC_CONFLICT: 409,
    ErrorCode.INTERNAL_ERROR: 500,
}


class AlertEngineError(Exception):
    """Base exception for all alert engine errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = ERROR_STATUS_MAP.get(error_code, 500)
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AlertEngineError):
    """Raised when input fails validation. Never retried."""

    def __init__(
        self,
        message: str = "Validation failed",
        details: Optional[List[Dict[str, Any]]] = None,
        field: Optional[str] = None,
    ):
        if field and not details:
            details = [{"field": field, "issue": message}]
        super().__init__(message, ErrorCode.VALIDATION_ERROR, details)
        self.field = field


class NotFoundError(AlertEngineError):
    """Raised when a requested alert, group or record does not exist."""

    def __init__(
        self,
        message: str = "Resource not found",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        details = []
        if resource_type:
            details.append({"resource_type": resource_type, "resource_id": resource_id})
        super().__init__(message, ErrorCode.RESOURCE_NOT_FOUND, details)
        self.resource_type = resource_type
        self.resource_id = resource_id


class DeliveryError(AlertEngineError):
    """Raised by channel adapters when a send fails."""

    def __init__(
        self,
        message: str = "Delivery failed",
        channel: Optional[str] = None,
        retryable: bool = True,
    ):
        details = [{"channel": channel}] if channel else None
        super().__init__(message, ErrorCode.DELIVERY_FAILED, details)
        self.channel = channel
        self.retryable = retryable


class SchedulingError(AlertEngineError):
    """Raised when a timer cannot be armed."""

    def __init__(self, message: str = "Scheduling failed"):
        super().__init__(message, ErrorCode.SCHEDULING_FAILED)


class ConflictError(AlertEngineError):
    """Raised by a remote store when a pushed record conflicts with its copy."""

    def __init__(
        self,
        message: str = "Sync conflict",
        key: Optional[str] = None,
        server_data: Optional[Dict[str, Any]] = None,
    ):
        details = [{"key": key}] if key else None
        super().__init__(message, ErrorCode.SYNC_CONFLICT, details)
        self.key = key
        self.server_data = server_data or {}
