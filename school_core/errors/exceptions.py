# =============================================================================
# school_core/errors/exceptions.py
# Custom Exception Hierarchy for SchoolHub
# =============================================================================

from typing import Optional, Dict, Any


class SchoolSyncError(Exception):
    """
    Base exception for all SchoolHub errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "NET_001")
        details: Additional context as a dictionary
        recoverable: Whether the user can recover (retry, edit input, ...)
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "SH_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "retryable": self.retryable,
        }


# =============================================================================
# REMOTE CALL EXCEPTIONS
# =============================================================================

class NetworkError(SchoolSyncError):
    """Transient transport failure; the caller may retry a read manually"""

    retryable = True

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if entity:
            details["entity"] = entity
        if status_code is not None:
            details["status_code"] = status_code

        super().__init__(
            message=message,
            code="NET_001",
            details=details,
            **kwargs,
        )


class AuthorizationError(SchoolSyncError):
    """Raised when the platform's row-level security policy denies a call"""

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if entity:
            details["entity"] = entity
        if operation:
            details["operation"] = operation

        super().__init__(
            message=message,
            code="AUTH_001",
            details=details,
            **kwargs,
        )


class NotFoundError(SchoolSyncError):
    """Raised when a requested record does not exist (or is not visible)"""

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if entity:
            details["entity"] = entity
        if record_id is not None:
            details["record_id"] = record_id

        super().__init__(
            message=message,
            code="DATA_404",
            details=details,
            **kwargs,
        )


class ValidationError(SchoolSyncError):
    """Raised when a write violates a table constraint (unique, FK, check, ...)"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        constraint: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if constraint:
            details["constraint"] = constraint

        super().__init__(
            message=message,
            code="DATA_001",
            details=details,
            **kwargs,
        )

    @property
    def field(self) -> Optional[str]:
        return self.details.get("field")

    @property
    def constraint(self) -> Optional[str]:
        return self.details.get("constraint")


# =============================================================================
# SYNC LAYER EXCEPTIONS
# =============================================================================

class BulkMutationError(SchoolSyncError):
    """Raised when at least one record of a bulk mutation failed"""

    def __init__(self, message: str, result: Any, **kwargs):
        details = kwargs.pop("details", {})
        details["succeeded"] = len(result.succeeded)
        details["failed"] = len(result.failed)

        super().__init__(
            message=message,
            code="SYNC_002",
            details=details,
            **kwargs,
        )
        self.result = result


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(SchoolSyncError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
