# =============================================================================
# school_core/errors/__init__.py
# Centralized Error Handling for SchoolHub
# =============================================================================

from .exceptions import (
    SchoolSyncError,
    NetworkError,
    AuthorizationError,
    NotFoundError,
    ValidationError,
    BulkMutationError,
    ConfigurationError,
)

__all__ = [
    "SchoolSyncError",
    "NetworkError",
    "AuthorizationError",
    "NotFoundError",
    "ValidationError",
    "BulkMutationError",
    "ConfigurationError",
]
