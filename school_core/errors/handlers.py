# =============================================================================
# school_core/errors/handlers.py
# Error Handling Utilities for the Streamlit presentation layer
# =============================================================================
#
# The sync layer never swallows errors. These helpers are for page code: they
# log the error once and turn it into a toast / inline message.

from __future__ import annotations
import traceback
from typing import Optional
import streamlit as st

from school_core.logging import get_logger
from .exceptions import (
    SchoolSyncError,
    NetworkError,
    AuthorizationError,
    NotFoundError,
    ValidationError,
    BulkMutationError,
)

logger = get_logger(__name__)


def describe_error(error: Exception) -> str:
    """Build the user-facing sentence for an error."""
    if isinstance(error, NetworkError):
        return f"Connection problem: {error.message}. Please try again."
    if isinstance(error, AuthorizationError):
        return "You do not have permission to perform this action."
    if isinstance(error, NotFoundError):
        return f"Not found: {error.message}"
    if isinstance(error, ValidationError):
        if error.field:
            return f"Invalid value for '{error.field}': {error.message}"
        return f"Invalid data: {error.message}"
    if isinstance(error, BulkMutationError):
        result = error.result
        return (
            f"{len(result.succeeded)} saved, {len(result.failed)} failed. "
            "Failed rows were reverted."
        )
    if isinstance(error, SchoolSyncError):
        return error.message
    return str(error)


def handle_error(
    error: Exception,
    show_user_message: bool = True,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> None:
    """
    Centralized error handling function.

    Args:
        error: The exception to handle
        show_user_message: Whether to display error to user via st.error
        log_error: Whether to log the error
        user_message: Custom message to show user (uses describe_error if None)
    """
    message = user_message or describe_error(error)
    if isinstance(error, SchoolSyncError):
        code = error.code
        details = error.details
        recoverable = error.recoverable
    else:
        code = "UNKNOWN"
        details = {"traceback": traceback.format_exc()}
        recoverable = True

    if log_error:
        logger.error(f"[{code}] {message}", extra={"details": details})

    if show_user_message:
        if isinstance(error, NetworkError):
            st.warning(message)
        elif recoverable:
            st.error(f"Error: {message}")
        else:
            st.error(f"Critical Error: {message}. Please contact support.")

        if details and st.session_state.get("debug_mode", False):
            with st.expander("Error Details", expanded=False):
                st.json(details)


class ErrorContext:
    """
    Context manager for page actions with automatic logging and user feedback.

    Usage:
        with ErrorContext("Saving attendance", show_success=True):
            runtime.run(coordinator.mark_attendance(...))
    """

    def __init__(
        self,
        operation: str,
        recoverable: bool = True,
        show_success: bool = False,
        success_message: Optional[str] = None,
    ):
        self.operation = operation
        self.recoverable = recoverable
        self.show_success = show_success
        self.success_message = success_message
        self.error: Optional[BaseException] = None

    def __enter__(self) -> ErrorContext:
        logger.info(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            if not isinstance(exc_val, Exception):
                return False
            self.error = exc_val
            if isinstance(exc_val, SchoolSyncError):
                handle_error(exc_val)
            else:
                handle_error(exc_val, user_message=f"Error during: {self.operation}")

            # Suppress exception if recoverable
            return self.recoverable

        logger.info(f"Completed: {self.operation}")
        if self.show_success:
            st.success(self.success_message or f"{self.operation} completed")
        return False

    @property
    def failed(self) -> bool:
        return self.error is not None
