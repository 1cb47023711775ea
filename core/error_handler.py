"""
Error Handler for the PopThread core

Defines the error taxonomy raised by the managers and provides centralized
error handling with categorization, logging, and user-facing messages that
an HTTP layer can render.
"""

import logging
import traceback
from enum import Enum
from typing import Optional, Callable
from dataclasses import dataclass

from sqlalchemy.exc import OperationalError


logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error categories for classification."""
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    EXPIRED = "expired"
    VALIDATION = "validation"
    STORAGE = "storage"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# HTTP-style status the REST collaborator should answer with
STATUS_CODES = {
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.FORBIDDEN: 403,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.EXPIRED: 410,
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.STORAGE: 503,
    ErrorCategory.UNKNOWN: 500,
}


@dataclass
class ErrorContext:
    """Context information for an error."""
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    user_message: str
    technical_details: str
    status_code: int
    code: str
    user_id: Optional[str] = None
    thread_id: Optional[str] = None
    gossip_id: Optional[str] = None

    def to_response(self) -> dict:
        """Body for the caller: ``{"success": False, "error": {...}}``."""
        return {
            "success": False,
            "error": {
                "code": self.code,
                "category": self.category.value,
                "message": self.user_message,
            },
        }


# Custom Exception Classes

class PopThreadError(Exception):
    """Base exception for PopThread business and storage errors."""

    code = "error"

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.category = category


class NotFoundError(PopThreadError):
    """An entity id did not resolve."""

    code = "not_found"

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.NOT_FOUND)


class ParentNotFoundError(NotFoundError):
    """A reply's parent comment does not exist in the same gossip."""

    code = "parent_not_found"


class ForbiddenError(PopThreadError):
    """The actor lacks authorization for the requested mutation."""

    code = "forbidden"

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.FORBIDDEN)


class NotAMemberError(ForbiddenError):
    """The sender is not a member of the thread."""

    code = "not_a_member"


class ConflictError(PopThreadError):
    """The requested transition is invalid for the current state."""

    code = "conflict"

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.CONFLICT)


class AlreadyMemberError(ConflictError):
    code = "already_member"


class AlreadyPendingError(ConflictError):
    code = "already_pending"


class NotPendingError(ConflictError):
    code = "not_pending"


class ExpiredError(PopThreadError):
    """Operation attempted on a time-lapsed entity."""

    code = "expired"

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.EXPIRED)


class ThreadExpiredError(ExpiredError):
    code = "thread_expired"


class GossipExpiredError(ExpiredError):
    code = "gossip_expired"


class ValidationError(PopThreadError):
    """Input is empty, too short, too long or malformed."""

    code = "validation"

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.VALIDATION)


class EmptyMessageError(ValidationError):
    code = "empty_message"


class TransientStoreError(PopThreadError):
    """The entity store is unavailable; the caller may retry explicitly."""

    code = "store_unavailable"

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.STORAGE)


class ErrorHandler:
    """
    Global error handler for the PopThread core.

    Provides centralized error handling with:
    - Error categorization (not found, forbidden, conflict, expired, ...)
    - Severity classification
    - User-friendly error messages and status codes
    - Detailed logging for debugging
    - Notification callback for the transport layer

    Usage:
        error_handler = ErrorHandler()

        try:
            membership.request_join(thread_id, user_id)
        except Exception as e:
            context = error_handler.handle_error(e, "request join")
            return context.status_code, context.to_response()
    """

    def __init__(self):
        """Initialize error handler."""
        self._notification_callback: Optional[Callable] = None
        self._error_count = 0

    def set_notification_callback(self, callback: Callable):
        """
        Set callback invoked for every handled error.

        Args:
            callback: Function(error_context: ErrorContext)
        """
        self._notification_callback = callback

    def handle_error(
        self,
        error: Exception,
        context: str,
        user_id: Optional[str] = None,
        thread_id: Optional[str] = None,
        gossip_id: Optional[str] = None,
    ) -> ErrorContext:
        """
        Handle an error with appropriate categorization and response.

        Args:
            error: The exception that occurred
            context: Description of the operation that failed
            user_id: Optional acting user id
            thread_id: Optional thread id the error relates to
            gossip_id: Optional gossip id the error relates to

        Returns:
            ErrorContext with categorized error information
        """
        self._error_count += 1

        if isinstance(error, PopThreadError):
            category = error.category
            code = error.code
        else:
            category = self._categorize_error(error)
            code = "store_unavailable" if category == ErrorCategory.STORAGE else "internal"

        severity = self._determine_severity(category)

        error_context = ErrorContext(
            category=category,
            severity=severity,
            operation=context,
            user_message=self._generate_user_message(error, category, context),
            technical_details=self._get_technical_details(error),
            status_code=STATUS_CODES[category],
            code=code,
            user_id=user_id,
            thread_id=thread_id,
            gossip_id=gossip_id,
        )

        self._log_error(error_context)

        if self._notification_callback:
            try:
                self._notification_callback(error_context)
            except Exception as e:
                logger.error(f"Error notification callback failed: {e}")

        return error_context

    def _categorize_error(self, error: Exception) -> ErrorCategory:
        """
        Categorize a non-domain exception.

        Args:
            error: The exception to categorize

        Returns:
            ErrorCategory
        """
        if isinstance(error, OperationalError):
            return ErrorCategory.STORAGE
        if isinstance(error, (KeyError, LookupError)):
            return ErrorCategory.NOT_FOUND
        if isinstance(error, (ValueError, TypeError)):
            return ErrorCategory.VALIDATION
        return ErrorCategory.UNKNOWN

    def _determine_severity(self, category: ErrorCategory) -> ErrorSeverity:
        """Business rejections are expected traffic; storage faults are not."""
        if category in (ErrorCategory.NOT_FOUND, ErrorCategory.EXPIRED, ErrorCategory.VALIDATION):
            return ErrorSeverity.INFO
        if category in (ErrorCategory.FORBIDDEN, ErrorCategory.CONFLICT):
            return ErrorSeverity.WARNING
        if category == ErrorCategory.STORAGE:
            return ErrorSeverity.ERROR
        return ErrorSeverity.CRITICAL

    def _generate_user_message(
        self,
        error: Exception,
        category: ErrorCategory,
        context: str
    ) -> str:
        """
        Generate a user-friendly error message.

        Domain errors already carry a message meant for the user; everything
        else gets a generic one so internals don't leak.
        """
        if isinstance(error, PopThreadError) and category != ErrorCategory.STORAGE:
            return str(error)
        if category == ErrorCategory.STORAGE:
            return "The service is temporarily unavailable. Please try again."
        if category == ErrorCategory.VALIDATION:
            return f"Invalid input for {context}."
        if category == ErrorCategory.NOT_FOUND:
            return "The requested item could not be found."
        return f"An error occurred during {context}. Please try again."

    def _get_technical_details(self, error: Exception) -> str:
        details = [
            f"Exception Type: {type(error).__name__}",
            f"Message: {str(error)}",
            "Traceback:",
            traceback.format_exc()
        ]
        return "\n".join(details)

    def _log_error(self, error_context: ErrorContext):
        """
        Log error with appropriate level.

        Args:
            error_context: Error context information
        """
        log_message = (
            f"[{error_context.category.value.upper()}] "
            f"{error_context.operation}: {error_context.user_message}"
        )

        extra_info = []
        if error_context.user_id:
            extra_info.append(f"user_id={error_context.user_id}")
        if error_context.thread_id:
            extra_info.append(f"thread_id={error_context.thread_id}")
        if error_context.gossip_id:
            extra_info.append(f"gossip_id={error_context.gossip_id}")

        if extra_info:
            log_message += f" ({', '.join(extra_info)})"

        if error_context.severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message)
            logger.critical(f"Technical details:\n{error_context.technical_details}")
        elif error_context.severity == ErrorSeverity.ERROR:
            logger.error(log_message)
            logger.debug(f"Technical details:\n{error_context.technical_details}")
        elif error_context.severity == ErrorSeverity.WARNING:
            logger.warning(log_message)
        else:
            logger.info(log_message)

    def get_error_count(self) -> int:
        return self._error_count

    def reset_error_count(self):
        """Reset error counter."""
        self._error_count = 0


# Global error handler instance
_global_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """
    Get the global error handler instance.

    Returns:
        Global ErrorHandler instance
    """
    global _global_error_handler
    if _global_error_handler is None:
        _global_error_handler = ErrorHandler()
    return _global_error_handler


def set_error_handler(handler: ErrorHandler):
    """
    Set the global error handler instance.

    Args:
        handler: ErrorHandler instance to use globally
    """
    global _global_error_handler
    _global_error_handler = handler
