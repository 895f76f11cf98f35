"""Custom exceptions for the coach backend."""

import logging
from typing import Any

logger = logging.getLogger(__name__)

# Exception type → safe user-facing message mapping
_SAFE_MESSAGES: dict[str, str] = {
    "NotFoundError": "The requested resource was not found.",
    "AuthenticationError": "Authentication failed. Please log in again.",
    "ValidationError": "The provided input is invalid. Please check and try again.",
    "QuotaExceededError": "Weekly limit reached.",
    "PersistenceError": "Something went wrong saving your conversation. Please try again.",
    "LLMUnavailableError": "The coach is unavailable right now.",
    "LLMCallError": "The coach could not respond. Please try again.",
}

_DEFAULT_MESSAGE = "An error occurred. Please try again."


def sanitize_error(e: Exception) -> str:
    """Map an exception to a safe, user-facing error message.

    Logs are expected to carry the full exception; the returned string is
    generic so HTTP responses never leak table names or provider errors.

    Args:
        e: The exception to sanitize.

    Returns:
        A safe, generic error message string.
    """
    # Walk the MRO to find the most specific matching type
    for cls in type(e).__mro__:
        safe_msg = _SAFE_MESSAGES.get(cls.__name__)
        if safe_msg:
            return safe_msg

    return _DEFAULT_MESSAGE


class CoachException(Exception):
    """Base exception for all coach-specific errors."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize coach exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            status_code: HTTP status code.
            details: Additional error details, merged into the response body.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class NotFoundError(CoachException):
    """Resource not found error (404)."""

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        """Initialize not found error.

        Args:
            resource: Name of the resource that was not found.
            resource_id: Optional ID of the resource.
        """
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(message=message, code="NOT_FOUND", status_code=404)


class AuthenticationError(CoachException):
    """Authentication failed error (401)."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message=message, code="AUTHENTICATION_ERROR", status_code=401)


class ValidationError(CoachException):
    """Input validation error (400)."""

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Name of the invalid field.
        """
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=400,
            details={"field": field} if field else None,
        )


class QuotaExceededError(CoachException):
    """Free-tier user is at or above the weekly message limit (402)."""

    def __init__(self, limit: int) -> None:
        """Initialize quota exceeded error.

        Args:
            limit: The weekly message limit that was reached.
        """
        super().__init__(
            message="Weekly limit reached",
            code="QUOTA_EXCEEDED",
            status_code=402,
            details={
                "limitReached": True,
                "message": (
                    f"You've used your {limit} free messages this week. "
                    "Upgrade for unlimited coaching."
                ),
                "messagesRemaining": 0,
            },
        )


class PersistenceError(CoachException):
    """Data store read/write failure (500)."""

    def __init__(self, message: str = "A database error occurred") -> None:
        super().__init__(message=message, code="PERSISTENCE_ERROR", status_code=500)


class QuotaPersistenceError(PersistenceError):
    """Weekly usage commit failed after both the insert and the atomic increment."""

    def __init__(self, user_id: str, week_start: str) -> None:
        """Initialize quota persistence error.

        Args:
            user_id: The user whose counter could not be committed.
            week_start: ISO date key of the week.
        """
        super().__init__(f"Failed to commit weekly usage for {user_id} ({week_start})")
        self.code = "QUOTA_PERSISTENCE_ERROR"
        self.details = {"user_id": user_id, "week_start": week_start}


class LLMUnavailableError(CoachException):
    """LLM credential or configuration missing (503)."""

    def __init__(self, message: str = "Coach unavailable") -> None:
        super().__init__(message=message, code="LLM_UNAVAILABLE", status_code=503)


class LLMCallError(CoachException):
    """Provider call failed or timed out (500)."""

    def __init__(self, message: str = "Coach reply failed", timed_out: bool = False) -> None:
        """Initialize LLM call error.

        Args:
            message: Error message.
            timed_out: Whether the call hit the configured timeout.
        """
        super().__init__(
            message=message,
            code="LLM_CALL_ERROR",
            status_code=500,
            details={"timed_out": timed_out} if timed_out else None,
        )
