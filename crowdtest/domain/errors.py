"""
Domain errors for the session orchestration core.

Every error carries a stable ErrorCode and a user-safe message so that an
outer API layer can map it to a response without inspecting the class.
Admission rejections travel as these codes inside AdmissionResult; every
other operation raises the error.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Domain error codes."""

    NOT_FOUND = "NOT_FOUND"
    NOT_PUBLISHED = "NOT_PUBLISHED"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    DUPLICATE_ACTIVE_SESSION = "DUPLICATE_ACTIVE_SESSION"
    SESSION_ALREADY_TERMINAL = "SESSION_ALREADY_TERMINAL"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    FORBIDDEN = "FORBIDDEN"
    ACCESS_DENIED = "ACCESS_DENIED"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_INPUT = "INVALID_INPUT"
    TRANSIENT_STORAGE = "TRANSIENT_STORAGE"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.INVALID_INPUT
    default_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": dict(self.details),
        }


class NotFoundError(DomainError):
    """Raised when a test or session does not exist."""

    code = ErrorCode.NOT_FOUND
    default_message = "Resource not found"

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} not found", resource=resource, resource_id=resource_id)
        self.resource = resource
        self.resource_id = resource_id


class NotPublishedError(DomainError):
    """Raised when a test is not accepting participants."""

    code = ErrorCode.NOT_PUBLISHED
    default_message = "Test is not available for participation"


class CapacityExceededError(DomainError):
    """Raised when every slot of a test is taken."""

    code = ErrorCode.CAPACITY_EXCEEDED
    default_message = "Test has reached maximum number of testers"


class DuplicateActiveSessionError(DomainError):
    """Raised when a participant already holds a live session on the test."""

    code = ErrorCode.DUPLICATE_ACTIVE_SESSION
    default_message = "You already have an active session for this test"


class SessionAlreadyTerminalError(DomainError):
    code = ErrorCode.SESSION_ALREADY_TERMINAL
    default_message = "Session has already ended"


class InvalidTransitionError(DomainError):
    """Raised when a lifecycle transition is not allowed from the current state."""

    code = ErrorCode.INVALID_TRANSITION
    default_message = "Transition not allowed in the current state"

    def __init__(
        self,
        message: Optional[str] = None,
        current: Optional[str] = None,
        target: Optional[str] = None,
    ) -> None:
        if message is None and current is not None and target is not None:
            message = f"Cannot move from {current} to {target}"
        super().__init__(message, current=current, target=target)
        self.current = current
        self.target = target


class ForbiddenError(DomainError):
    """Raised when the caller may not perform an operation on a resource."""

    code = ErrorCode.FORBIDDEN
    default_message = "Not authorized to perform this operation"


class AccessDeniedError(DomainError):
    """Raised when a connection may not observe a test room."""

    code = ErrorCode.ACCESS_DENIED
    default_message = "Access denied to this test"


class RateLimitedError(DomainError):
    """Raised when a sensitive operation exceeded its attempt budget."""

    code = ErrorCode.RATE_LIMITED
    default_message = "Too many attempts. Please try again later."

    def __init__(self, retry_after: float, message: Optional[str] = None) -> None:
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class InvalidInputError(DomainError, ValueError):
    """Raised when an input value fails validation."""

    code = ErrorCode.INVALID_INPUT
    default_message = "Invalid input"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None) -> None:
        super().__init__(message, field=field)
        self.field = field
        self.value = value


class TransientStorageError(DomainError):
    """Raised when storage conflicts persisted through every retry."""

    code = ErrorCode.TRANSIENT_STORAGE
    default_message = "Storage is busy, please retry"


_ERRORS_BY_CODE = {
    ErrorCode.NOT_PUBLISHED: NotPublishedError,
    ErrorCode.CAPACITY_EXCEEDED: CapacityExceededError,
    ErrorCode.DUPLICATE_ACTIVE_SESSION: DuplicateActiveSessionError,
    ErrorCode.SESSION_ALREADY_TERMINAL: SessionAlreadyTerminalError,
    ErrorCode.FORBIDDEN: ForbiddenError,
    ErrorCode.ACCESS_DENIED: AccessDeniedError,
    ErrorCode.TRANSIENT_STORAGE: TransientStorageError,
}


def error_for_code(code: ErrorCode, message: Optional[str] = None) -> DomainError:
    """
    Build the error instance matching a code.

    Codes whose errors need structured arguments (NOT_FOUND, RATE_LIMITED,
    INVALID_INPUT, INVALID_TRANSITION) fall back to a plain DomainError
    carrying the code.
    """
    error_cls = _ERRORS_BY_CODE.get(code)
    if error_cls is not None:
        return error_cls(message)
    error = DomainError(message)
    error.code = code
    return error
