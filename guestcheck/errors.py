"""Domain error codes for the check-in subsystem."""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    DIRECTORY_UNAVAILABLE = "DIRECTORY_UNAVAILABLE"
    WRITE_CONFLICT = "WRITE_CONFLICT"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    ATTEMPT_IN_PROGRESS = "ATTEMPT_IN_PROGRESS"
    INVALID_TRANSITION = "INVALID_TRANSITION"


@dataclass(eq=False)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    @property
    def retryable(self) -> bool:
        return self.code in (ErrorCode.DIRECTORY_UNAVAILABLE, ErrorCode.WRITE_CONFLICT)


class DirectoryUnavailableError(DomainError):
    """Raised when the guest or event directory cannot be reached."""

    def __init__(self, detail: str = "") -> None:
        super().__init__(
            code=ErrorCode.DIRECTORY_UNAVAILABLE,
            message="Guest directory is unavailable, try again",
        )
        self.detail = detail


class WriteConflictError(DomainError):
    """Raised when the check-in write collides with a concurrent change."""

    def __init__(self, guest_id: str) -> None:
        super().__init__(
            code=ErrorCode.WRITE_CONFLICT,
            message="Guest record changed during check-in, try again",
        )
        self.guest_id = guest_id


class EventNotFoundError(DomainError):
    """Raised when an event is not found."""

    def __init__(self, event_id: str) -> None:
        super().__init__(
            code=ErrorCode.EVENT_NOT_FOUND,
            message="Event not found",
        )
        self.event_id = event_id


class AttemptInProgressError(DomainError):
    """Raised when input arrives while a search or write is still running."""

    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.ATTEMPT_IN_PROGRESS,
            message="A check-in attempt is already in progress",
        )


class InvalidTransitionError(DomainError):
    """Raised when an operation is called from a state that does not accept it."""

    def __init__(self, operation: str, state: str) -> None:
        super().__init__(
            code=ErrorCode.INVALID_TRANSITION,
            message=f"Cannot {operation} while {state}",
        )
        self.operation = operation
        self.state = state
