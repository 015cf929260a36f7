"""Domain error codes for the feed engine."""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    RECONCILIATION_REQUIRED = "RECONCILIATION_REQUIRED"
    STALE_REFRESH = "STALE_REFRESH"


@dataclass(eq=False)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class SourceUnavailableError(DomainError):
    """Raised when a gateway call failed; the source degrades to an empty contribution."""

    def __init__(self, source: str, cause: BaseException | None = None) -> None:
        super().__init__(
            code=ErrorCode.SOURCE_UNAVAILABLE,
            message=f"Source '{source}' is unavailable",
        )
        self.source = source
        self.cause = cause


class CapacityExceededError(DomainError):
    """Raised when pinning would exceed the cap. Never reaches the backend."""

    def __init__(self, limit: int, message: str) -> None:
        super().__init__(code=ErrorCode.CAPACITY_EXCEEDED, message=message)
        self.limit = limit


class ReconciliationRequiredError(DomainError):
    """Raised when a mutation failed after an optimistic update."""

    def __init__(self, subject: str, cause: BaseException | None = None) -> None:
        super().__init__(
            code=ErrorCode.RECONCILIATION_REQUIRED,
            message=f"Update of {subject} failed, state reloaded from backend",
        )
        self.subject = subject
        self.cause = cause


class StaleRefreshError(DomainError):
    """Raised internally when a newer refresh superseded the running one."""

    def __init__(self, generation: int) -> None:
        super().__init__(
            code=ErrorCode.STALE_REFRESH,
            message=f"Refresh {generation} was superseded",
        )
        self.generation = generation
