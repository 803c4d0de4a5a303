"""Error definitions and policy helpers for the Ferry translator."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


class ErrorCategory(Enum):
    """Kinds of document failure counted by the error policy."""

    TRANSLATION = auto()
    FILE_IO = auto()


# Messages carried by terminal error statuses that the orchestrator recovers
# from by splitting the fragment instead of failing the document.
LENGTH_EXCEEDED_MESSAGE = "reduce the length."
STREAM_READ_ERROR_MESSAGE = "stream read error"


class FerryError(Exception):
    """Base exception for all custom errors."""


class AbortRequested(FerryError):
    """Raised when the user elects to abort processing."""


class NonInteractiveAbort(FerryError):
    """Raised when non-interactive policy dictates termination."""


class SourceFileNotFoundError(FerryError):
    """Raised when a source document or prompt template does not exist."""


class TranslationProviderConfigurationError(FerryError):
    """Raised when the translation provider is misconfigured."""


class TranslationProviderError(FerryError):
    """Raised when a fragment fails with an unrecoverable provider error."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass
class ErrorRecord:
    """Stores context for a handled error."""

    category: ErrorCategory
    message: str
    details: Optional[str] = None


class ErrorTracker:
    """Tracks consecutive and aggregate errors to satisfy policy rules."""

    CONSECUTIVE_LIMIT = 3
    TOTAL_LIMIT = 10

    def __init__(self) -> None:
        self.last_category: Optional[ErrorCategory] = None
        self.consecutive: int = 0
        self.total: int = 0

    def register(self, category: ErrorCategory) -> tuple[int, int, bool]:
        """Register a new error and return counters."""

        if self.last_category == category:
            self.consecutive += 1
        else:
            self.last_category = category
            self.consecutive = 1

        self.total += 1

        threshold_reached = (
            self.consecutive >= self.CONSECUTIVE_LIMIT
            or self.total >= self.TOTAL_LIMIT
        )

        return self.consecutive, self.total, threshold_reached

    def reset_consecutive(self) -> None:
        """Reset the consecutive counter after successful work."""

        self.consecutive = 0
        self.last_category = None
