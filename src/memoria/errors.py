from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from memoria.services.decision_validator import ValidationResult


class MemoriaError(RuntimeError):
    """Base error for the Memoria engine."""


class MemoriaConfigurationError(MemoriaError):
    """Raised when a required capability or setting is missing (e.g., API key)."""


class MemoriaOracleError(MemoriaError):
    """Raised when a generation/embedding call fails or returns an invalid payload."""


class MemoriaNotFoundError(MemoriaError):
    """Raised by facades when a run id does not exist for the requesting user."""


class MemoriaValidationError(MemoriaError):
    """Raised when the memory decisions fail validation and the run must abort."""

    def __init__(self, result: ValidationResult) -> None:
        super().__init__("Memory decision validation failed: " + ", ".join(result.errors))
        self.result = result
