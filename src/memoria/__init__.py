"""Memoria Python SDK."""

from .client import AskResult, Memoria
from .config import MemoriaSettings
from .errors import (
    MemoriaConfigurationError,
    MemoriaError,
    MemoriaNotFoundError,
    MemoriaOracleError,
    MemoriaValidationError,
)

__all__ = [
    "AskResult",
    "Memoria",
    "MemoriaConfigurationError",
    "MemoriaError",
    "MemoriaNotFoundError",
    "MemoriaOracleError",
    "MemoriaSettings",
    "MemoriaValidationError",
]
