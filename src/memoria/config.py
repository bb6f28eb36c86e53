from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Final

from memoria.errors import MemoriaConfigurationError

DEFAULT_CHAT_MODEL: Final[str] = "gpt-4o"
DEFAULT_EMBEDDING_MODEL: Final[str] = "text-embedding-3-small"
MAX_REASONING_ITERATIONS: Final[int] = 3

_OPENAI_API_KEY_ENV = "OPENAI_API_KEY"
_AZURE_OPENAI_API_KEY_ENV = "AZURE_OPENAI_API_KEY"


@dataclass(frozen=True)
class ModelSettings:
    model: str
    temperature: float


@dataclass(frozen=True)
class MemoriaSettings:
    """Runtime knobs for the engine, read from ``MEMORIA_*`` environment variables."""

    chat_model: str = DEFAULT_CHAT_MODEL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    history_window: int = 10
    vector_threshold: float = 0.75
    reuse_chunk_size: int = 24
    reuse_chunk_delay: float = 0.015
    max_reasoning_iterations: int = MAX_REASONING_ITERATIONS

    def __post_init__(self) -> None:
        if not self.chat_model.strip():
            raise MemoriaConfigurationError("chat_model must not be empty")
        if not self.embedding_model.strip():
            raise MemoriaConfigurationError("embedding_model must not be empty")
        if self.history_window < 1:
            raise MemoriaConfigurationError("history_window must be at least 1")
        if not 0.0 <= self.vector_threshold <= 1.0:
            raise MemoriaConfigurationError("vector_threshold must lie in [0, 1]")
        if self.reuse_chunk_size < 1:
            raise MemoriaConfigurationError("reuse_chunk_size must be at least 1")
        if self.reuse_chunk_delay < 0:
            raise MemoriaConfigurationError("reuse_chunk_delay must not be negative")
        if not 1 <= self.max_reasoning_iterations <= MAX_REASONING_ITERATIONS:
            raise MemoriaConfigurationError(
                f"max_reasoning_iterations must lie in [1, {MAX_REASONING_ITERATIONS}]"
            )

    @property
    def planning(self) -> ModelSettings:
        return ModelSettings(model=self.chat_model, temperature=0.3)

    @property
    def memory_decision(self) -> ModelSettings:
        return ModelSettings(model=self.chat_model, temperature=0.1)

    @property
    def reasoning(self) -> ModelSettings:
        return ModelSettings(model=self.chat_model, temperature=0.5)

    @property
    def answer(self) -> ModelSettings:
        return ModelSettings(model=self.chat_model, temperature=0.7)

    @classmethod
    def from_env(cls) -> MemoriaSettings:
        return cls(
            chat_model=_read_str("MEMORIA_CHAT_MODEL", DEFAULT_CHAT_MODEL),
            embedding_model=_read_str("MEMORIA_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
            history_window=_read_int("MEMORIA_HISTORY_WINDOW", 10),
            vector_threshold=_read_float("MEMORIA_VECTOR_THRESHOLD", 0.75),
            reuse_chunk_size=_read_int("MEMORIA_REUSE_CHUNK_SIZE", 24),
            reuse_chunk_delay=_read_float("MEMORIA_REUSE_CHUNK_DELAY", 0.015),
            max_reasoning_iterations=_read_int(
                "MEMORIA_MAX_REASONING_ITERATIONS", MAX_REASONING_ITERATIONS
            ),
        )


def _read_str(name: str, default: str) -> str:
    configured = os.getenv(name, default).strip()
    if not configured:
        raise MemoriaConfigurationError(f"{name} must not be empty")
    return configured


def _read_int(name: str, default: int) -> int:
    configured = os.getenv(name, str(default)).strip()
    try:
        return int(configured)
    except ValueError as exc:
        raise MemoriaConfigurationError(f"{name} must be an integer, got {configured!r}") from exc


def _read_float(name: str, default: float) -> float:
    configured = os.getenv(name, str(default)).strip()
    try:
        return float(configured)
    except ValueError as exc:
        raise MemoriaConfigurationError(f"{name} must be a number, got {configured!r}") from exc


def read_non_empty_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return None


def resolve_openai_api_key(explicit_key: str | None = None) -> str:
    """Return the OpenAI key from the argument or environment, or fail loudly."""
    if explicit_key is not None and explicit_key.strip():
        return explicit_key.strip()
    configured = read_non_empty_env(_OPENAI_API_KEY_ENV, _AZURE_OPENAI_API_KEY_ENV)
    if configured:
        return configured
    raise MemoriaConfigurationError(
        "Missing OpenAI API key. Provide openai_api_key=... or set "
        "OPENAI_API_KEY / AZURE_OPENAI_API_KEY."
    )
