from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from openai import AsyncOpenAI

from memoria.config import DEFAULT_EMBEDDING_MODEL
from memoria.errors import MemoriaOracleError


@dataclass(frozen=True)
class EmbeddingResult:
    vector: list[float]
    model: str
    token_count: int


class Embedder(Protocol):
    """Fixed-dimension text embedding capability."""

    @property
    def model(self) -> str: ...

    async def embed(self, text: str) -> EmbeddingResult: ...


class OpenAIEmbedder:
    """Embeds text with the OpenAI embeddings endpoint."""

    def __init__(
        self,
        *,
        model: str = DEFAULT_EMBEDDING_MODEL,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._client = client

    @property
    def model(self) -> str:
        return self._model

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    async def embed(self, text: str) -> EmbeddingResult:
        try:
            response = await self._get_client().embeddings.create(
                model=self._model,
                input=text,
                encoding_format="float",
            )
        except Exception as exc:
            raise MemoriaOracleError(f"embedding call failed: {exc}") from exc

        if not response.data or not response.data[0].embedding:
            raise MemoriaOracleError("embedding call returned no vector")

        usage = getattr(response, "usage", None)
        return EmbeddingResult(
            vector=[float(value) for value in response.data[0].embedding],
            model=str(response.model),
            token_count=int(getattr(usage, "total_tokens", 0) or 0),
        )
