from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum

import anyio
import anyio.to_thread

from memoria.repositories.run_repository import RunRepository
from memoria.retrieval.keywords import keyword_tokens
from memoria.schemas.agent import RetrievedMemory, SearchMethod
from memoria.services.embeddings import Embedder

logger = logging.getLogger(__name__)

VECTOR_LIMIT = 5
PHRASE_LIMIT = 3
KEYWORD_LIMIT = 3
TOKEN_LIMIT = 5
TOKEN_MERGED_LIMIT = 5
FULL_QUESTION_LIMIT = 3
TOKEN_MIN_LENGTH = 4


class SearchTier(IntEnum):
    VECTOR = 1
    SEARCH_PHRASE = 2
    KEYWORDS = 3
    TOKENS = 4
    FULL_QUESTION = 5


@dataclass(frozen=True)
class TieredSearchResult:
    candidates: list[RetrievedMemory]
    tier: SearchTier | None
    tiers_attempted: list[SearchTier] = field(default_factory=list)

    @property
    def search_method(self) -> SearchMethod:
        return "vector" if self.tier is SearchTier.VECTOR else "text"

    @property
    def similarity_score(self) -> float | None:
        if self.tier is not SearchTier.VECTOR:
            return None
        scores = [c.relevance_score for c in self.candidates if c.relevance_score is not None]
        return max(scores) if scores else None


def merge_by_recency(batches: list[list[RetrievedMemory]], *, limit: int) -> list[RetrievedMemory]:
    """Merge result batches, keeping the first hit per run id, newest first."""
    merged: dict[str, RetrievedMemory] = {}
    for batch in batches:
        for memory in batch:
            merged.setdefault(memory.run_id, memory)
    ordered = sorted(merged.values(), key=lambda memory: memory.created_at, reverse=True)
    return ordered[: max(0, limit)]


class HybridMemorySearch:
    """Vector similarity search with ordered text fallbacks over one user's runs.

    Tiers run strictly in order and the first non-empty tier wins; a later tier is
    never queried once an earlier one produced a candidate.
    """

    def __init__(
        self,
        *,
        repository: RunRepository,
        embedder: Embedder,
        vector_threshold: float = 0.75,
    ) -> None:
        self._repository = repository
        self._embedder = embedder
        self._vector_threshold = vector_threshold

    async def find_candidates(
        self,
        *,
        user_id: str,
        question: str,
        search_phrase: str,
    ) -> TieredSearchResult:
        attempted: list[SearchTier] = []
        for tier in SearchTier:
            attempted.append(tier)
            candidates = await self._run_tier(
                tier,
                user_id=user_id,
                question=question,
                search_phrase=search_phrase,
            )
            if candidates:
                logger.debug(
                    "Tier %s returned %d candidate(s) for user %s",
                    tier.name,
                    len(candidates),
                    user_id,
                )
                return TieredSearchResult(
                    candidates=candidates, tier=tier, tiers_attempted=attempted
                )
            logger.debug("Tier %s returned no candidates for user %s", tier.name, user_id)

        return TieredSearchResult(candidates=[], tier=None, tiers_attempted=attempted)

    async def retrieve(self, *, user_id: str, query: str, limit: int = 5) -> list[RetrievedMemory]:
        """Context retrieval: vector search on ``query``, text search when that finds nothing."""
        query = query.strip()
        if not query:
            return []
        embedding = await self._embedder.embed(query)
        memories = self._repository.search_vector(
            user_id,
            embedding.vector,
            self._vector_threshold,
            limit,
        )
        if memories:
            return memories
        return self._repository.search_text(user_id, query, limit)

    async def _run_tier(
        self,
        tier: SearchTier,
        *,
        user_id: str,
        question: str,
        search_phrase: str,
    ) -> list[RetrievedMemory]:
        if tier is SearchTier.VECTOR:
            return await self._vector_tier(user_id, question)
        if tier is SearchTier.SEARCH_PHRASE:
            return await self._text_tier(user_id, search_phrase, PHRASE_LIMIT)
        if tier is SearchTier.KEYWORDS:
            return await self._keyword_tier(user_id, question)
        if tier is SearchTier.TOKENS:
            return await self._token_tier(user_id, question)
        return await self._text_tier(user_id, question, FULL_QUESTION_LIMIT)

    async def _vector_tier(self, user_id: str, question: str) -> list[RetrievedMemory]:
        embedding = await self._embedder.embed(question)
        return self._repository.search_vector(
            user_id,
            embedding.vector,
            self._vector_threshold,
            VECTOR_LIMIT,
        )

    async def _text_tier(self, user_id: str, query: str, limit: int) -> list[RetrievedMemory]:
        if not query.strip():
            return []
        return self._repository.search_text(user_id, query, limit)

    async def _keyword_tier(self, user_id: str, question: str) -> list[RetrievedMemory]:
        keywords = keyword_tokens(question)
        if not keywords:
            return []
        return self._repository.search_text(user_id, " ".join(keywords), KEYWORD_LIMIT)

    async def _token_tier(self, user_id: str, question: str) -> list[RetrievedMemory]:
        tokens = keyword_tokens(question, min_length=TOKEN_MIN_LENGTH)
        if not tokens:
            return []

        batches: list[list[RetrievedMemory]] = [[] for _ in tokens]

        async def _search_token(position: int, token: str) -> None:
            batches[position] = await anyio.to_thread.run_sync(
                self._repository.search_text, user_id, token, TOKEN_LIMIT
            )

        async with anyio.create_task_group() as task_group:
            for position, token in enumerate(tokens):
                task_group.start_soon(_search_token, position, token)

        return merge_by_recency(batches, limit=TOKEN_MERGED_LIMIT)
