from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from memoria.repositories.run_repository import InMemoryRunRepository
from memoria.retrieval.hybrid_search import (
    HybridMemorySearch,
    SearchTier,
    merge_by_recency,
)
from memoria.schemas.agent import RetrievedMemory

from tests.fakes import FakeEmbedder, seed_run


class _SpyRepository(InMemoryRunRepository):
    def __init__(self) -> None:
        super().__init__()
        self.text_queries: list[tuple[str, int]] = []

    def search_text(self, user_id: str, query: str, limit: int) -> list[RetrievedMemory]:
        self.text_queries.append((query, limit))
        return super().search_text(user_id, query, limit)


@pytest.fixture
def spy() -> _SpyRepository:
    return _SpyRepository()


def _search(repository: InMemoryRunRepository, embedder: FakeEmbedder) -> HybridMemorySearch:
    return HybridMemorySearch(repository=repository, embedder=embedder, vector_threshold=0.75)


@pytest.mark.asyncio
async def test_vector_hit_short_circuits_text_tiers(
    spy: _SpyRepository, embedder: FakeEmbedder
) -> None:
    seed_run(spy, embedder, user_id="u1", question="What is Python?", answer="A language")

    result = await _search(spy, embedder).find_candidates(
        user_id="u1", question="what is python", search_phrase="python"
    )

    assert result.tier is SearchTier.VECTOR
    assert result.tiers_attempted == [SearchTier.VECTOR]
    assert result.search_method == "vector"
    assert result.similarity_score == pytest.approx(1.0)
    assert spy.text_queries == []


@pytest.mark.asyncio
async def test_search_phrase_tier_runs_when_vector_finds_nothing(
    spy: _SpyRepository, embedder: FakeEmbedder
) -> None:
    seed_run(spy, None, user_id="u1", question="What is Python used for?", answer="A")

    result = await _search(spy, embedder).find_candidates(
        user_id="u1", question="Tell me about Python", search_phrase="python"
    )

    assert result.tier is SearchTier.SEARCH_PHRASE
    assert result.search_method == "text"
    assert result.similarity_score is None
    assert spy.text_queries == [("python", 3)]


@pytest.mark.asyncio
async def test_keyword_tier_joins_surviving_tokens(
    spy: _SpyRepository, embedder: FakeEmbedder
) -> None:
    seed_run(spy, None, user_id="u1", question="What is Python used for?", answer="A")

    result = await _search(spy, embedder).find_candidates(
        user_id="u1", question="Python used?", search_phrase="zzz"
    )

    assert result.tier is SearchTier.KEYWORDS
    assert spy.text_queries == [("zzz", 3), ("python used", 3)]


@pytest.mark.asyncio
async def test_token_tier_merges_per_token_hits_newest_first(
    spy: _SpyRepository, embedder: FakeEmbedder
) -> None:
    seed_run(spy, None, user_id="u1", question="What is Rust?", answer="A")
    seed_run(spy, None, user_id="u1", question="Python basics", answer="B")

    result = await _search(spy, embedder).find_candidates(
        user_id="u1", question="Tell me about Rust and Python", search_phrase="zzz"
    )

    assert result.tier is SearchTier.TOKENS
    assert [memory.question for memory in result.candidates] == ["Python basics", "What is Rust?"]
    assert ("rust", 5) in spy.text_queries
    assert ("python", 5) in spy.text_queries


@pytest.mark.asyncio
async def test_all_tiers_empty(spy: _SpyRepository, embedder: FakeEmbedder) -> None:
    result = await _search(spy, embedder).find_candidates(
        user_id="u1", question="Who painted the Mona Lisa?", search_phrase="mona lisa painter"
    )

    assert result.candidates == []
    assert result.tier is None
    assert result.tiers_attempted == list(SearchTier)
    assert result.search_method == "text"


@pytest.mark.asyncio
async def test_other_users_runs_are_never_candidates(
    spy: _SpyRepository, embedder: FakeEmbedder
) -> None:
    seed_run(spy, embedder, user_id="u2", question="What is Python?", answer="A")

    result = await _search(spy, embedder).find_candidates(
        user_id="u1", question="What is Python?", search_phrase="python"
    )

    assert result.candidates == []


@pytest.mark.asyncio
async def test_retrieve_falls_back_to_text_search(
    spy: _SpyRepository, embedder: FakeEmbedder
) -> None:
    seed_run(spy, None, user_id="u1", question="Where is Tesla based?", answer="Austin")
    search = _search(spy, embedder)

    memories = await search.retrieve(user_id="u1", query="tesla", limit=5)

    assert [memory.answer for memory in memories] == ["Austin"]
    assert await search.retrieve(user_id="u1", query="  ") == []


def test_merge_by_recency_dedupes_and_caps() -> None:
    base = datetime(2024, 1, 1, tzinfo=UTC)

    def memory(run_id: str, minutes: int) -> RetrievedMemory:
        return RetrievedMemory(
            run_id=run_id,
            question=run_id,
            answer="A",
            created_at=base + timedelta(minutes=minutes),
        )

    merged = merge_by_recency(
        [[memory("a", 1), memory("b", 3)], [memory("b", 3), memory("c", 2)]],
        limit=2,
    )

    assert [item.run_id for item in merged] == ["b", "c"]
