from __future__ import annotations

import logging

from memoria.retrieval.hybrid_search import HybridMemorySearch
from memoria.schemas.agent import DependencyDecision, RetrievedMemory
from memoria.services.dependency_decider import RankedHistoryItem

logger = logging.getLogger(__name__)

RETRIEVAL_LIMIT = 5


class MemoryRetriever:
    """Gathers extra prior context once a run is known to depend on memory.

    History items that resolved references came from are included first, followed by
    hybrid-search hits for the search query. Results are unique by run id.
    """

    def __init__(self, *, search: HybridMemorySearch, limit: int = RETRIEVAL_LIMIT) -> None:
        self._search = search
        self._limit = limit

    async def retrieve(
        self,
        *,
        user_id: str,
        search_query: str,
        decision: DependencyDecision,
        history: list[RankedHistoryItem],
    ) -> list[RetrievedMemory]:
        by_rank = {item.recency_rank: item for item in history}
        memories: dict[str, RetrievedMemory] = {}

        for entity in decision.resolved_entities():
            if entity.recency_rank is None:
                continue
            item = by_rank.get(entity.recency_rank)
            if item is not None:
                memories.setdefault(item.run_id, item.to_memory())

        for memory in await self._search.retrieve(
            user_id=user_id,
            query=search_query,
            limit=self._limit,
        ):
            memories.setdefault(memory.run_id, memory)

        logger.debug("Retrieved %d memory item(s) for user %s", len(memories), user_id)
        return list(memories.values())
