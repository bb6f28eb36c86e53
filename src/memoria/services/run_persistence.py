from __future__ import annotations

import logging
from dataclasses import dataclass

from memoria.errors import MemoriaError
from memoria.repositories.run_repository import RunRepository
from memoria.schemas.agent import RetrievedMemory, RunState
from memoria.services.embeddings import Embedder

logger = logging.getLogger(__name__)

DUPLICATE_THRESHOLD = 0.95


@dataclass(frozen=True)
class BackfillReport:
    processed: int
    succeeded: int
    failed: int
    failed_run_ids: list[str]


class RunPersistence:
    """Stores finished runs with the embedding used by the vector search tier.

    The stored embedding is computed from the effective question, i.e. the resolved
    form when reference resolution rewrote the question.
    """

    def __init__(self, *, repository: RunRepository, embedder: Embedder) -> None:
        self._repository = repository
        self._embedder = embedder

    async def persist(self, state: RunState) -> str:
        if state.status != "completed" or state.answer is None:
            raise MemoriaError(f"Only completed runs can be persisted (status={state.status!r})")

        embedding = await self._embedder.embed(state.effective_question)
        run_id = self._repository.insert_run(
            state,
            embedding=embedding.vector,
            embedding_model=embedding.model,
        )
        logger.info("Persisted run %s for user %s", run_id, state.user_id)
        return run_id

    async def backfill_embeddings(self, *, user_id: str | None = None) -> BackfillReport:
        """Embed stored runs that have no embedding yet so vector search can see them."""
        pending = self._repository.list_runs_missing_embedding(user_id)
        succeeded = 0
        failed_run_ids: list[str] = []
        for record in pending:
            text = record.resolved_question or record.question
            try:
                embedding = await self._embedder.embed(text)
            except MemoriaError:
                logger.exception("Failed to embed run %s", record.run_id)
                failed_run_ids.append(record.run_id)
                continue
            if self._repository.set_embedding(
                record.run_id,
                embedding=embedding.vector,
                embedding_model=embedding.model,
            ):
                succeeded += 1
            else:
                failed_run_ids.append(record.run_id)

        if pending:
            logger.info(
                "Backfilled %d of %d run embedding(s)",
                succeeded,
                len(pending),
            )
        return BackfillReport(
            processed=len(pending),
            succeeded=succeeded,
            failed=len(failed_run_ids),
            failed_run_ids=failed_run_ids,
        )

    async def find_duplicate_question(
        self,
        *,
        user_id: str,
        question: str,
        threshold: float = DUPLICATE_THRESHOLD,
    ) -> RetrievedMemory | None:
        embedding = await self._embedder.embed(question)
        matches = self._repository.search_vector(user_id, embedding.vector, threshold, 1)
        return matches[0] if matches else None
