from __future__ import annotations

import json
import logging

from memoria.config import MemoriaSettings
from memoria.errors import MemoriaOracleError
from memoria.retrieval.hybrid_search import HybridMemorySearch, TieredSearchResult
from memoria.schemas.agent import ExistenceCheck, RetrievedMemory
from memoria.schemas.oracle import SearchPhraseOutput, SimilarityJudgment
from memoria.services.oracle import TextOracle

logger = logging.getLogger(__name__)

_SEARCH_PHRASE_INSTRUCTIONS = """You are a search query generator.
Given a user's question, produce a concise search phrase for finding similar prior questions.
Extract the key concepts and entities; focus on the main subject and intent, not on pronouns
or references. Return JSON: {"search_query": "..."}"""

_JUDGMENT_INSTRUCTIONS = """You are a similarity checker.
Given a current question and a list of prior questions, decide whether any prior question is
substantially similar to the current one.

Two questions are substantially similar when they ask about the same topic or entity, have the
same intent, and would have the same answer, even if worded differently. Treat synonyms and
paraphrases as similar ("right now" vs "currently", "wife" vs "spouse", "Who is X?" vs
"Tell me about X"). Different intents about the same subject are NOT similar
("What is Python?" vs "How does Python work?").

Return JSON:
{
  "similar_question_exists": boolean,
  "similar_run_ids": ["run_id of every prior question that qualifies"],
  "explanation": "why the questions are or are not similar"
}

When several prior questions qualify, list all of them; the most recently created one is used.
Only use run ids that appear in the prior questions list."""

_NO_CANDIDATES_EXPLANATION = (
    "No prior questions matched any search strategy; this is a new question."
)


def _candidate_payload(memory: RetrievedMemory) -> dict[str, object]:
    return {
        "run_id": memory.run_id,
        "question": memory.question,
        "answer": memory.answer,
        "created_at": memory.created_at.isoformat(),
        "relevance_score": memory.relevance_score,
    }


class ExistenceChecker:
    """Decides whether the user already asked a similar question.

    Runs the tiered hybrid search, then asks the oracle to judge the candidates.
    Matched run details always come from the stored candidate, never from oracle text.
    """

    def __init__(
        self,
        *,
        oracle: TextOracle,
        search: HybridMemorySearch,
        settings: MemoriaSettings,
    ) -> None:
        self._oracle = oracle
        self._search = search
        self._settings = settings

    async def check(self, *, user_id: str, question: str) -> ExistenceCheck:
        phrase = await self._oracle.complete_structured(
            name="search_phrase",
            instructions=_SEARCH_PHRASE_INSTRUCTIONS,
            input=question,
            output_type=SearchPhraseOutput,
            settings=self._settings.memory_decision,
        )
        search_query = phrase.search_query.strip()

        result = await self._search.find_candidates(
            user_id=user_id,
            question=question,
            search_phrase=search_query,
        )
        if not result.candidates:
            return ExistenceCheck(
                similar_question_exists=False,
                search_query=search_query,
                explanation=_NO_CANDIDATES_EXPLANATION,
                search_method=result.search_method,
                candidates_considered=0,
            )

        judgment = await self._judge(question=question, search_query=search_query, result=result)
        if not judgment.similar_question_exists:
            return ExistenceCheck(
                similar_question_exists=False,
                search_query=search_query,
                explanation=judgment.explanation,
                search_method=result.search_method,
                similarity_score=result.similarity_score,
                candidates_considered=len(result.candidates),
            )

        match = self._select_most_recent(judgment, result.candidates)
        logger.info(
            "Similar question found for user %s: run %s via %s search",
            user_id,
            match.run_id,
            result.search_method,
        )
        return ExistenceCheck(
            similar_question_exists=True,
            existing_run_id=match.run_id,
            existing_question=match.question,
            existing_answer=match.answer,
            existing_created_at=match.created_at,
            existing_answer_source=match.answer_source,
            search_query=search_query,
            explanation=judgment.explanation,
            search_method=result.search_method,
            similarity_score=match.relevance_score if result.search_method == "vector" else None,
            candidates_considered=len(result.candidates),
        )

    async def _judge(
        self,
        *,
        question: str,
        search_query: str,
        result: TieredSearchResult,
    ) -> SimilarityJudgment:
        instructions = _JUDGMENT_INSTRUCTIONS
        if result.search_method == "vector":
            instructions += (
                "\n\nThese candidates came from semantic vector search, which already indicates "
                "high similarity. Take the relevance_score into account."
            )
        payload = {
            "current_question": question,
            "prior_questions": [_candidate_payload(memory) for memory in result.candidates],
            "search_query": search_query,
            "search_method": result.search_method,
        }
        return await self._oracle.complete_structured(
            name="similarity_judgment",
            instructions=instructions,
            input=json.dumps(payload),
            output_type=SimilarityJudgment,
            settings=self._settings.memory_decision,
        )

    @staticmethod
    def _select_most_recent(
        judgment: SimilarityJudgment,
        candidates: list[RetrievedMemory],
    ) -> RetrievedMemory:
        by_id = {memory.run_id: memory for memory in candidates}
        if not judgment.similar_run_ids:
            raise MemoriaOracleError("similarity judgment reported a match without any run ids")

        unknown = [run_id for run_id in judgment.similar_run_ids if run_id not in by_id]
        if unknown:
            raise MemoriaOracleError(
                f"similarity judgment referenced unknown run ids: {', '.join(unknown)}"
            )

        qualifying = [by_id[run_id] for run_id in judgment.similar_run_ids]
        return max(qualifying, key=lambda memory: memory.created_at)
