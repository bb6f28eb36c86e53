from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from memoria.config import MemoriaSettings
from memoria.errors import MemoriaOracleError
from memoria.repositories.run_repository import RunRepository
from memoria.schemas.agent import (
    AmbiguousReference,
    DependencyDecision,
    ExistenceCheck,
    PronounResolution,
    ResolvedEntity,
    RetrievedMemory,
)
from memoria.schemas.oracle import (
    CandidateReferent,
    DependencyDecisionOutput,
    PronounResolutionOutput,
)
from memoria.services.oracle import TextOracle
from memoria.services.reference_detection import ReferenceDetection, detect_pronouns

logger = logging.getLogger(__name__)

_INSTRUCTIONS = """You are a memory dependency analyzer.
Decide whether prior memory is REQUIRED to answer the current question correctly. This is
separate from whether a similar question exists: a question can have been asked before yet be
self-contained, or be new yet depend on earlier context (a follow-up or a reference).

Reference resolution is MANDATORY. If the question contains pronouns (he, she, it, they, him,
her, them, his, hers, their, theirs), demonstratives (this, that, these, those), place words
(there, here) or implicit references ("the company", "the project", "the same", ...):
- identify every one of them and set resolution_attempted=true;
- resolve each one using the recent history, where every item carries an explicit
  recency_rank (0 = the user's immediately previous question, higher = older);
- ALWAYS prefer an entity from recency_rank 0 over any older entity; only look at older items
  when rank 0 contains no plausible referent;
- report in candidate_referents every plausible entity you considered for each reference,
  with its recency_rank and your confidence;
- tag each resolved entity with the recency_rank it came from;
- mark resolved=false only if no history item contains a plausible referent.

Return JSON:
{
  "requires_memory": boolean,
  "reason": "why memory is or is not required for reasoning",
  "context_needed": ["specific prior context needed, if any"],
  "pronoun_resolution": {
    "has_pronouns": boolean,
    "pronouns_found": ["..."],
    "resolution_attempted": boolean,
    "resolved": boolean,
    "resolved_entities": [
      {"pronoun": "...", "resolved_to": "...", "confidence": 0.0-1.0, "recency_rank": 0}
    ],
    "candidate_referents": [
      {"pronoun": "...", "entity": "...", "recency_rank": 0, "confidence": 0.0-1.0}
    ],
    "explanation": "how the references were resolved, or why they could not be"
  }
}

Example: history rank 0 "Who is Elon Musk?", rank 5 "Who is Tim Cook?"; question
"How old is he?" -> "he" resolves to "Elon Musk", requires_memory=true."""


@dataclass(frozen=True)
class RankedHistoryItem:
    recency_rank: int
    run_id: str
    question: str
    answer: str
    created_at: datetime

    def to_memory(self) -> RetrievedMemory:
        return RetrievedMemory(
            run_id=self.run_id,
            question=self.question,
            answer=self.answer,
            created_at=self.created_at,
        )


@dataclass(frozen=True)
class DependencyAssessment:
    decision: DependencyDecision
    history: list[RankedHistoryItem]


def rank_history(memories: list[RetrievedMemory]) -> list[RankedHistoryItem]:
    """Order history newest first and attach an explicit recency rank (0 = newest)."""
    ordered = sorted(memories, key=lambda memory: memory.created_at, reverse=True)
    return [
        RankedHistoryItem(
            recency_rank=rank,
            run_id=memory.run_id,
            question=memory.question,
            answer=memory.answer,
            created_at=memory.created_at,
        )
        for rank, memory in enumerate(ordered)
    ]


def _key(value: str) -> str:
    return " ".join(value.lower().split())


def _merge_references(reported: list[str], detected: list[str]) -> list[str]:
    merged: list[str] = []
    seen: set[str] = set()
    for reference in [*reported, *detected]:
        key = _key(reference)
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append(reference)
    return merged


def apply_recency_rule(
    output: PronounResolutionOutput,
    detection: ReferenceDetection,
    *,
    history_size: int,
) -> PronounResolution:
    """Reconcile the oracle's resolution with local detection and the recency rule.

    For each reference, the candidates with the smallest recency rank win. One distinct
    entity at that rank replaces whatever the oracle chose; two or more make the
    reference ambiguous, and it is reported instead of guessed.
    """
    for rank in [c.recency_rank for c in output.candidate_referents] + [
        e.recency_rank for e in output.resolved_entities if e.recency_rank is not None
    ]:
        if rank >= history_size:
            raise MemoriaOracleError(
                f"dependency decision referenced recency rank {rank} "
                f"but only {history_size} history item(s) exist"
            )

    entities: dict[str, ResolvedEntity] = {}
    for entity in output.resolved_entities:
        entities.setdefault(_key(entity.pronoun), entity)

    grouped: dict[str, list[CandidateReferent]] = {}
    for candidate in output.candidate_referents:
        grouped.setdefault(_key(candidate.pronoun), []).append(candidate)
    # A ranked resolution competes with the listed candidates for the nearest rank.
    for entity in output.resolved_entities:
        if entity.recency_rank is None:
            continue
        grouped.setdefault(_key(entity.pronoun), []).append(
            CandidateReferent(
                pronoun=entity.pronoun,
                entity=entity.resolved_to,
                recency_rank=entity.recency_rank,
                confidence=entity.confidence,
            )
        )

    ambiguous: list[AmbiguousReference] = []
    applied = False
    for key, candidates in grouped.items():
        nearest = min(candidate.recency_rank for candidate in candidates)
        winners: dict[str, CandidateReferent] = {}
        for candidate in candidates:
            if candidate.recency_rank == nearest:
                winners.setdefault(_key(candidate.entity), candidate)

        if len(winners) > 1:
            entities.pop(key, None)
            ambiguous.append(
                AmbiguousReference(
                    pronoun=candidates[0].pronoun,
                    candidates=[candidate.entity for candidate in winners.values()],
                )
            )
            continue

        winner = next(iter(winners.values()))
        current = entities.get(key)
        if (
            current is not None
            and _key(current.resolved_to) == _key(winner.entity)
            and current.recency_rank == winner.recency_rank
        ):
            continue
        if current is not None and _key(current.resolved_to) != _key(winner.entity):
            logger.info(
                "Recency rule replaced %r -> %r with %r from rank %d",
                current.pronoun,
                current.resolved_to,
                winner.entity,
                winner.recency_rank,
            )
        entities[key] = ResolvedEntity(
            pronoun=current.pronoun if current is not None else winner.pronoun,
            resolved_to=winner.entity,
            confidence=winner.confidence,
            recency_rank=winner.recency_rank,
        )
        applied = True

    resolved_entities = list(entities.values())
    if ambiguous:
        resolved = False
    else:
        resolved = output.resolved or (applied and bool(resolved_entities))

    explanation = output.explanation.strip()
    for reference in ambiguous:
        explanation += (
            f" Ambiguous reference {reference.pronoun!r}: equally recent candidates "
            f"{', '.join(reference.candidates)}."
        )
    pronouns_found = _merge_references(output.pronouns_found, detection.pronouns_found)
    if len(pronouns_found) > len(_merge_references(output.pronouns_found, [])):
        explanation += f" Local detection: {detection.explanation}."

    return PronounResolution(
        has_pronouns=output.has_pronouns or detection.has_pronouns,
        pronouns_found=pronouns_found,
        resolution_attempted=output.resolution_attempted,
        resolved=resolved,
        resolved_entities=resolved_entities,
        explanation=explanation.strip(),
        ambiguous_references=ambiguous,
    )


class DependencyDecider:
    """Decides whether prior context is required and resolves references against history."""

    def __init__(
        self,
        *,
        oracle: TextOracle,
        repository: RunRepository,
        settings: MemoriaSettings,
    ) -> None:
        self._oracle = oracle
        self._repository = repository
        self._settings = settings

    async def decide(
        self,
        *,
        user_id: str,
        question: str,
        existence_check: ExistenceCheck,
        plan_requires_memory: bool,
    ) -> DependencyAssessment:
        history = rank_history(
            self._repository.list_recent_for_user(user_id, self._settings.history_window)
        )
        detection = detect_pronouns(question)

        if existence_check.similar_question_exists:
            existence_summary = f"Similar question found: {existence_check.existing_question!r}"
        else:
            existence_summary = "No similar question found"
        payload = {
            "current_question": question,
            "existence_check": existence_summary,
            "plan_hint": (
                "Memory might be relevant" if plan_requires_memory else "Memory likely not needed"
            ),
            "locally_detected_references": detection.pronouns_found,
            "recent_history": [
                {
                    "recency_rank": item.recency_rank,
                    "question": item.question,
                    "answer": item.answer,
                    "created_at": item.created_at.isoformat(),
                }
                for item in history
            ],
        }
        output = await self._oracle.complete_structured(
            name="memory_dependency",
            instructions=_INSTRUCTIONS,
            input=json.dumps(payload),
            output_type=DependencyDecisionOutput,
            settings=self._settings.memory_decision,
        )

        resolution = apply_recency_rule(
            output.pronoun_resolution,
            detection,
            history_size=len(history),
        )
        decision = DependencyDecision(
            requires_memory=output.requires_memory,
            reason=output.reason,
            context_needed=list(output.context_needed),
            pronoun_resolution=resolution,
        )
        return DependencyAssessment(decision=decision, history=history)
