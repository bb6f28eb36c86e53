"""Output contracts for structured text-generation calls.

Every structured oracle response is validated against one of these models;
a payload that does not match is rejected instead of being patched up.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from memoria.schemas.agent import ResolvedEntity


class SearchPhraseOutput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    search_query: str = Field(..., min_length=1)


class SimilarityJudgment(BaseModel):
    model_config = ConfigDict(extra="forbid")

    similar_question_exists: bool
    similar_run_ids: list[str] = Field(default_factory=list)
    explanation: str


class CandidateReferent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pronoun: str
    entity: str
    recency_rank: int = Field(..., ge=0)
    confidence: float


class PronounResolutionOutput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    has_pronouns: bool
    pronouns_found: list[str] = Field(default_factory=list)
    resolution_attempted: bool
    resolved: bool
    resolved_entities: list[ResolvedEntity] = Field(default_factory=list)
    candidate_referents: list[CandidateReferent] = Field(default_factory=list)
    explanation: str


class DependencyDecisionOutput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    requires_memory: bool
    reason: str
    context_needed: list[str] = Field(default_factory=list)
    pronoun_resolution: PronounResolutionOutput


class ReasoningIterationOutput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    thoughts: str
    needs_more_reasoning: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
