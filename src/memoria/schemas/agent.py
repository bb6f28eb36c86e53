from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

RunStatus = Literal["pending", "planning", "executing", "completed", "error"]
SearchMethod = Literal["vector", "text"]
AnswerSource = Literal["generated", "reused", "clarification"]
ReasoningStepType = Literal[
    "planning",
    "memory_existence_check",
    "memory_dependency_decision",
    "pronoun_resolution",
    "resolved_question_check",
    "answer_reuse",
    "clarification",
    "memory_retrieval",
    "reasoning",
    "generating_answer",
]

_STATUS_ORDER: dict[RunStatus, int] = {
    "pending": 0,
    "planning": 1,
    "executing": 2,
    "completed": 3,
    "error": 3,
}


def _now() -> datetime:
    return datetime.now(tz=UTC)


class Question(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, str_strip_whitespace=True)

    text: str = Field(..., min_length=1, max_length=2000)
    user_id: str = Field(..., min_length=1)
    submitted_at: datetime = Field(default_factory=_now)


class PlanStep(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    index: int = Field(..., ge=1)
    action: str
    reasoning: str


class Plan(BaseModel):
    """Structured plan for one question. ``requires_memory`` is advisory only."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    objective: str = Field(..., min_length=1)
    steps: list[PlanStep]
    requires_memory: bool

    @model_validator(mode="after")
    def _check_step_order(self) -> Plan:
        previous = 0
        for step in self.steps:
            if step.index <= previous:
                raise ValueError("plan steps must be ordered with strictly increasing indexes")
            previous = step.index
        return self


class ExistenceCheck(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    similar_question_exists: bool
    existing_run_id: str | None = None
    existing_question: str | None = None
    existing_answer: str | None = None
    existing_created_at: datetime | None = None
    existing_answer_source: AnswerSource | None = None
    search_query: str
    explanation: str
    search_method: SearchMethod
    similarity_score: float | None = Field(default=None, ge=0.0, le=1.0)
    candidates_considered: int = Field(default=0, ge=0)


class ResolvedEntity(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    pronoun: str
    resolved_to: str
    # Range is enforced by the decision validator, not at parse time.
    confidence: float
    recency_rank: int | None = Field(default=None, ge=0)


class AmbiguousReference(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    pronoun: str
    candidates: list[str]


class PronounResolution(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    has_pronouns: bool
    pronouns_found: list[str] = Field(default_factory=list)
    resolution_attempted: bool
    resolved: bool
    resolved_entities: list[ResolvedEntity] = Field(default_factory=list)
    explanation: str = ""
    ambiguous_references: list[AmbiguousReference] = Field(default_factory=list)

    @property
    def is_ambiguous(self) -> bool:
        return bool(self.ambiguous_references)


class DependencyDecision(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    requires_memory: bool
    reason: str
    context_needed: list[str] = Field(default_factory=list)
    pronoun_resolution: PronounResolution | None = None

    def resolved_entities(self) -> list[ResolvedEntity]:
        resolution = self.pronoun_resolution
        if resolution is None or not resolution.resolved:
            return []
        return list(resolution.resolved_entities)


class MemoryDecision(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    existence_check: ExistenceCheck
    dependency_decision: DependencyDecision
    should_retrieve_memory: bool
    search_query: str | None = None


class RetrievedMemory(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    run_id: str
    question: str
    answer: str
    created_at: datetime
    relevance_score: float | None = None
    answer_source: AnswerSource | None = None


class SearchAnalytics(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    search_method: SearchMethod
    similarity_score: float | None = None
    results_count: int = Field(..., ge=0)


class ReasoningStep(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    index: int = Field(..., ge=1)
    type: ReasoningStepType
    description: str
    timestamp: datetime
    search_analytics: SearchAnalytics | None = None


class RunState(BaseModel):
    """Snapshot of one agent run.

    States are immutable values; every transition returns a new ``RunState``.
    Status only moves forward (pending -> planning -> executing -> completed | error).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str
    question: str
    submitted_at: datetime = Field(default_factory=_now)
    plan: Plan | None = None
    memory_decision: MemoryDecision | None = None
    resolved_question: str | None = None
    resolved_existence_check: ExistenceCheck | None = None
    retrieved_memories: tuple[RetrievedMemory, ...] = ()
    reasoning_steps: tuple[ReasoningStep, ...] = ()
    reasoning_thoughts: tuple[str, ...] = ()
    reasoning_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    reasoning_iterations: int = Field(default=0, ge=0, le=3)
    answer: str | None = None
    answer_source: AnswerSource | None = None
    reused_run_id: str | None = None
    status: RunStatus = "pending"
    error: str | None = None

    def with_status(self, status: RunStatus) -> RunState:
        if self.status in ("completed", "error"):
            raise ValueError(f"run already finished with status {self.status!r}")
        if _STATUS_ORDER[status] < _STATUS_ORDER[self.status]:
            raise ValueError(f"cannot move run status from {self.status!r} to {status!r}")
        return self.model_copy(update={"status": status})

    def with_step(
        self,
        step_type: ReasoningStepType,
        description: str,
        *,
        search_analytics: SearchAnalytics | None = None,
    ) -> tuple[RunState, ReasoningStep]:
        step = ReasoningStep(
            index=len(self.reasoning_steps) + 1,
            type=step_type,
            description=description,
            timestamp=_now(),
            search_analytics=search_analytics,
        )
        return self.model_copy(update={"reasoning_steps": (*self.reasoning_steps, step)}), step

    def with_memories(self, memories: list[RetrievedMemory]) -> RunState:
        known = {memory.run_id for memory in self.retrieved_memories}
        fresh: list[RetrievedMemory] = []
        for memory in memories:
            if memory.run_id in known:
                continue
            known.add(memory.run_id)
            fresh.append(memory)
        return self.model_copy(update={"retrieved_memories": (*self.retrieved_memories, *fresh)})

    @property
    def effective_question(self) -> str:
        return self.resolved_question or self.question
