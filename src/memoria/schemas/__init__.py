"""Public schema exports for the Memoria engine."""

from memoria.schemas.agent import (
    AmbiguousReference,
    AnswerSource,
    DependencyDecision,
    ExistenceCheck,
    MemoryDecision,
    Plan,
    PlanStep,
    PronounResolution,
    Question,
    ReasoningStep,
    ReasoningStepType,
    ResolvedEntity,
    RetrievedMemory,
    RunState,
    RunStatus,
    SearchAnalytics,
    SearchMethod,
)
from memoria.schemas.events import (
    STREAM_EVENT_ADAPTER,
    AnswerChunkEvent,
    CompleteEvent,
    ErrorEvent,
    ReasoningStepEvent,
    StreamEvent,
)
from memoria.schemas.oracle import (
    CandidateReferent,
    DependencyDecisionOutput,
    PronounResolutionOutput,
    ReasoningIterationOutput,
    SearchPhraseOutput,
    SimilarityJudgment,
)

__all__ = [
    "STREAM_EVENT_ADAPTER",
    "AmbiguousReference",
    "AnswerChunkEvent",
    "AnswerSource",
    "CandidateReferent",
    "CompleteEvent",
    "DependencyDecision",
    "DependencyDecisionOutput",
    "ErrorEvent",
    "ExistenceCheck",
    "MemoryDecision",
    "Plan",
    "PlanStep",
    "PronounResolution",
    "PronounResolutionOutput",
    "Question",
    "ReasoningIterationOutput",
    "ReasoningStep",
    "ReasoningStepEvent",
    "ReasoningStepType",
    "ResolvedEntity",
    "RetrievedMemory",
    "RunState",
    "RunStatus",
    "SearchAnalytics",
    "SearchMethod",
    "SearchPhraseOutput",
    "SimilarityJudgment",
    "StreamEvent",
]
