from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from memoria.schemas.agent import ReasoningStep, ReasoningStepType, SearchAnalytics


class ReasoningStepEvent(BaseModel):
    """Emitted each time the orchestrator appends a reasoning step."""

    model_config = ConfigDict(extra="forbid")

    event: Literal["reasoning_step"] = "reasoning_step"
    index: int
    type: ReasoningStepType
    description: str
    timestamp: datetime
    search_analytics: SearchAnalytics | None = None

    @classmethod
    def from_step(cls, step: ReasoningStep) -> ReasoningStepEvent:
        return cls(
            index=step.index,
            type=step.type,
            description=step.description,
            timestamp=step.timestamp,
            search_analytics=step.search_analytics,
        )


class AnswerChunkEvent(BaseModel):
    """Emitted for every piece of the final answer, in order."""

    model_config = ConfigDict(extra="forbid")

    event: Literal["answer_chunk"] = "answer_chunk"
    text: str


class CompleteEvent(BaseModel):
    """Emitted once, after a completed run has been persisted."""

    model_config = ConfigDict(extra="forbid")

    event: Literal["complete"] = "complete"
    run_id: str


class ErrorEvent(BaseModel):
    """Emitted once when a run aborts."""

    model_config = ConfigDict(extra="forbid")

    event: Literal["error"] = "error"
    message: str


# Union type for all streaming events
StreamEvent = ReasoningStepEvent | AnswerChunkEvent | CompleteEvent | ErrorEvent

STREAM_EVENT_ADAPTER: TypeAdapter[StreamEvent] = TypeAdapter(
    Annotated[StreamEvent, Field(discriminator="event")]
)
