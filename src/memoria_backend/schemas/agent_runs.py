from __future__ import annotations

from datetime import datetime

from memoria.repositories.run_repository import RunRecord
from memoria.schemas.agent import AnswerSource, RunState
from pydantic import BaseModel, ConfigDict, Field


class RunStreamRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    question: str = Field(..., min_length=1, max_length=2000)


class RunSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str
    question: str
    resolved_question: str | None = None
    answer: str
    answer_source: AnswerSource | None = None
    created_at: datetime

    @classmethod
    def from_record(cls, record: RunRecord) -> RunSummary:
        return cls(
            run_id=record.run_id,
            question=record.question,
            resolved_question=record.resolved_question,
            answer=record.answer,
            answer_source=record.state.answer_source,
            created_at=record.created_at,
        )


class RunListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    runs: list[RunSummary]
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    total_pages: int = Field(..., ge=0)


class RunDetailResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run: RunSummary
    state: RunState


class DeleteRunResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str
    deleted: bool


class DeleteAllRunsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deleted_count: int = Field(..., ge=0)
