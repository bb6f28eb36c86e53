"""Pydantic schemas for the memoria backend API."""

from memoria_backend.schemas.agent_runs import (
    DeleteAllRunsResponse,
    DeleteRunResponse,
    RunDetailResponse,
    RunListResponse,
    RunStreamRequest,
    RunSummary,
)
from memoria_backend.schemas.errors import ApiError, ApiErrorResponse, error_json, error_response

__all__ = [
    "ApiError",
    "ApiErrorResponse",
    "DeleteAllRunsResponse",
    "DeleteRunResponse",
    "RunDetailResponse",
    "RunListResponse",
    "RunStreamRequest",
    "RunSummary",
    "error_json",
    "error_response",
]
