from __future__ import annotations

import uuid

from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class ApiError(BaseModel):
    """Error body shared by every non-2xx runs endpoint."""

    model_config = ConfigDict(extra="forbid")

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    recoverable: bool = Field(..., description="True when retrying the same request may succeed")
    user_id: str | None = None
    run_id: str | None = None
    request_id: str


class ApiErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: ApiError


def new_request_id() -> str:
    return uuid.uuid4().hex


def error_response(
    *,
    code: str,
    message: str,
    recoverable: bool,
    user_id: str | None = None,
    run_id: str | None = None,
) -> ApiErrorResponse:
    return ApiErrorResponse(
        error=ApiError(
            code=code,
            message=message,
            recoverable=recoverable,
            user_id=user_id,
            run_id=run_id,
            request_id=new_request_id(),
        )
    )


def error_json(status_code: int, payload: ApiErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=payload.model_dump(exclude_none=True))
