from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Annotated, cast

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from memoria.client import Memoria
from memoria.errors import MemoriaConfigurationError, MemoriaNotFoundError
from memoria.schemas.events import ErrorEvent

from memoria_backend.schemas.agent_runs import (
    DeleteAllRunsResponse,
    DeleteRunResponse,
    RunDetailResponse,
    RunListResponse,
    RunStreamRequest,
    RunSummary,
)
from memoria_backend.schemas.errors import ApiErrorResponse, error_json, error_response

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def _get_memoria(request: Request) -> Memoria:
    memoria = getattr(request.app.state, "memoria", None)
    if memoria is None:  # pragma: no cover
        raise RuntimeError("Memoria engine not configured")
    return cast(Memoria, memoria)


MemoriaDependency = Annotated[Memoria, Depends(_get_memoria)]


def _run_not_found(user_id: str, run_id: str) -> JSONResponse:
    payload = error_response(
        code="run_not_found",
        message=f"Run {run_id} not found",
        recoverable=False,
        user_id=user_id,
        run_id=run_id,
    )
    return error_json(404, payload)


def build_agent_runs_router() -> APIRouter:
    router = APIRouter(prefix="/v1/users/{user_id}/runs", tags=["runs"])

    @router.post(
        "/stream",
        response_model=None,
        status_code=200,
        responses={
            503: {"model": ApiErrorResponse},
        },
        summary="Run the agent for one question and stream its events as NDJSON",
    )
    async def stream_run(
        user_id: str,
        request: RunStreamRequest,
        memoria: MemoriaDependency,
    ) -> Response:
        try:
            memoria.ensure_openai_key()
        except MemoriaConfigurationError as exc:
            payload = error_response(
                code="not_configured",
                message=str(exc),
                recoverable=False,
                user_id=user_id,
            )
            return error_json(503, payload)

        async def event_stream() -> AsyncIterator[str]:
            try:
                async for event in memoria.stream_run(user_id, request.question):
                    yield event.model_dump_json() + "\n"
            except Exception as exc:
                # Headers are already sent; report the failure in-band.
                logger.exception("Run stream failed for user %s", user_id)
                yield ErrorEvent(message=str(exc) or "Run failed").model_dump_json() + "\n"

        return StreamingResponse(
            event_stream(),
            media_type=NDJSON_MEDIA_TYPE,
            headers={
                "cache-control": "no-cache",
                "x-accel-buffering": "no",
            },
        )

    @router.get(
        "",
        response_model=RunListResponse,
        summary="List stored runs, newest first",
    )
    async def list_runs(
        user_id: str,
        memoria: MemoriaDependency,
        page: Annotated[int, Query(ge=1)] = 1,
        limit: Annotated[int, Query(ge=1, le=100)] = 10,
        search: Annotated[str | None, Query(max_length=200)] = None,
    ) -> RunListResponse:
        result = memoria.list_runs(user_id, page=page, limit=limit, search=search)
        return RunListResponse(
            runs=[RunSummary.from_record(record) for record in result.runs],
            total=result.total,
            page=result.page,
            total_pages=result.total_pages,
        )

    @router.get(
        "/{run_id}",
        response_model=RunDetailResponse,
        responses={
            404: {"model": ApiErrorResponse},
        },
        summary="Fetch one stored run with its full state",
    )
    async def get_run(
        user_id: str,
        run_id: str,
        memoria: MemoriaDependency,
    ) -> RunDetailResponse | JSONResponse:
        try:
            record = memoria.get_run(user_id, run_id)
        except MemoriaNotFoundError:
            return _run_not_found(user_id, run_id)
        return RunDetailResponse(run=RunSummary.from_record(record), state=record.state)

    @router.delete(
        "/{run_id}",
        response_model=DeleteRunResponse,
        responses={
            404: {"model": ApiErrorResponse},
        },
        summary="Delete one stored run",
    )
    async def delete_run(
        user_id: str,
        run_id: str,
        memoria: MemoriaDependency,
    ) -> DeleteRunResponse | JSONResponse:
        if not memoria.delete_run(user_id, run_id):
            return _run_not_found(user_id, run_id)
        return DeleteRunResponse(run_id=run_id, deleted=True)

    @router.delete(
        "",
        response_model=DeleteAllRunsResponse,
        summary="Delete every stored run for the user",
    )
    async def delete_all_runs(
        user_id: str,
        memoria: MemoriaDependency,
    ) -> DeleteAllRunsResponse:
        return DeleteAllRunsResponse(deleted_count=memoria.delete_all(user_id))

    return router
