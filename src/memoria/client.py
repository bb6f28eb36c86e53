from __future__ import annotations

import asyncio
import logging
import os
import threading
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, TypeVar, cast

from memoria.config import MemoriaSettings, read_non_empty_env, resolve_openai_api_key
from memoria.errors import MemoriaNotFoundError
from memoria.repositories.run_repository import (
    InMemoryRunRepository,
    RunPage,
    RunRecord,
    RunRepository,
)
from memoria.schemas.agent import Question, RetrievedMemory, RunState
from memoria.schemas.events import CompleteEvent, ErrorEvent, StreamEvent
from memoria.services.agent_orchestrator import AgentOrchestrator, EventSink
from memoria.services.embeddings import Embedder, OpenAIEmbedder
from memoria.services.oracle import OpenAIAgentsOracle, TextOracle
from memoria.services.run_persistence import BackfillReport, RunPersistence

logger = logging.getLogger(__name__)

_OPENAI_API_KEY_ENV = "OPENAI_API_KEY"
_OPENAI_BASE_URL_ENV = "OPENAI_BASE_URL"
_AZURE_OPENAI_BASE_URL_ENV = "AZURE_OPENAI_BASE_URL"

_STREAM_DONE = object()


@dataclass(frozen=True)
class AskResult:
    run_id: str | None
    state: RunState
    events: list[StreamEvent]

    @property
    def answer(self) -> str | None:
        return self.state.answer

    @property
    def ok(self) -> bool:
        return self.run_id is not None


T = TypeVar("T")


def _run_awaitable[T](factory: Callable[[], Awaitable[T]]) -> T:
    """Run an awaitable factory from sync code.

    If an event loop is already running in the current thread (e.g., Jupyter),
    the coroutine is executed in a dedicated thread via asyncio.run.
    """

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(cast(Coroutine[Any, Any, T], factory()))

    if not loop.is_running():
        return loop.run_until_complete(factory())

    result: dict[str, T] = {}
    error: dict[str, BaseException] = {}

    def _target() -> None:
        try:
            result["value"] = asyncio.run(cast(Coroutine[Any, Any, T], factory()))
        except BaseException as exc:  # pragma: no cover
            error["exc"] = exc

    thread = threading.Thread(target=_target, daemon=True)
    thread.start()
    thread.join()

    if "exc" in error:
        raise error["exc"]

    if "value" not in result:  # pragma: no cover
        raise RuntimeError("Async execution failed without an exception")

    return result["value"]


class Memoria:
    """Memoria SDK facade.

    Wires the orchestrator to a run repository and exposes:

    - ``ask`` / ``aask`` / ``stream_run``: run the pipeline for one question, persist
      the completed run and report ``complete{run_id}``
    - history management: ``list_runs``, ``get_run``, ``delete_run``, ``delete_all``
    - maintenance: ``backfill_embeddings``, ``find_duplicate_question``

    Parameters
    ----------
    openai_api_key:
        If provided, sets ``OPENAI_API_KEY`` for the process (used by ``openai`` and
        ``openai-agents``). ``AZURE_OPENAI_API_KEY`` is accepted as an alias.
    openai_base_url:
        Optional OpenAI-compatible base URL override.
    settings:
        Engine settings. Defaults to ``MemoriaSettings.from_env()``.
    repository:
        Optional custom repository implementation. Defaults to in-memory.
    oracle / embedder:
        Optional text and embedding capabilities. Default to the OpenAI-backed ones,
        which need an API key.
    """

    def __init__(
        self,
        openai_api_key: str | None = None,
        *,
        openai_base_url: str | None = None,
        settings: MemoriaSettings | None = None,
        repository: RunRepository | None = None,
        oracle: TextOracle | None = None,
        embedder: Embedder | None = None,
    ) -> None:
        if openai_api_key is not None and openai_api_key.strip():
            os.environ[_OPENAI_API_KEY_ENV] = openai_api_key.strip()

        base_url = (openai_base_url or "").strip() or read_non_empty_env(
            _OPENAI_BASE_URL_ENV, _AZURE_OPENAI_BASE_URL_ENV
        )
        if base_url:
            os.environ[_OPENAI_BASE_URL_ENV] = base_url

        self._settings = settings or MemoriaSettings.from_env()
        self._repository: RunRepository = repository or InMemoryRunRepository()
        self._needs_openai_key = oracle is None or embedder is None
        self._oracle: TextOracle = oracle or OpenAIAgentsOracle()
        self._embedder: Embedder = embedder or OpenAIEmbedder(
            model=self._settings.embedding_model
        )
        self._orchestrator = AgentOrchestrator.build(
            oracle=self._oracle,
            embedder=self._embedder,
            repository=self._repository,
            settings=self._settings,
        )
        self._persistence = RunPersistence(repository=self._repository, embedder=self._embedder)

    @property
    def settings(self) -> MemoriaSettings:
        return self._settings

    @property
    def repository(self) -> RunRepository:
        return self._repository

    @property
    def orchestrator(self) -> AgentOrchestrator:
        return self._orchestrator

    @property
    def persistence(self) -> RunPersistence:
        return self._persistence

    def ensure_openai_key(self) -> None:
        """Fail with ``MemoriaConfigurationError`` when an OpenAI-backed capability has no key."""
        if self._needs_openai_key:
            os.environ[_OPENAI_API_KEY_ENV] = resolve_openai_api_key()

    async def _execute(
        self,
        *,
        user_id: str,
        question: str,
        event_sink: EventSink,
    ) -> tuple[RunState, str | None]:
        state = await self._orchestrator.run(
            user_id=user_id,
            question=question,
            event_sink=event_sink,
        )
        if state.status != "completed":
            return state, None

        try:
            run_id = await self._persistence.persist(state)
        except Exception as exc:
            logger.exception("Failed to persist run for user %s", user_id)
            await event_sink(ErrorEvent(message=f"Failed to persist run: {exc}"))
            return state, None

        await event_sink(CompleteEvent(run_id=run_id))
        return state, run_id

    async def aask(self, user_id: str, question: str) -> AskResult:
        """Run the pipeline for one question and collect every emitted event."""

        asked = Question(text=question, user_id=user_id)
        self.ensure_openai_key()
        events: list[StreamEvent] = []

        async def _collect(event: StreamEvent) -> None:
            events.append(event)

        state, run_id = await self._execute(
            user_id=asked.user_id, question=asked.text, event_sink=_collect
        )
        return AskResult(run_id=run_id, state=state, events=events)

    def ask(self, user_id: str, question: str) -> AskResult:
        return _run_awaitable(lambda: self.aask(user_id, question))

    async def stream_run(self, user_id: str, question: str) -> AsyncIterator[StreamEvent]:
        """Yield stream events in emission order while the run executes.

        The stream ends with ``complete`` only if the run completed and was stored.
        """

        asked = Question(text=question, user_id=user_id)
        self.ensure_openai_key()
        event_queue: asyncio.Queue[object] = asyncio.Queue()

        async def _enqueue(event: StreamEvent) -> None:
            await event_queue.put(event)

        async def _produce() -> None:
            try:
                await self._execute(
                    user_id=asked.user_id, question=asked.text, event_sink=_enqueue
                )
            finally:
                await event_queue.put(_STREAM_DONE)

        producer: asyncio.Task[None] = asyncio.create_task(_produce())
        try:
            while True:
                item = await event_queue.get()
                if item is _STREAM_DONE:
                    break
                yield cast(StreamEvent, item)
            await producer
        finally:
            if not producer.done():
                producer.cancel()
                with suppress(asyncio.CancelledError):
                    await producer

    def list_runs(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        search: str | None = None,
    ) -> RunPage:
        return self._repository.list_runs_for_user(user_id, page=page, limit=limit, search=search)

    def get_run(self, user_id: str, run_id: str) -> RunRecord:
        record = self._repository.get_run_for_user(run_id, user_id)
        if record is None:
            raise MemoriaNotFoundError(f"Run {run_id!r} not found")
        return record

    def delete_run(self, user_id: str, run_id: str) -> bool:
        return self._repository.delete_run(run_id, user_id)

    def delete_all(self, user_id: str) -> int:
        return self._repository.delete_all_for_user(user_id)

    async def abackfill_embeddings(self, *, user_id: str | None = None) -> BackfillReport:
        self.ensure_openai_key()
        return await self._persistence.backfill_embeddings(user_id=user_id)

    def backfill_embeddings(self, *, user_id: str | None = None) -> BackfillReport:
        """Embed stored runs that predate vector search (or lost their embedding)."""

        return _run_awaitable(lambda: self.abackfill_embeddings(user_id=user_id))

    async def afind_duplicate_question(
        self, user_id: str, question: str
    ) -> RetrievedMemory | None:
        self.ensure_openai_key()
        return await self._persistence.find_duplicate_question(user_id=user_id, question=question)

    def find_duplicate_question(self, user_id: str, question: str) -> RetrievedMemory | None:
        return _run_awaitable(lambda: self.afind_duplicate_question(user_id, question))
