from __future__ import annotations

import itertools
import math
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path

from pydantic import TypeAdapter

from memoria.retrieval.similarity import cosine_similarity
from memoria.schemas.agent import RetrievedMemory, RunState

# Text matches carry no real score.
TEXT_MATCH_SCORE = 0.5


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    user_id: str
    question: str
    resolved_question: str | None
    answer: str
    created_at: datetime
    sequence: int
    embedding: list[float] | None
    embedding_model: str | None
    state: RunState

    def to_memory(self, *, relevance_score: float | None = None) -> RetrievedMemory:
        return RetrievedMemory(
            run_id=self.run_id,
            question=self.question,
            answer=self.answer,
            created_at=self.created_at,
            relevance_score=relevance_score,
            answer_source=self.state.answer_source,
        )

    def matches_text(self, needle: str) -> bool:
        if needle in self.question.lower():
            return True
        return bool(self.resolved_question) and needle in self.resolved_question.lower()


@dataclass(frozen=True)
class RunPage:
    runs: list[RunRecord]
    total: int
    page: int
    total_pages: int


class RunRepository:
    """Repository interface for persisted agent runs.

    Every read and write is scoped to a single user id.
    """

    def list_recent_for_user(
        self, user_id: str, n: int
    ) -> list[RetrievedMemory]:  # pragma: no cover
        raise NotImplementedError

    def search_text(
        self, user_id: str, query: str, limit: int
    ) -> list[RetrievedMemory]:  # pragma: no cover
        raise NotImplementedError

    def search_vector(
        self,
        user_id: str,
        embedding: list[float],
        threshold: float,
        limit: int,
    ) -> list[RetrievedMemory]:  # pragma: no cover
        raise NotImplementedError

    def insert_run(
        self,
        state: RunState,
        *,
        embedding: list[float] | None = None,
        embedding_model: str | None = None,
    ) -> str:  # pragma: no cover
        raise NotImplementedError

    def get_run_for_user(self, run_id: str, user_id: str) -> RunRecord | None:  # pragma: no cover
        raise NotImplementedError

    def list_runs_for_user(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        search: str | None = None,
    ) -> RunPage:  # pragma: no cover
        raise NotImplementedError

    def delete_run(self, run_id: str, user_id: str) -> bool:  # pragma: no cover
        raise NotImplementedError

    def delete_all_for_user(self, user_id: str) -> int:  # pragma: no cover
        raise NotImplementedError

    def list_runs_missing_embedding(
        self, user_id: str | None = None
    ) -> list[RunRecord]:  # pragma: no cover
        raise NotImplementedError

    def set_embedding(
        self, run_id: str, *, embedding: list[float], embedding_model: str
    ) -> bool:  # pragma: no cover
        raise NotImplementedError


class InMemoryRunRepository(RunRepository):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._runs: dict[str, RunRecord] = {}
        self._sequence = itertools.count(1)

    def _user_runs_locked(self, user_id: str) -> list[RunRecord]:
        runs = [record for record in self._runs.values() if record.user_id == user_id]
        runs.sort(key=lambda record: (record.created_at, record.sequence), reverse=True)
        return runs

    def list_recent_for_user(self, user_id: str, n: int) -> list[RetrievedMemory]:
        with self._lock:
            runs = self._user_runs_locked(user_id)[: max(0, n)]
        return [record.to_memory() for record in runs]

    def search_text(self, user_id: str, query: str, limit: int) -> list[RetrievedMemory]:
        needle = query.strip().lower()
        if not needle:
            return []
        with self._lock:
            matches = [
                record
                for record in self._user_runs_locked(user_id)
                if record.matches_text(needle)
            ]
        return [
            record.to_memory(relevance_score=TEXT_MATCH_SCORE)
            for record in matches[: max(0, limit)]
        ]

    def search_vector(
        self,
        user_id: str,
        embedding: list[float],
        threshold: float,
        limit: int,
    ) -> list[RetrievedMemory]:
        with self._lock:
            runs = self._user_runs_locked(user_id)

        scored: list[tuple[float, RunRecord]] = []
        for record in runs:
            if not record.embedding:
                continue
            if len(record.embedding) != len(embedding):
                continue
            similarity = cosine_similarity(record.embedding, embedding)
            scored.append((similarity, record))

        # Most similar first; recency breaks ties.
        scored.sort(key=lambda pair: (-pair[0], -pair[1].created_at.timestamp(), -pair[1].sequence))
        results: list[RetrievedMemory] = []
        for similarity, record in scored[: max(0, limit)]:
            if similarity < threshold:
                continue
            results.append(record.to_memory(relevance_score=min(1.0, max(0.0, similarity))))
        return results

    def insert_run(
        self,
        state: RunState,
        *,
        embedding: list[float] | None = None,
        embedding_model: str | None = None,
    ) -> str:
        if state.answer is None:
            raise ValueError("Only runs with an answer can be stored")
        with self._lock:
            run_id = str(uuid.uuid4())
            self._runs[run_id] = RunRecord(
                run_id=run_id,
                user_id=state.user_id,
                question=state.question,
                resolved_question=state.resolved_question,
                answer=state.answer,
                created_at=datetime.now(UTC),
                sequence=next(self._sequence),
                embedding=list(embedding) if embedding else None,
                embedding_model=embedding_model,
                state=state,
            )
            self._after_write_locked()
            return run_id

    def get_run_for_user(self, run_id: str, user_id: str) -> RunRecord | None:
        with self._lock:
            record = self._runs.get(run_id)
        if record is None or record.user_id != user_id:
            return None
        return record

    def list_runs_for_user(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        search: str | None = None,
    ) -> RunPage:
        page = max(1, page)
        limit = max(1, limit)
        with self._lock:
            runs = self._user_runs_locked(user_id)
        needle = (search or "").strip().lower()
        if needle:
            runs = [record for record in runs if needle in record.question.lower()]
        total = len(runs)
        offset = (page - 1) * limit
        return RunPage(
            runs=runs[offset : offset + limit],
            total=total,
            page=page,
            total_pages=math.ceil(total / limit),
        )

    def delete_run(self, run_id: str, user_id: str) -> bool:
        with self._lock:
            record = self._runs.get(run_id)
            if record is None or record.user_id != user_id:
                return False
            del self._runs[run_id]
            self._after_write_locked()
            return True

    def delete_all_for_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [run_id for run_id, record in self._runs.items() if record.user_id == user_id]
            for run_id in doomed:
                del self._runs[run_id]
            if doomed:
                self._after_write_locked()
            return len(doomed)

    def list_runs_missing_embedding(self, user_id: str | None = None) -> list[RunRecord]:
        with self._lock:
            runs = [
                record
                for record in self._runs.values()
                if not record.embedding and (user_id is None or record.user_id == user_id)
            ]
        runs.sort(key=lambda record: (record.created_at, record.sequence))
        return runs

    def set_embedding(self, run_id: str, *, embedding: list[float], embedding_model: str) -> bool:
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                return False
            self._runs[run_id] = replace(
                record,
                embedding=list(embedding),
                embedding_model=embedding_model,
            )
            self._after_write_locked()
            return True

    def _after_write_locked(self) -> None:
        """Hook for subclasses that mirror the store somewhere durable."""


_RECORDS_ADAPTER: TypeAdapter[list[RunRecord]] = TypeAdapter(list[RunRecord])


class JsonFileRunRepository(InMemoryRunRepository):
    """In-memory repository mirrored to a JSON file after every write."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self._path = Path(path)
        if self._path.exists():
            records = _RECORDS_ADAPTER.validate_json(self._path.read_bytes())
            for record in records:
                self._runs[record.run_id] = record
            last = max((record.sequence for record in records), default=0)
            self._sequence = itertools.count(last + 1)

    @property
    def path(self) -> Path:
        return self._path

    def _after_write_locked(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        records = sorted(self._runs.values(), key=lambda record: record.sequence)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_bytes(_RECORDS_ADAPTER.dump_json(records, indent=2))
        tmp_path.replace(self._path)
