from __future__ import annotations

from pathlib import Path

import pytest
from memoria.repositories.run_repository import (
    TEXT_MATCH_SCORE,
    InMemoryRunRepository,
    JsonFileRunRepository,
)
from memoria.schemas.agent import RunState

from tests.fakes import FakeEmbedder, seed_run


def test_list_recent_returns_newest_first_and_respects_n(
    repository: InMemoryRunRepository,
) -> None:
    for index in range(4):
        seed_run(repository, None, user_id="u1", question=f"Question {index}", answer="A")

    recent = repository.list_recent_for_user("u1", 3)

    assert [memory.question for memory in recent] == ["Question 3", "Question 2", "Question 1"]


def test_reads_are_scoped_to_the_user(repository: InMemoryRunRepository) -> None:
    run_id = seed_run(repository, None, user_id="u1", question="Who is Ada?", answer="A")

    assert repository.list_recent_for_user("u2", 10) == []
    assert repository.search_text("u2", "ada", 5) == []
    assert repository.get_run_for_user(run_id, "u2") is None
    assert repository.delete_run(run_id, "u2") is False
    assert repository.get_run_for_user(run_id, "u1") is not None


def test_search_text_is_case_insensitive_substring_match(
    repository: InMemoryRunRepository,
) -> None:
    seed_run(repository, None, user_id="u1", question="What is PYTHON used for?", answer="A")
    seed_run(repository, None, user_id="u1", question="Who wrote Dune?", answer="B")

    matches = repository.search_text("u1", "python", 5)

    assert [memory.question for memory in matches] == ["What is PYTHON used for?"]
    assert matches[0].relevance_score == TEXT_MATCH_SCORE


def test_search_text_also_matches_resolved_question(repository: InMemoryRunRepository) -> None:
    seed_run(
        repository,
        None,
        user_id="u1",
        question="How old is he?",
        answer="53",
        resolved_question="How old is Elon Musk?",
    )

    assert len(repository.search_text("u1", "elon", 5)) == 1


def test_search_text_ignores_blank_query(repository: InMemoryRunRepository) -> None:
    seed_run(repository, None, user_id="u1", question="Anything", answer="A")

    assert repository.search_text("u1", "   ", 5) == []


def test_search_vector_applies_threshold_and_skips_unembedded_runs(
    repository: InMemoryRunRepository,
    embedder: FakeEmbedder,
) -> None:
    seed_run(repository, embedder, user_id="u1", question="What is Python?", answer="A")
    seed_run(repository, embedder, user_id="u1", question="Best pizza in Naples?", answer="B")
    seed_run(repository, None, user_id="u1", question="What is Python?", answer="C")

    matches = repository.search_vector("u1", embedder.vector("what is python"), 0.75, 5)

    assert [memory.answer for memory in matches] == ["A"]
    assert matches[0].relevance_score == pytest.approx(1.0)


def test_list_runs_paginates_and_filters(repository: InMemoryRunRepository) -> None:
    for index in range(5):
        seed_run(repository, None, user_id="u1", question=f"Python question {index}", answer="A")
    seed_run(repository, None, user_id="u1", question="Unrelated", answer="B")

    page = repository.list_runs_for_user("u1", page=2, limit=2, search="python")

    assert page.total == 5
    assert page.total_pages == 3
    assert [record.question for record in page.runs] == [
        "Python question 2",
        "Python question 1",
    ]


def test_delete_all_only_touches_one_user(repository: InMemoryRunRepository) -> None:
    seed_run(repository, None, user_id="u1", question="Q1", answer="A")
    seed_run(repository, None, user_id="u1", question="Q2", answer="A")
    seed_run(repository, None, user_id="u2", question="Q3", answer="A")

    assert repository.delete_all_for_user("u1") == 2
    assert repository.list_recent_for_user("u1", 10) == []
    assert len(repository.list_recent_for_user("u2", 10)) == 1


def test_insert_rejects_runs_without_answer(repository: InMemoryRunRepository) -> None:
    with pytest.raises(ValueError, match="answer"):
        repository.insert_run(RunState(user_id="u1", question="Q"))


def test_missing_embeddings_can_be_backfilled(
    repository: InMemoryRunRepository,
    embedder: FakeEmbedder,
) -> None:
    run_id = seed_run(repository, None, user_id="u1", question="What is Rust?", answer="A")

    assert [record.run_id for record in repository.list_runs_missing_embedding()] == [run_id]
    assert repository.set_embedding(
        run_id, embedding=embedder.vector("What is Rust?"), embedding_model=embedder.model
    )
    assert repository.list_runs_missing_embedding("u1") == []
    assert repository.set_embedding("missing", embedding=[1.0], embedding_model="m") is False


def test_json_file_repository_survives_reload(tmp_path: Path, embedder: FakeEmbedder) -> None:
    path = tmp_path / "nested" / "history.json"
    first = JsonFileRunRepository(path)
    old_id = seed_run(first, embedder, user_id="u1", question="Who is Ada?", answer="A")

    second = JsonFileRunRepository(path)
    new_id = seed_run(second, embedder, user_id="u1", question="Who is Grace?", answer="B")

    record = second.get_run_for_user(old_id, "u1")
    assert record is not None
    assert record.embedding == pytest.approx(embedder.vector("Who is Ada?"))
    assert record.state.answer == "A"
    assert [memory.run_id for memory in second.list_recent_for_user("u1", 5)] == [
        new_id,
        old_id,
    ]
    assert path.exists()
