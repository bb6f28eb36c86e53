from __future__ import annotations

import pytest
from memoria.errors import MemoriaOracleError
from memoria.repositories.run_repository import InMemoryRunRepository
from memoria.schemas.agent import AmbiguousReference, Plan, PronounResolution, ResolvedEntity
from memoria.schemas.events import (
    AnswerChunkEvent,
    ErrorEvent,
    ReasoningStepEvent,
    StreamEvent,
)
from memoria.schemas.oracle import (
    CandidateReferent,
    DependencyDecisionOutput,
    ReasoningIterationOutput,
    SearchPhraseOutput,
    SimilarityJudgment,
)
from memoria.services.agent_orchestrator import (
    AgentOrchestrator,
    clarification_answer,
    split_fixed,
)

from tests.fakes import (
    FakeEmbedder,
    FakeOracle,
    dependency,
    fast_settings,
    not_similar,
    phrase,
    plan,
    reasoning,
    resolution,
    seed_run,
    similar,
)


class _Recorder:
    def __init__(self) -> None:
        self.events: list[StreamEvent] = []

    async def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)

    def steps(self) -> list[ReasoningStepEvent]:
        return [event for event in self.events if isinstance(event, ReasoningStepEvent)]

    def answer(self) -> str:
        return "".join(e.text for e in self.events if isinstance(e, AnswerChunkEvent))


def _orchestrator(
    oracle: FakeOracle,
    repository: InMemoryRunRepository,
    embedder: FakeEmbedder,
    **settings: object,
) -> AgentOrchestrator:
    return AgentOrchestrator.build(
        oracle=oracle,
        embedder=embedder,
        repository=repository,
        settings=fast_settings(**settings),
    )


def test_split_fixed() -> None:
    assert split_fixed("abcdefg", 3) == ["abc", "def", "g"]
    assert split_fixed("", 3) == []


def test_clarification_answer_lists_candidates() -> None:
    text = clarification_answer(
        PronounResolution(
            has_pronouns=True,
            pronouns_found=["he"],
            resolution_attempted=True,
            resolved=False,
            ambiguous_references=[
                AmbiguousReference(pronoun="he", candidates=["Elon Musk", "Jeff Bezos"])
            ],
        )
    )

    assert '"he" could refer to Elon Musk or Jeff Bezos' in text


@pytest.mark.asyncio
async def test_new_question_is_answered_from_scratch(
    oracle: FakeOracle, repository: InMemoryRunRepository, embedder: FakeEmbedder
) -> None:
    oracle.queue(Plan, plan())
    oracle.queue(SearchPhraseOutput, phrase("python"))
    oracle.queue(DependencyDecisionOutput, dependency())
    oracle.queue(ReasoningIterationOutput, reasoning(confidence=0.9))
    oracle.chunks = ["Python is ", "a language."]
    recorder = _Recorder()

    state = await _orchestrator(oracle, repository, embedder).run(
        user_id="u1", question="What is Python?", event_sink=recorder
    )

    assert state.status == "completed"
    assert state.answer == "Python is a language."
    assert state.answer_source == "generated"
    assert state.reasoning_iterations == 1
    assert recorder.answer() == state.answer
    steps = recorder.steps()
    assert [step.index for step in steps] == list(range(1, len(steps) + 1))
    assert [step.type for step in steps][:2] == ["planning", "planning"]
    assert steps[-1].type == "generating_answer"
    existence_step = steps[3]
    assert existence_step.type == "memory_existence_check"
    assert existence_step.search_analytics is not None
    assert existence_step.search_analytics.results_count == 0
    assert state.memory_decision is not None
    assert not state.memory_decision.should_retrieve_memory
    assert state.memory_decision.search_query is None
    assert not any(step.type == "memory_retrieval" for step in steps)
    assert oracle.calls_named("similarity_judgment") == []


@pytest.mark.asyncio
async def test_repeated_question_reuses_the_stored_answer(
    oracle: FakeOracle, repository: InMemoryRunRepository, embedder: FakeEmbedder
) -> None:
    stored_answer = "Python is a high-level programming language created by Guido van Rossum."
    run_id = seed_run(
        repository, embedder, user_id="u1", question="What is Python?", answer=stored_answer
    )
    oracle.queue(Plan, plan())
    oracle.queue(SearchPhraseOutput, phrase("python"))
    oracle.queue(SimilarityJudgment, similar(run_id))
    oracle.queue(
        DependencyDecisionOutput,
        dependency(reason="Asked before; the existing answer can be reused"),
    )
    recorder = _Recorder()

    state = await _orchestrator(oracle, repository, embedder, reuse_chunk_size=10).run(
        user_id="u1", question="What is Python?", event_sink=recorder
    )

    assert state.status == "completed"
    assert state.answer == stored_answer
    assert state.answer_source == "reused"
    assert state.reused_run_id == run_id
    assert recorder.answer() == stored_answer
    chunks = [e.text for e in recorder.events if isinstance(e, AnswerChunkEvent)]
    assert all(len(chunk) <= 10 for chunk in chunks)
    assert any(step.type == "answer_reuse" for step in recorder.steps())
    assert oracle.calls_named("reasoning") == []
    assert oracle.calls_named("answer") == []


@pytest.mark.asyncio
async def test_stored_clarification_is_never_reused(
    oracle: FakeOracle, repository: InMemoryRunRepository, embedder: FakeEmbedder
) -> None:
    run_id = seed_run(
        repository,
        embedder,
        user_id="u1",
        question="What is Python?",
        answer="Which one do you mean: the language or the snake?",
        answer_source="clarification",
    )
    oracle.queue(Plan, plan())
    oracle.queue(SearchPhraseOutput, phrase("python"))
    oracle.queue(SimilarityJudgment, similar(run_id))
    oracle.queue(DependencyDecisionOutput, dependency(reason="Asked before"))
    oracle.queue(ReasoningIterationOutput, reasoning(confidence=0.9))
    oracle.chunks = ["Python is ", "a language."]
    recorder = _Recorder()

    state = await _orchestrator(oracle, repository, embedder).run(
        user_id="u1", question="What is Python?", event_sink=recorder
    )

    assert state.status == "completed"
    assert state.answer_source == "generated"
    assert state.reused_run_id is None
    assert state.answer == "Python is a language."
    assert state.memory_decision is not None
    existence = state.memory_decision.existence_check
    assert existence.existing_answer_source == "clarification"
    assert not any(step.type == "answer_reuse" for step in recorder.steps())
    assert run_id in [memory.run_id for memory in state.retrieved_memories]


@pytest.mark.asyncio
async def test_pronoun_is_resolved_to_the_most_recent_entity(
    oracle: FakeOracle, repository: InMemoryRunRepository, embedder: FakeEmbedder
) -> None:
    seed_run(repository, embedder, user_id="u1", question="Who is Tim Cook?", answer="Apple CEO")
    elon = seed_run(
        repository,
        embedder,
        user_id="u1",
        question="Who is Elon Musk?",
        answer="Elon Musk is the CEO of Tesla and SpaceX.",
    )
    oracle.queue(Plan, plan(requires_memory=True))
    oracle.queue(SearchPhraseOutput, phrase("age"))
    oracle.queue(SimilarityJudgment, not_similar("Asks for age, not identity"))
    oracle.queue(
        DependencyDecisionOutput,
        dependency(
            requires_memory=True,
            reason="Follow-up about the person from the previous question",
            pronoun_resolution=resolution(
                pronouns=["he"],
                entities=[
                    ResolvedEntity(pronoun="he", resolved_to="Tim Cook", confidence=0.6)
                ],
                candidates=[
                    CandidateReferent(
                        pronoun="he", entity="Elon Musk", recency_rank=0, confidence=0.95
                    ),
                    CandidateReferent(
                        pronoun="he", entity="Tim Cook", recency_rank=1, confidence=0.6
                    ),
                ],
            ),
        ),
    )
    oracle.queue(ReasoningIterationOutput, reasoning(confidence=0.9))
    oracle.chunks = ["He is 53."]
    recorder = _Recorder()

    state = await _orchestrator(oracle, repository, embedder).run(
        user_id="u1", question="How old is he?", event_sink=recorder
    )

    assert state.status == "completed"
    assert state.resolved_question == "How old is Elon Musk?"
    assert state.resolved_existence_check is not None
    assert state.answer_source == "generated"
    assert elon in {memory.run_id for memory in state.retrieved_memories}
    step_types = [step.type for step in recorder.steps()]
    assert "pronoun_resolution" in step_types
    assert "resolved_question_check" in step_types
    assert "memory_retrieval" in step_types
    assert '"he" refers to "Elon Musk"' in oracle.calls_named("reasoning")[0].input
    assert "Elon Musk" in oracle.calls_named("answer")[0].input


@pytest.mark.asyncio
async def test_resolved_question_can_reuse_an_earlier_answer(
    oracle: FakeOracle, repository: InMemoryRunRepository, embedder: FakeEmbedder
) -> None:
    age_run = seed_run(
        repository, embedder, user_id="u1", question="How old is Elon Musk?", answer="He is 53."
    )
    seed_run(repository, embedder, user_id="u1", question="Who is Elon Musk?", answer="A CEO")
    oracle.queue(Plan, plan(requires_memory=True))
    oracle.queue(SearchPhraseOutput, phrase("age"))
    oracle.queue(
        SimilarityJudgment,
        not_similar("The pronoun makes the subject unclear"),
        similar(age_run),
    )
    oracle.queue(
        DependencyDecisionOutput,
        dependency(
            requires_memory=True,
            reason="Follow-up about the previous person",
            pronoun_resolution=resolution(
                pronouns=["he"],
                entities=[
                    ResolvedEntity(
                        pronoun="he", resolved_to="Elon Musk", confidence=0.9, recency_rank=0
                    )
                ],
            ),
        ),
    )
    recorder = _Recorder()

    state = await _orchestrator(oracle, repository, embedder).run(
        user_id="u1", question="How old is he?", event_sink=recorder
    )

    assert state.answer_source == "reused"
    assert state.reused_run_id == age_run
    assert state.answer == "He is 53."
    assert oracle.calls_named("reasoning") == []


@pytest.mark.asyncio
async def test_ambiguous_reference_asks_for_clarification(
    oracle: FakeOracle, repository: InMemoryRunRepository, embedder: FakeEmbedder
) -> None:
    seed_run(
        repository,
        embedder,
        user_id="u1",
        question="Compare Elon Musk and Jeff Bezos",
        answer="Both founded space companies.",
    )
    oracle.queue(Plan, plan(requires_memory=True))
    oracle.queue(SearchPhraseOutput, phrase("age"))
    oracle.queue(
        DependencyDecisionOutput,
        dependency(
            requires_memory=True,
            reason="Follow-up about the previous comparison",
            pronoun_resolution=resolution(
                pronouns=["he"],
                entities=[ResolvedEntity(pronoun="he", resolved_to="Elon Musk", confidence=0.5)],
                candidates=[
                    CandidateReferent(
                        pronoun="he", entity="Elon Musk", recency_rank=0, confidence=0.5
                    ),
                    CandidateReferent(
                        pronoun="he", entity="Jeff Bezos", recency_rank=0, confidence=0.5
                    ),
                ],
            ),
        ),
    )
    recorder = _Recorder()

    state = await _orchestrator(oracle, repository, embedder).run(
        user_id="u1", question="How old is he?", event_sink=recorder
    )

    assert state.status == "completed"
    assert state.answer_source == "clarification"
    assert state.answer is not None
    assert "Elon Musk or Jeff Bezos" in state.answer
    assert state.resolved_question is None
    assert any(step.type == "clarification" for step in recorder.steps())
    assert oracle.calls_named("reasoning") == []


@pytest.mark.asyncio
async def test_stage_failure_ends_the_run_with_one_error_event(
    oracle: FakeOracle, repository: InMemoryRunRepository, embedder: FakeEmbedder
) -> None:
    oracle.queue(Plan, MemoriaOracleError("planning call failed: boom"))
    recorder = _Recorder()

    state = await _orchestrator(oracle, repository, embedder).run(
        user_id="u1", question="What is Python?", event_sink=recorder
    )

    assert state.status == "error"
    assert state.error == "planning call failed: boom"
    errors = [event for event in recorder.events if isinstance(event, ErrorEvent)]
    assert len(errors) == 1
    assert recorder.events[-1] == errors[0]


@pytest.mark.asyncio
async def test_unattempted_resolution_fails_validation(
    oracle: FakeOracle, repository: InMemoryRunRepository, embedder: FakeEmbedder
) -> None:
    oracle.queue(Plan, plan())
    oracle.queue(SearchPhraseOutput, phrase("age"))
    oracle.queue(DependencyDecisionOutput, dependency())
    recorder = _Recorder()

    state = await _orchestrator(oracle, repository, embedder).run(
        user_id="u1", question="How old is he?", event_sink=recorder
    )

    assert state.status == "error"
    assert state.error is not None
    assert "Memory decision validation failed" in state.error
    assert isinstance(recorder.events[-1], ErrorEvent)
    assert oracle.calls_named("reasoning") == []


@pytest.mark.asyncio
async def test_answer_stream_failure_is_reported(
    oracle: FakeOracle, repository: InMemoryRunRepository, embedder: FakeEmbedder
) -> None:
    oracle.queue(Plan, plan())
    oracle.queue(SearchPhraseOutput, phrase("python"))
    oracle.queue(DependencyDecisionOutput, dependency())
    oracle.queue(ReasoningIterationOutput, reasoning())
    oracle.chunks = ["Partial "]
    oracle.stream_error = MemoriaOracleError("answer stream failed: reset")
    recorder = _Recorder()

    state = await _orchestrator(oracle, repository, embedder).run(
        user_id="u1", question="What is Python?", event_sink=recorder
    )

    assert state.status == "error"
    assert state.answer is None
    assert isinstance(recorder.events[-1], ErrorEvent)
