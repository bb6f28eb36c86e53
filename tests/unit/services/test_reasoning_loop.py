from __future__ import annotations

import pytest
from memoria.errors import MemoriaOracleError
from memoria.schemas.agent import Plan
from memoria.schemas.oracle import ReasoningIterationOutput
from memoria.services.answer_generator import AnswerGenerator
from memoria.services.planner import Planner
from memoria.services.reasoning_loop import (
    ReasoningLoop,
    StopReason,
    stop_reason_for,
)

from tests.fakes import FakeOracle, fast_settings, plan, reasoning


def test_stop_reason_rules() -> None:
    assert stop_reason_for(1, reasoning(needs_more=False)) is StopReason.NO_MORE_REASONING
    assert stop_reason_for(1, reasoning(needs_more=True, confidence=0.95)) is None
    assert stop_reason_for(2, reasoning(needs_more=True, confidence=0.8)) is StopReason.CONFIDENT
    assert stop_reason_for(2, reasoning(needs_more=True, confidence=0.5)) is None
    assert (
        stop_reason_for(3, reasoning(needs_more=True, confidence=0.5))
        is StopReason.MAX_ITERATIONS
    )


@pytest.mark.asyncio
async def test_single_iteration_when_no_more_reasoning_is_needed(oracle: FakeOracle) -> None:
    oracle.queue(ReasoningIterationOutput, reasoning("Done", confidence=0.6))

    outcome = await ReasoningLoop(oracle=oracle, settings=fast_settings()).run(
        question="What is Python?", plan=plan(), memories=[]
    )

    assert outcome.iterations == 1
    assert outcome.thoughts == ["Done"]
    assert outcome.final_confidence == pytest.approx(0.6)
    assert outcome.stop_reason is StopReason.NO_MORE_REASONING


@pytest.mark.asyncio
async def test_iterations_are_capped(oracle: FakeOracle) -> None:
    oracle.queue(
        ReasoningIterationOutput, reasoning("Still unsure", needs_more=True, confidence=0.4)
    )

    outcome = await ReasoningLoop(oracle=oracle, settings=fast_settings()).run(
        question="What is Python?", plan=plan(), memories=[]
    )

    assert outcome.iterations == 3
    assert outcome.stop_reason is StopReason.MAX_ITERATIONS
    assert len(oracle.calls_named("reasoning")) == 3
    assert "Iteration 2: Still unsure" in oracle.calls[2].input


@pytest.mark.asyncio
async def test_confidence_stops_from_the_second_iteration(oracle: FakeOracle) -> None:
    oracle.queue(
        ReasoningIterationOutput,
        reasoning("First", needs_more=True, confidence=0.9),
        reasoning("Second", needs_more=True, confidence=0.85),
        reasoning("Third", needs_more=True, confidence=0.9),
    )

    outcome = await ReasoningLoop(oracle=oracle, settings=fast_settings()).run(
        question="What is Python?",
        plan=plan(),
        memories=[],
        resolved_context='"he" refers to "Elon Musk"',
    )

    assert outcome.thoughts == ["First", "Second"]
    assert outcome.stop_reason is StopReason.CONFIDENT
    assert "CRITICAL RESOLVED CONTEXT" in oracle.calls[0].input
    assert oracle.calls[0].settings.temperature == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_configured_iteration_cap(oracle: FakeOracle) -> None:
    oracle.queue(ReasoningIterationOutput, reasoning(needs_more=True, confidence=0.1))

    outcome = await ReasoningLoop(
        oracle=oracle, settings=fast_settings(max_reasoning_iterations=1)
    ).run(question="Q", plan=plan(), memories=[])

    assert outcome.iterations == 1
    assert outcome.stop_reason is StopReason.MAX_ITERATIONS


@pytest.mark.asyncio
async def test_answer_generator_streams_non_empty_chunks(oracle: FakeOracle) -> None:
    oracle.chunks = ["Python ", "", "is a language."]

    chunks = [
        chunk
        async for chunk in AnswerGenerator(oracle=oracle, settings=fast_settings()).stream(
            question="What is Python?", plan=plan(), memories=[], thoughts=["t1"]
        )
    ]

    assert chunks == ["Python ", "is a language."]
    assert oracle.calls[0].name == "answer"
    assert oracle.calls[0].settings.temperature == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_answer_generator_rejects_an_empty_answer(oracle: FakeOracle) -> None:
    oracle.chunks = []
    generator = AnswerGenerator(oracle=oracle, settings=fast_settings())

    with pytest.raises(MemoriaOracleError, match="no text"):
        async for _chunk in generator.stream(
            question="Q", plan=plan(), memories=[], thoughts=[]
        ):
            pass


@pytest.mark.asyncio
async def test_planner_uses_planning_temperature(oracle: FakeOracle) -> None:
    oracle.queue(Plan, plan(requires_memory=True))

    result = await Planner(oracle=oracle, settings=fast_settings()).plan("As I mentioned before?")

    assert result.requires_memory
    assert oracle.calls[0].settings.temperature == pytest.approx(0.3)
    assert oracle.calls[0].input == "As I mentioned before?"
