from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from memoria.config import MAX_REASONING_ITERATIONS, MemoriaSettings
from memoria.schemas.agent import Plan, RetrievedMemory
from memoria.schemas.oracle import ReasoningIterationOutput
from memoria.services.oracle import TextOracle

logger = logging.getLogger(__name__)

CONFIDENCE_TARGET = 0.8


class StopReason(enum.StrEnum):
    NO_MORE_REASONING = "no_more_reasoning"
    CONFIDENT = "confident"
    MAX_ITERATIONS = "max_iterations"


@dataclass(frozen=True)
class ReasoningOutcome:
    thoughts: list[str]
    final_confidence: float
    iterations: int
    stop_reason: StopReason


def stop_reason_for(
    iteration: int,
    output: ReasoningIterationOutput,
    *,
    max_iterations: int = MAX_REASONING_ITERATIONS,
) -> StopReason | None:
    """Return why the loop stops after ``iteration`` (1-based), or ``None`` to continue."""
    if not output.needs_more_reasoning:
        return StopReason.NO_MORE_REASONING
    if iteration >= 2 and output.confidence >= CONFIDENCE_TARGET:
        return StopReason.CONFIDENT
    if iteration >= max_iterations:
        return StopReason.MAX_ITERATIONS
    return None


def _format_plan(plan: Plan) -> str:
    steps = "; ".join(f"{step.index}. {step.action}" for step in plan.steps)
    return f"Plan:\n- Objective: {plan.objective}\n- Steps: {steps}"


def format_memories(memories: list[RetrievedMemory]) -> str:
    if not memories:
        return ""
    lines = [f'- Previous Q: "{m.question}"\n  Previous A: "{m.answer}"' for m in memories]
    return "Relevant prior context:\n" + "\n".join(lines)


def _instructions(iteration: int, max_iterations: int) -> str:
    return f"""You are a reasoning assistant performing iteration {iteration} of an analysis.
1. Analyze the question using the provided plan.
2. Consider any prior context or memories.
3. If resolved context is provided, treat it as the definitive subject of the question.
4. Decide whether you have enough information to answer confidently.

Return JSON:
{{"thoughts": "your reasoning for this iteration",
  "needs_more_reasoning": boolean,
  "confidence": number between 0 and 1}}

Be thorough but concise. Set needs_more_reasoning=false once confidence exceeds
{CONFIDENCE_TARGET} or from iteration 2 onward unless another pass clearly helps.
At most {max_iterations} iterations are allowed."""


class ReasoningLoop:
    """Bounded iterative refinement: at least one iteration, never more than the cap."""

    def __init__(self, *, oracle: TextOracle, settings: MemoriaSettings) -> None:
        self._oracle = oracle
        self._settings = settings

    async def run(
        self,
        *,
        question: str,
        plan: Plan,
        memories: list[RetrievedMemory],
        resolved_context: str | None = None,
    ) -> ReasoningOutcome:
        max_iterations = self._settings.max_reasoning_iterations
        thoughts: list[str] = []
        confidence = 0.0
        iterations = 0
        reason = StopReason.MAX_ITERATIONS

        for iteration in range(1, max_iterations + 1):
            output = await self._oracle.complete_structured(
                name="reasoning",
                instructions=_instructions(iteration, max_iterations),
                input=self._build_input(
                    question=question,
                    plan=plan,
                    memories=memories,
                    previous_thoughts=thoughts,
                    iteration=iteration,
                    resolved_context=resolved_context,
                ),
                output_type=ReasoningIterationOutput,
                settings=self._settings.reasoning,
            )
            thoughts.append(output.thoughts)
            confidence = output.confidence
            iterations = iteration

            stop = stop_reason_for(iteration, output, max_iterations=max_iterations)
            if stop is not None:
                reason = stop
                break

        logger.debug(
            "Reasoning stopped after %d iteration(s): %s (confidence %.2f)",
            iterations,
            reason,
            confidence,
        )
        return ReasoningOutcome(
            thoughts=thoughts,
            final_confidence=confidence,
            iterations=iterations,
            stop_reason=reason,
        )

    @staticmethod
    def _build_input(
        *,
        question: str,
        plan: Plan,
        memories: list[RetrievedMemory],
        previous_thoughts: list[str],
        iteration: int,
        resolved_context: str | None,
    ) -> str:
        sections = [f"Question: {question}", _format_plan(plan)]
        if resolved_context:
            sections.append(f"CRITICAL RESOLVED CONTEXT: {resolved_context}")
        memory_context = format_memories(memories)
        if memory_context:
            sections.append(memory_context)
        if previous_thoughts:
            sections.append(
                "Previous reasoning:\n"
                + "\n".join(
                    f"Iteration {number}: {thought}"
                    for number, thought in enumerate(previous_thoughts, start=1)
                )
            )
        sections.append(f"Perform reasoning iteration {iteration}.")
        return "\n\n".join(sections)
