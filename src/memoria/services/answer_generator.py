from __future__ import annotations

from collections.abc import AsyncIterator

from memoria.config import MemoriaSettings
from memoria.errors import MemoriaOracleError
from memoria.schemas.agent import Plan, RetrievedMemory
from memoria.services.oracle import TextOracle
from memoria.services.reasoning_loop import format_memories

_INSTRUCTIONS = """You are a helpful assistant providing a clear, well-structured answer.
Based on the question, plan, any prior context and the reasoning provided, give a complete answer.

- Be direct and helpful.
- If resolved context is provided (what pronouns/references mean), it is the definitive subject
  of the question and overrides the literal pronoun text.
- Incorporate relevant prior context naturally.
- Do not mention the internal planning or reasoning process."""


class AnswerGenerator:
    def __init__(self, *, oracle: TextOracle, settings: MemoriaSettings) -> None:
        self._oracle = oracle
        self._settings = settings

    async def stream(
        self,
        *,
        question: str,
        plan: Plan,
        memories: list[RetrievedMemory],
        thoughts: list[str],
        resolved_context: str | None = None,
    ) -> AsyncIterator[str]:
        """Yield answer text chunks; the final answer is their concatenation."""
        emitted = False
        async for chunk in self._oracle.stream_text(
            name="answer",
            instructions=_INSTRUCTIONS,
            input=self._build_input(
                question=question,
                plan=plan,
                memories=memories,
                thoughts=thoughts,
                resolved_context=resolved_context,
            ),
            settings=self._settings.answer,
        ):
            if not chunk:
                continue
            emitted = True
            yield chunk

        if not emitted:
            raise MemoriaOracleError("answer generation produced no text")

    @staticmethod
    def _build_input(
        *,
        question: str,
        plan: Plan,
        memories: list[RetrievedMemory],
        thoughts: list[str],
        resolved_context: str | None,
    ) -> str:
        sections = [f"Question: {question}", f"Plan objective: {plan.objective}"]
        if resolved_context:
            sections.append(f"CRITICAL RESOLVED CONTEXT: {resolved_context}")
        memory_context = format_memories(memories)
        if memory_context:
            sections.append(memory_context)
        if thoughts:
            sections.append(
                "Reasoning performed:\n"
                + "\n".join(f"{number}. {thought}" for number, thought in enumerate(thoughts, 1))
            )
        sections.append("Please provide a helpful answer.")
        return "\n\n".join(sections)
