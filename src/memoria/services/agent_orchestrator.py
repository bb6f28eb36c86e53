from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import anyio

from memoria.config import MemoriaSettings
from memoria.errors import MemoriaValidationError
from memoria.repositories.run_repository import RunRepository
from memoria.retrieval.hybrid_search import HybridMemorySearch
from memoria.schemas.agent import (
    AnswerSource,
    DependencyDecision,
    ExistenceCheck,
    MemoryDecision,
    PronounResolution,
    ReasoningStepType,
    RetrievedMemory,
    RunState,
    SearchAnalytics,
)
from memoria.schemas.events import AnswerChunkEvent, ErrorEvent, ReasoningStepEvent, StreamEvent
from memoria.services.answer_generator import AnswerGenerator
from memoria.services.decision_validator import (
    format_validation_result,
    validate_memory_decisions,
)
from memoria.services.dependency_decider import DependencyDecider
from memoria.services.embeddings import Embedder
from memoria.services.existence_checker import ExistenceChecker
from memoria.services.memory_retriever import MemoryRetriever
from memoria.services.oracle import TextOracle
from memoria.services.planner import Planner
from memoria.services.reasoning_loop import ReasoningLoop
from memoria.services.reference_detection import describe_resolutions, substitute_references

logger = logging.getLogger(__name__)

EventSink = Callable[[StreamEvent], Awaitable[None]]

_PREVIEW_LENGTH = 80


def _preview(text: str | None) -> str:
    text = text or ""
    if len(text) <= _PREVIEW_LENGTH:
        return text
    return text[:_PREVIEW_LENGTH] + "..."


def split_fixed(text: str, size: int) -> list[str]:
    return [text[start : start + size] for start in range(0, len(text), size)]


def clarification_answer(resolution: PronounResolution) -> str:
    parts: list[str] = []
    for reference in resolution.ambiguous_references:
        options = reference.candidates
        if len(options) > 1:
            choices = ", ".join(options[:-1]) + f" or {options[-1]}"
        else:
            choices = "".join(options)
        parts.append(f'"{reference.pronoun}" could refer to {choices}')
    return (
        "I'm not sure who or what you mean: "
        + "; ".join(parts)
        + ". Could you say which one you are asking about?"
    )


def _dependency_summary(existence: ExistenceCheck, decision: DependencyDecision) -> str:
    if existence.similar_question_exists and not decision.requires_memory:
        return (
            "This question was asked previously. Prior context is not required, "
            "so the existing answer will be reused."
        )
    if existence.similar_question_exists:
        return f"Using prior context from a previous question to answer: {decision.reason}"
    if not decision.requires_memory:
        return "No prior memory found. This is a self-contained question."
    return (
        f"No prior memory found. Answering from scratch with available context: {decision.reason}"
    )


def _reusable(check: ExistenceCheck) -> bool:
    # A clarification asked the user something; it never answers a later question.
    return (
        check.similar_question_exists
        and bool(check.existing_answer)
        and check.existing_answer_source != "clarification"
    )


def _analytics(check: ExistenceCheck) -> SearchAnalytics:
    return SearchAnalytics(
        search_method=check.search_method,
        similarity_score=check.similarity_score,
        results_count=check.candidates_considered,
    )


@dataclass
class _RunContext:
    """Per-run bookkeeping: the latest state snapshot and the event sink."""

    state: RunState
    sink: EventSink | None

    def advance(self, state: RunState) -> RunState:
        self.state = state
        return state


class AgentOrchestrator:
    """Runs the question pipeline and streams its progress.

    Stages run strictly in sequence and each one returns a new ``RunState``. A
    previously stored answer is reused verbatim when the existence and dependency
    decisions allow it; otherwise memory retrieval, the reasoning loop and answer
    generation run. Any stage failure ends the run with status ``error`` and
    exactly one error event.
    """

    def __init__(
        self,
        *,
        planner: Planner,
        existence_checker: ExistenceChecker,
        dependency_decider: DependencyDecider,
        memory_retriever: MemoryRetriever,
        reasoning_loop: ReasoningLoop,
        answer_generator: AnswerGenerator,
        settings: MemoriaSettings,
    ) -> None:
        self._planner = planner
        self._existence_checker = existence_checker
        self._dependency_decider = dependency_decider
        self._memory_retriever = memory_retriever
        self._reasoning_loop = reasoning_loop
        self._answer_generator = answer_generator
        self._settings = settings

    @classmethod
    def build(
        cls,
        *,
        oracle: TextOracle,
        embedder: Embedder,
        repository: RunRepository,
        settings: MemoriaSettings | None = None,
    ) -> AgentOrchestrator:
        settings = settings or MemoriaSettings()
        search = HybridMemorySearch(
            repository=repository,
            embedder=embedder,
            vector_threshold=settings.vector_threshold,
        )
        return cls(
            planner=Planner(oracle=oracle, settings=settings),
            existence_checker=ExistenceChecker(oracle=oracle, search=search, settings=settings),
            dependency_decider=DependencyDecider(
                oracle=oracle, repository=repository, settings=settings
            ),
            memory_retriever=MemoryRetriever(search=search),
            reasoning_loop=ReasoningLoop(oracle=oracle, settings=settings),
            answer_generator=AnswerGenerator(oracle=oracle, settings=settings),
            settings=settings,
        )

    async def run(
        self,
        *,
        user_id: str,
        question: str,
        event_sink: EventSink | None = None,
    ) -> RunState:
        ctx = _RunContext(state=RunState(user_id=user_id, question=question), sink=event_sink)
        try:
            return await self._run_pipeline(ctx)
        except Exception as exc:
            logger.exception("Agent run failed for user %s", user_id)
            message = str(exc) or exc.__class__.__name__
            failed = ctx.state.with_status("error").model_copy(update={"error": message})
            await self._send(event_sink, ErrorEvent(message=message))
            return failed

    async def _run_pipeline(self, ctx: _RunContext) -> RunState:
        user_id = ctx.state.user_id
        question = ctx.state.question

        ctx.advance(ctx.state.with_status("planning"))
        await self._step(ctx, "planning", "Analyzing your question and creating a plan...")
        plan = await self._planner.plan(question)
        ctx.advance(ctx.state.model_copy(update={"plan": plan}))
        await self._step(ctx, "planning", f"Plan created: {plan.objective}")

        await self._step(
            ctx, "memory_existence_check", "Checking if a similar question was asked before..."
        )
        existence = await self._existence_checker.check(user_id=user_id, question=question)
        if existence.similar_question_exists:
            description = f'Similar question found: "{_preview(existence.existing_question)}"'
        else:
            description = "No similar question found. This appears to be a new question."
        await self._step(
            ctx,
            "memory_existence_check",
            description,
            search_analytics=_analytics(existence),
        )

        await self._step(
            ctx,
            "memory_dependency_decision",
            "Deciding whether prior context is required for reasoning...",
        )
        assessment = await self._dependency_decider.decide(
            user_id=user_id,
            question=question,
            existence_check=existence,
            plan_requires_memory=plan.requires_memory,
        )
        decision = assessment.decision

        validation = validate_memory_decisions(existence, decision, question=question)
        if not validation.valid:
            logger.error("%s", format_validation_result(validation))
            raise MemoriaValidationError(validation)
        if validation.warnings:
            logger.warning("%s", format_validation_result(validation))

        memory_decision = MemoryDecision(
            existence_check=existence,
            dependency_decision=decision,
            should_retrieve_memory=decision.requires_memory,
            search_query=existence.search_query if decision.requires_memory else None,
        )
        ctx.advance(ctx.state.model_copy(update={"memory_decision": memory_decision}))

        resolution = decision.pronoun_resolution
        if resolution is not None and resolution.has_pronouns:
            await self._report_resolution(ctx, resolution)
        await self._step(
            ctx, "memory_dependency_decision", _dependency_summary(existence, decision)
        )

        if resolution is not None and resolution.is_ambiguous:
            await self._step(
                ctx,
                "clarification",
                "The reference is ambiguous between equally recent entities; "
                "asking for clarification instead of guessing.",
            )
            ctx.advance(ctx.state.with_status("executing"))
            return await self._finish_verbatim(
                ctx, clarification_answer(resolution), source="clarification"
            )

        entities = decision.resolved_entities()
        resolved_check: ExistenceCheck | None = None
        if entities:
            resolved_question = substitute_references(question, entities)
            if resolved_question != question:
                resolved_check = await self._check_resolved_question(ctx, resolved_question)

        reuse = self._reuse_candidate(existence, decision, resolved_check)
        if reuse is not None:
            ctx.advance(ctx.state.with_status("executing"))
            await self._step(
                ctx,
                "answer_reuse",
                f'Reusing the stored answer to "{_preview(reuse.existing_question)}".',
            )
            return await self._finish_verbatim(
                ctx,
                reuse.existing_answer or "",
                source="reused",
                reused_run_id=reuse.existing_run_id,
            )

        if existence.similar_question_exists and existence.existing_run_id:
            state = ctx.state
            match = RetrievedMemory(
                run_id=existence.existing_run_id,
                question=existence.existing_question or "",
                answer=existence.existing_answer or "",
                created_at=existence.existing_created_at or state.submitted_at,
                relevance_score=existence.similarity_score,
                answer_source=existence.existing_answer_source,
            )
            ctx.advance(state.with_memories([match]))

        if memory_decision.should_retrieve_memory and memory_decision.search_query:
            await self._step(
                ctx, "memory_retrieval", "Retrieving additional relevant context from memory..."
            )
            before = len(ctx.state.retrieved_memories)
            memories = await self._memory_retriever.retrieve(
                user_id=user_id,
                search_query=memory_decision.search_query,
                decision=decision,
                history=assessment.history,
            )
            state = ctx.advance(ctx.state.with_memories(memories))
            added = len(state.retrieved_memories) - before
            if added:
                description = f"Found {added} additional relevant question(s)"
            else:
                description = "No additional relevant context found"
            await self._step(ctx, "memory_retrieval", description)

        ctx.advance(ctx.state.with_status("executing"))
        await self._step(ctx, "reasoning", "Processing and reasoning about your question...")
        resolved_context = describe_resolutions(entities)
        memories_for_prompt = list(ctx.state.retrieved_memories)
        outcome = await self._reasoning_loop.run(
            question=question,
            plan=plan,
            memories=memories_for_prompt,
            resolved_context=resolved_context,
        )
        ctx.advance(
            ctx.state.model_copy(
                update={
                    "reasoning_thoughts": tuple(outcome.thoughts),
                    "reasoning_confidence": outcome.final_confidence,
                    "reasoning_iterations": outcome.iterations,
                }
            )
        )
        await self._step(
            ctx,
            "reasoning",
            f"Completed {outcome.iterations} reasoning iteration(s) with "
            f"{round(outcome.final_confidence * 100)}% confidence",
        )

        await self._step(ctx, "generating_answer", "Generating final answer...")
        chunks: list[str] = []
        async for chunk in self._answer_generator.stream(
            question=question,
            plan=plan,
            memories=memories_for_prompt,
            thoughts=outcome.thoughts,
            resolved_context=resolved_context,
        ):
            chunks.append(chunk)
            await self._send(ctx.sink, AnswerChunkEvent(text=chunk))

        state = ctx.state.model_copy(
            update={"answer": "".join(chunks), "answer_source": "generated"}
        )
        return ctx.advance(state.with_status("completed"))

    async def _check_resolved_question(
        self,
        ctx: _RunContext,
        resolved_question: str,
    ) -> ExistenceCheck:
        ctx.advance(ctx.state.model_copy(update={"resolved_question": resolved_question}))
        await self._step(
            ctx,
            "resolved_question_check",
            f'Checking memory for the resolved question: "{_preview(resolved_question)}"',
        )
        check = await self._existence_checker.check(
            user_id=ctx.state.user_id,
            question=resolved_question,
        )
        ctx.advance(ctx.state.model_copy(update={"resolved_existence_check": check}))
        if check.similar_question_exists:
            description = (
                "Resolved question matches a previous question: "
                f'"{_preview(check.existing_question)}"'
            )
        else:
            description = "No previous question matches the resolved question."
        await self._step(
            ctx,
            "resolved_question_check",
            description,
            search_analytics=_analytics(check),
        )
        return check

    @staticmethod
    def _reuse_candidate(
        existence: ExistenceCheck,
        decision: DependencyDecision,
        resolved_check: ExistenceCheck | None,
    ) -> ExistenceCheck | None:
        if _reusable(existence) and not decision.requires_memory:
            return existence
        if resolved_check is not None and _reusable(resolved_check):
            return resolved_check
        return None

    async def _report_resolution(self, ctx: _RunContext, resolution: PronounResolution) -> None:
        if resolution.resolved and resolution.resolved_entities:
            mapping = ", ".join(
                f'"{entity.pronoun}" -> "{entity.resolved_to}"'
                for entity in resolution.resolved_entities
            )
            await self._step(ctx, "pronoun_resolution", f"Resolved references: {mapping}")
        elif resolution.resolution_attempted:
            await self._step(
                ctx,
                "pronoun_resolution",
                f"Could not resolve all references: {resolution.explanation}",
            )

    async def _finish_verbatim(
        self,
        ctx: _RunContext,
        answer: str,
        *,
        source: AnswerSource,
        reused_run_id: str | None = None,
    ) -> RunState:
        for position, chunk in enumerate(split_fixed(answer, self._settings.reuse_chunk_size)):
            if position and self._settings.reuse_chunk_delay > 0:
                await anyio.sleep(self._settings.reuse_chunk_delay)
            await self._send(ctx.sink, AnswerChunkEvent(text=chunk))

        state = ctx.state.model_copy(
            update={"answer": answer, "answer_source": source, "reused_run_id": reused_run_id}
        )
        if source == "reused":
            logger.info("Reused answer from run %s for user %s", reused_run_id, state.user_id)
        return ctx.advance(state.with_status("completed"))

    async def _step(
        self,
        ctx: _RunContext,
        step_type: ReasoningStepType,
        description: str,
        *,
        search_analytics: SearchAnalytics | None = None,
    ) -> None:
        state, step = ctx.state.with_step(
            step_type, description, search_analytics=search_analytics
        )
        ctx.advance(state)
        await self._send(ctx.sink, ReasoningStepEvent.from_step(step))

    @staticmethod
    async def _send(sink: EventSink | None, event: StreamEvent) -> None:
        if sink is not None:
            await sink(event)
