from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Protocol, TypeVar

from agents import Agent, AgentOutputSchema, Runner
from agents.model_settings import ModelSettings as AgentModelSettings
from openai.types.responses import ResponseTextDeltaEvent
from pydantic import BaseModel, ValidationError

from memoria.config import ModelSettings
from memoria.errors import MemoriaError, MemoriaOracleError

logger = logging.getLogger(__name__)

OutputT = TypeVar("OutputT", bound=BaseModel)


class TextOracle(Protocol):
    """Text-generation capability used by every pipeline stage."""

    async def complete_structured(
        self,
        *,
        name: str,
        instructions: str,
        input: str,
        output_type: type[OutputT],
        settings: ModelSettings,
    ) -> OutputT: ...

    def stream_text(
        self,
        *,
        name: str,
        instructions: str,
        input: str,
        settings: ModelSettings,
    ) -> AsyncIterator[str]: ...


class OpenAIAgentsOracle:
    """Text oracle backed by the OpenAI Agents SDK.

    Structured calls run a single-turn agent whose output type is the expected
    pydantic contract; the SDK rejects payloads that do not validate. Prose calls
    run the agent in streaming mode and forward text deltas as they arrive.
    """

    def __init__(self, *, max_turns: int = 1) -> None:
        self._max_turns = max(1, max_turns)

    @staticmethod
    def _model_settings(settings: ModelSettings) -> AgentModelSettings:
        return AgentModelSettings(temperature=settings.temperature)

    async def complete_structured(
        self,
        *,
        name: str,
        instructions: str,
        input: str,
        output_type: type[OutputT],
        settings: ModelSettings,
    ) -> OutputT:
        agent: Agent = Agent(
            name=f"memoria_{name}",
            instructions=instructions,
            model=settings.model,
            model_settings=self._model_settings(settings),
            output_type=AgentOutputSchema(output_type, strict_json_schema=False),
        )
        try:
            result = await Runner.run(agent, input=input, max_turns=self._max_turns)
        except Exception as exc:
            raise MemoriaOracleError(f"{name} call failed: {exc}") from exc

        output = result.final_output
        if isinstance(output, output_type):
            return output
        try:
            return output_type.model_validate(output)
        except ValidationError as exc:
            raise MemoriaOracleError(f"{name} returned an invalid payload: {exc}") from exc

    async def stream_text(
        self,
        *,
        name: str,
        instructions: str,
        input: str,
        settings: ModelSettings,
    ) -> AsyncIterator[str]:
        agent: Agent = Agent(
            name=f"memoria_{name}",
            instructions=instructions,
            model=settings.model,
            model_settings=self._model_settings(settings),
        )
        try:
            streamed = Runner.run_streamed(agent, input=input, max_turns=self._max_turns)
            async for event in streamed.stream_events():
                if event.type != "raw_response_event":
                    continue
                if isinstance(event.data, ResponseTextDeltaEvent) and event.data.delta:
                    yield event.data.delta
        except MemoriaError:
            raise
        except Exception as exc:
            logger.debug("Streaming call %s failed", name, exc_info=True)
            raise MemoriaOracleError(f"{name} stream failed: {exc}") from exc

