from __future__ import annotations

from memoria.config import MemoriaSettings
from memoria.schemas.agent import Plan
from memoria.services.oracle import TextOracle

_INSTRUCTIONS = """You are a planning assistant. Given a user's question, create an explicit plan
to answer it. The plan must include:
1. A clear objective statement.
2. A list of 2-4 steps (index starting at 1, action, reasoning).
3. Whether checking prior conversation memory might be helpful (requires_memory).

Consider requires_memory=true when the question references earlier discussion ("as I mentioned",
"like before", "again"), is a follow-up or clarification, or might benefit from prior context.
Consider requires_memory=false when the question is self-contained, a new topic, or a simple
factual question.

Return JSON:
{"objective": "...", "steps": [{"index": 1, "action": "...", "reasoning": "..."}],
 "requires_memory": boolean}"""


class Planner:
    def __init__(self, *, oracle: TextOracle, settings: MemoriaSettings) -> None:
        self._oracle = oracle
        self._settings = settings

    async def plan(self, question: str) -> Plan:
        return await self._oracle.complete_structured(
            name="planning",
            instructions=_INSTRUCTIONS,
            input=question,
            output_type=Plan,
            settings=self._settings.planning,
        )
