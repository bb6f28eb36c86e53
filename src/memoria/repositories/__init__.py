from memoria.repositories.run_repository import (
    TEXT_MATCH_SCORE,
    InMemoryRunRepository,
    JsonFileRunRepository,
    RunPage,
    RunRecord,
    RunRepository,
)

__all__ = [
    "TEXT_MATCH_SCORE",
    "InMemoryRunRepository",
    "JsonFileRunRepository",
    "RunPage",
    "RunRecord",
    "RunRepository",
]
