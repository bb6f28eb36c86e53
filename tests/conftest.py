from __future__ import annotations

import pytest
from memoria.repositories.run_repository import InMemoryRunRepository

from tests.fakes import FakeEmbedder, FakeOracle


@pytest.fixture(autouse=True)
def _clear_openai_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "OPENAI_API_KEY",
        "AZURE_OPENAI_API_KEY",
        "OPENAI_BASE_URL",
        "AZURE_OPENAI_BASE_URL",
        "MEMORIA_HISTORY_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def repository() -> InMemoryRunRepository:
    return InMemoryRunRepository()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()
