from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from memoria import Memoria
from memoria.repositories.run_repository import InMemoryRunRepository
from memoria_backend.app import create_app

from tests.fakes import FakeEmbedder, FakeOracle, fast_settings


@pytest.fixture
def memoria(
    oracle: FakeOracle,
    embedder: FakeEmbedder,
    repository: InMemoryRunRepository,
) -> Memoria:
    return Memoria(
        settings=fast_settings(),
        repository=repository,
        oracle=oracle,
        embedder=embedder,
    )


@pytest.fixture
def app(memoria: Memoria) -> FastAPI:
    return create_app(service_name="memoria-test", memoria=memoria)


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://testserver",
    ) as async_client:
        yield async_client
