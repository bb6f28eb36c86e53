import logging
import os
from typing import Final

import uvicorn
from fastapi import FastAPI
from memoria.client import Memoria
from memoria.repositories.run_repository import JsonFileRunRepository, RunRepository

from memoria_backend.api import build_agent_runs_router, build_health_router

DEFAULT_SERVICE_NAME: Final[str] = "memoria-backend"
DEFAULT_HOST: Final[str] = "0.0.0.0"
DEFAULT_PORT: Final[int] = 8000
SERVICE_VERSION: Final[str] = "0.1.0"

_HISTORY_PATH_ENV = "MEMORIA_HISTORY_PATH"
_LOG_LEVEL_ENV = "MEMORIA_LOG_LEVEL"


def _default_repository() -> RunRepository | None:
    configured_path = os.getenv(_HISTORY_PATH_ENV, "").strip()
    if not configured_path:
        return None
    return JsonFileRunRepository(configured_path)


def create_app(
    *,
    service_name: str = DEFAULT_SERVICE_NAME,
    memoria: Memoria | None = None,
) -> FastAPI:
    normalized_service_name = service_name.strip()
    if not normalized_service_name:
        raise ValueError("service_name must not be empty")

    app = FastAPI(
        title="memoria-backend",
        version=SERVICE_VERSION,
    )

    # The engine defers the API key check to the first run.
    app.state.memoria = memoria or Memoria(repository=_default_repository())

    app.include_router(
        build_health_router(service_name=normalized_service_name, version=SERVICE_VERSION)
    )
    app.include_router(build_agent_runs_router())
    return app


app = create_app()


def _read_server_host() -> str:
    configured_host = os.getenv("MEMORIA_BACKEND_HOST", DEFAULT_HOST).strip()
    if not configured_host:
        raise ValueError("MEMORIA_BACKEND_HOST must not be empty")

    return configured_host


def _read_server_port() -> int:
    configured_port = os.getenv("MEMORIA_BACKEND_PORT", str(DEFAULT_PORT)).strip()
    if not configured_port:
        raise ValueError("MEMORIA_BACKEND_PORT must not be empty")

    port = int(configured_port)
    if port <= 0:
        raise ValueError("MEMORIA_BACKEND_PORT must be greater than zero")

    return port


def main() -> None:
    logging.basicConfig(
        level=os.getenv(_LOG_LEVEL_ENV, "INFO").strip().upper() or "INFO",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "memoria_backend.app:app",
        host=_read_server_host(),
        port=_read_server_port(),
        reload=False,
    )
