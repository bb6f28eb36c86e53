from memoria_backend.api.agent_runs import build_agent_runs_router
from memoria_backend.api.health import build_health_router

__all__ = [
    "build_agent_runs_router",
    "build_health_router",
]
