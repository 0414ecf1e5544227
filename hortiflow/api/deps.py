"""HortiFlow API — dependency injection."""

from fastapi import Request

from hortiflow.core.engine import RulesEngine
from hortiflow.core.memory import Memory
from hortiflow.core.scheduler import EngineScheduler


def get_engine(request: Request) -> RulesEngine:
    """Get the rules engine from app state."""
    return request.app.state.engine


def get_scheduler(request: Request) -> EngineScheduler:
    return request.app.state.scheduler


def get_memory(request: Request) -> Memory:
    return request.app.state.memory
