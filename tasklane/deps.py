"""FastAPI dependencies that hand the external clients to route handlers.

The clients are built once in the application lifespan and stored on
``app.state``; tests swap them out through ``app.dependency_overrides``.
"""

from fastapi import Depends, Request
from sqlalchemy.engine import Engine

from tasklane.config import Settings, get_settings
from tasklane.database import get_engine
from tasklane.enhancement import EnhancementOrchestrator
from tasklane.errors import UpstreamFailure
from tasklane.identity import IdentityClient
from tasklane.llm import ModelClient
from tasklane.repository import TaskRepository


def get_identity_client(request: Request) -> IdentityClient:
    identity = getattr(request.app.state, "identity", None)
    if identity is None:
        raise UpstreamFailure(
            "Identity provider not configured. "
            "Set SUPABASE_URL and SUPABASE_ANON_KEY and restart the server.",
            status_code=503,
            error="Service Unavailable",
        )
    return identity


def get_model_client(request: Request) -> ModelClient:
    model = getattr(request.app.state, "model", None)
    if model is None:
        raise UpstreamFailure(
            "Model API client not initialized", status_code=503, error="Service Unavailable"
        )
    return model


def get_repository(engine: Engine = Depends(get_engine)) -> TaskRepository:
    return TaskRepository(engine)


def get_orchestrator(
    repository: TaskRepository = Depends(get_repository),
    model: ModelClient = Depends(get_model_client),
    settings: Settings = Depends(get_settings),
) -> EnhancementOrchestrator:
    return EnhancementOrchestrator(
        repository, model, timeout_seconds=settings.enhancement_timeout_seconds
    )
