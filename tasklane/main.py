"""FastAPI application for the tasklane task manager backend."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from tasklane.config import Settings, get_settings
from tasklane.database import create_db_and_tables, get_engine
from tasklane.errors import register_exception_handlers
from tasklane.identity import IdentityClient
from tasklane.llm import ModelClient
from tasklane.ratelimit import RateLimiter, RateLimitMiddleware
from tasklane.routes.auth import router as auth_router
from tasklane.routes.tasks import router as tasks_router

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}


class SecurityHeadersMiddleware:
    """Adds fixed security headers as raw ASGI so streaming responses pass through untouched."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in SECURITY_HEADERS.items():
                    headers.setdefault(name, value)
            await send(message)

        await self.app(scope, receive, send_with_headers)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and the external clients on startup; close them on shutdown."""
    settings: Settings = app.state.settings
    create_db_and_tables(get_engine())

    app.state.model = ModelClient(settings.anthropic_api_key, settings.enhance_model)
    if settings.identity_configured:
        app.state.identity = IdentityClient(
            settings.supabase_url,
            settings.supabase_anon_key,
            timeout=settings.identity_timeout_seconds,
        )
        logger.info("Identity provider configured - auth and task routes enabled")
    else:
        app.state.identity = None
        logger.warning(
            "Identity provider not configured - set SUPABASE_URL and SUPABASE_ANON_KEY"
        )
    try:
        yield
    finally:
        if app.state.identity is not None:
            await app.state.identity.aclose()


def create_app(settings: Settings) -> FastAPI:
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title="Tasklane Task Manager", lifespan=lifespan)
    app.state.settings = settings

    rate_limiter = RateLimiter.from_settings(settings)
    app.state.rate_limiter = rate_limiter
    app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Cache-Control"],
    )

    app.add_middleware(SecurityHeadersMiddleware)
    register_exception_handlers(app, production=settings.is_production)
    app.include_router(auth_router)
    app.include_router(tasks_router)

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.environment,
        }

    @app.get("/")
    def index():
        return {
            "message": "Task Manager Backend API",
            "version": "0.1.0",
            "endpoints": {
                "auth": "/api/auth",
                "tasks": "/api/tasks",
                "health": "/health",
            },
        }

    return app


app = create_app(get_settings())
