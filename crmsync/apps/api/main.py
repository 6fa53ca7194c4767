from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from redis.asyncio import Redis

from crmsync.apps.api.errors import register_exception_handlers
from crmsync.apps.api.response import API_PREFIX, REQUEST_ID_HEADER
from crmsync.apps.api.routes.health import router as health_router
from crmsync.apps.api.routes.sync import router as sync_router
from crmsync.core.config import get_settings
from crmsync.core.logging import configure_logging
from crmsync.services.sync.orchestrator import TenantSyncOrchestrator


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Stop in-process background phases and close upstream connections.
    redis = getattr(app.state, "redis", None)
    if redis is not None:
        await redis.aclose()
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        return
    shutdown = getattr(orchestrator.background, "shutdown", None)
    if shutdown is not None:
        await shutdown()
    await orchestrator.aclose()


def create_app(orchestrator: TenantSyncOrchestrator | None = None, *, redis: Any | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=_lifespan)
    app.state.orchestrator = orchestrator
    if redis is None and orchestrator is None:
        # Production wiring; callers that inject an orchestrator bring their own Redis.
        redis = Redis.from_url(settings.redis_url)
    app.state.redis = redis

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    register_exception_handlers(app)

    app.include_router(sync_router, prefix=API_PREFIX)
    app.include_router(health_router, prefix=API_PREFIX)
    # Unversioned health for load balancers.
    app.include_router(health_router, include_in_schema=False)
    return app


app = create_app()
