from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from crmsync.apps.api.deps import get_orchestrator
from crmsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from crmsync.apps.api.response import SuccessEnvelope, success_response
from crmsync.core.config import get_settings
from crmsync.persistence.db import ping
from crmsync.services.events.consumer import describe_consumer_group
from crmsync.services.sync.orchestrator import TenantSyncOrchestrator


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class EventStreamHealth(BaseModel):
    # ok | missing | unavailable
    status: str
    consumers: int | None = None
    pending: int | None = None
    lag: int | None = None


class HealthResponse(BaseModel):
    status: str
    database: str
    event_stream: EventStreamHealth | None = None


async def _database_status(orchestrator: TenantSyncOrchestrator) -> str:
    try:
        await ping(orchestrator.session_factory)
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health_database_unavailable", exc_info=exc)
        return "unavailable"
    return "ok"


async def _event_stream_status(redis: Any) -> EventStreamHealth:
    # Reports the assignment consumer group; consumers run as separate processes.
    settings = get_settings()
    try:
        state = await describe_consumer_group(
            redis, settings.org_assignment_stream, settings.org_assignment_group
        )
    except (RedisError, OSError) as exc:
        logger.warning("health_event_stream_unavailable", exc_info=exc)
        return EventStreamHealth(status="unavailable")
    return EventStreamHealth(
        status=state.status,
        consumers=state.consumers,
        pending=state.pending,
        lag=state.lag,
    )


@router.get(
    "/health",
    response_model=SuccessEnvelope[HealthResponse] | HealthResponse,
    response_model_exclude_none=True,
)
async def health(
    request: Request,
    response: Response,
    orchestrator: TenantSyncOrchestrator = Depends(get_orchestrator),
) -> dict:
    # 503 only when the database is down; a lagging stream degrades but stays up.
    database = await _database_status(orchestrator)
    redis = getattr(request.app.state, "redis", None)
    event_stream = await _event_stream_status(redis) if redis is not None else None

    healthy = database == "ok" and (event_stream is None or event_stream.status == "ok")
    if database != "ok":
        response.status_code = 503
    payload = HealthResponse(
        status="ok" if healthy else "degraded",
        database=database,
        event_stream=event_stream,
    )
    return success_response(request=request, data=payload)
