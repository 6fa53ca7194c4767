from __future__ import annotations

import logging

from arq.connections import RedisSettings

from crmsync.core.config import get_settings
from crmsync.core.logging import configure_logging
from crmsync.services.sync.background import BackgroundSyncJob, BackgroundSyncRunner
from crmsync.services.sync.factory import build_orchestrator


logger = logging.getLogger(__name__)


async def run_background_sync(ctx, payload: dict) -> dict:
    # Parse and validate payloads in the worker to enforce the handoff contract.
    job = BackgroundSyncJob.model_validate(payload)
    orchestrator = ctx["orchestrator"]
    logger.info(
        "background_sync_job_started tenant_id=%s job_id=%s try=%s",
        job.tenant_id,
        ctx.get("job_id"),
        ctx.get("job_try", 1),
    )
    report = await orchestrator.finish_background(job)
    return {
        "tenantId": report.tenant_id,
        "records": report.total_records,
        "failedCollections": report.failed,
        "error": report.error,
    }


async def _startup(ctx) -> None:
    configure_logging()
    # The worker only runs background phases, so it never dispatches further work.
    ctx["orchestrator"] = build_orchestrator(background=BackgroundSyncRunner())


async def _shutdown(ctx) -> None:
    orchestrator = ctx.get("orchestrator")
    if orchestrator is not None:
        await orchestrator.aclose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sync_queue_name
    max_tries = settings.sync_worker_max_tries
    functions = [run_background_sync]
    on_startup = _startup
    on_shutdown = _shutdown
