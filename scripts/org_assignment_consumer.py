from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket

from redis.asyncio import Redis

from crmsync.core.config import get_settings
from crmsync.core.logging import configure_logging
from crmsync.persistence.db import get_session_factory
from crmsync.services.events.consumer import OrganizationAssignmentConsumer
from crmsync.services.events.handlers import AssignmentEventHandler


logger = logging.getLogger(__name__)


async def _main() -> None:
    # Long-running consumer process; SIGINT/SIGTERM finish the current batch and exit.
    configure_logging()
    settings = get_settings()
    redis = Redis.from_url(settings.redis_url)
    consumer = OrganizationAssignmentConsumer(
        redis,
        AssignmentEventHandler(
            get_session_factory(),
            org_retry_delay_s=settings.org_assignment_org_retry_delay_s,
        ),
        stream=settings.org_assignment_stream,
        group=settings.org_assignment_group,
        consumer_name=f"{settings.org_assignment_consumer_prefix}-{socket.gethostname()}-{os.getpid()}",
        block_ms=settings.org_assignment_block_ms,
        count=settings.org_assignment_batch_size,
        error_backoff_s=settings.org_assignment_error_backoff_s,
        reclaim_idle_ms=settings.org_assignment_reclaim_idle_ms,
        reclaim_interval_s=settings.org_assignment_reclaim_interval_s,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await consumer.run_forever(stop_event)
    finally:
        await redis.aclose()
        logger.info("org_assignment_consumer_exited consumer=%s", consumer.consumer_name)


if __name__ == "__main__":
    asyncio.run(_main())
