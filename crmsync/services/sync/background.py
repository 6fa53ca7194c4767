from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal, Protocol

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from crmsync.services.sync.status import SyncLease
from crmsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

BACKGROUND_SYNC_FUNCTION = "run_background_sync"


def _utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


class BackgroundSyncJob(BaseModel):
    # Handoff from the essential phase to whoever runs the background phase.
    tenant_id: str
    token: str
    lease_owner: str
    lease_acquired_at: datetime
    lease_expires_at: datetime
    essential_records: int
    started_at: datetime
    correlation_id: str | None = None

    @classmethod
    def for_lease(
        cls,
        lease: SyncLease,
        *,
        token: str,
        essential_records: int,
        started_at: datetime,
        correlation_id: str | None = None,
    ) -> "BackgroundSyncJob":
        return cls(
            tenant_id=lease.tenant_id,
            token=token,
            lease_owner=lease.owner,
            lease_acquired_at=lease.acquired_at,
            lease_expires_at=lease.expires_at,
            essential_records=essential_records,
            started_at=started_at,
            correlation_id=correlation_id,
        )

    @property
    def lease(self) -> SyncLease:
        return SyncLease(
            tenant_id=self.tenant_id,
            owner=self.lease_owner,
            acquired_at=self.lease_acquired_at,
            expires_at=self.lease_expires_at,
        )


BackgroundHandler = Callable[[BackgroundSyncJob], Awaitable[Any]]


class BackgroundDispatcher(Protocol):
    async def dispatch(self, job: BackgroundSyncJob, handler: BackgroundHandler) -> None: ...

    def state(self, tenant_id: str) -> "BackgroundTaskState | None": ...


@dataclass
class BackgroundTaskState:
    tenant_id: str
    status: Literal["running", "succeeded", "failed"]
    started_at: datetime
    correlation_id: str | None = None
    finished_at: datetime | None = None
    error: str | None = None
    result: Any = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "correlationId": self.correlation_id,
        }


class BackgroundSyncRunner:
    """Supervised in-process runner for background sync phases.

    One asyncio task per tenant; outcomes are recorded on a state object that can be
    inspected or awaited. Task failures are logged and recorded, never raised back to
    the caller that dispatched them.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._states: dict[str, BackgroundTaskState] = {}

    async def dispatch(self, job: BackgroundSyncJob, handler: BackgroundHandler) -> None:
        existing = self._tasks.get(job.tenant_id)
        if existing is not None and not existing.done():
            logger.warning("background_sync_already_running tenant_id=%s", job.tenant_id)
        state = BackgroundTaskState(
            tenant_id=job.tenant_id,
            status="running",
            started_at=_utc_now(),
            correlation_id=job.correlation_id,
        )
        self._states[job.tenant_id] = state
        self._tasks[job.tenant_id] = asyncio.create_task(
            self._run(job, handler, state), name=f"background-sync:{job.tenant_id}"
        )
        increment_counter("sync_background_started_total")

    async def _run(self, job: BackgroundSyncJob, handler: BackgroundHandler, state: BackgroundTaskState) -> None:
        try:
            state.result = await handler(job)
        except asyncio.CancelledError:
            state.status = "failed"
            state.error = "cancelled"
            raise
        except Exception as exc:  # noqa: BLE001 - background failures are recorded, not raised
            logger.exception("background_sync_failed tenant_id=%s", job.tenant_id)
            increment_counter("sync_background_failed_total")
            state.status = "failed"
            state.error = str(exc)
        else:
            state.status = "succeeded"
        finally:
            state.finished_at = _utc_now()

    def state(self, tenant_id: str) -> BackgroundTaskState | None:
        return self._states.get(tenant_id)

    async def wait(self, tenant_id: str, timeout: float | None = None) -> BackgroundTaskState | None:
        task = self._tasks.get(tenant_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return self._states.get(tenant_id)

    async def shutdown(self) -> None:
        # Cancel in-flight phases; their leases expire and get cleaned up.
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("background_sync_runner_stopped cancelled=%s", len(pending))


class ArqBackgroundDispatcher:
    """Queue-mode dispatcher; the background phase runs in the arq sync worker."""

    def __init__(self, *, redis_url: str, queue_name: str, redis: Any | None = None) -> None:
        self._redis_url = redis_url
        self._queue_name = queue_name
        self._redis = redis
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> Any:
        # Cache the Redis pool to avoid reconnecting on every enqueue.
        if self._redis is not None:
            return self._redis
        async with self._lock:
            if self._redis is None:
                self._redis = await create_pool(
                    RedisSettings.from_dsn(self._redis_url),
                    default_queue_name=self._queue_name,
                )
        return self._redis

    async def dispatch(self, job: BackgroundSyncJob, handler: BackgroundHandler) -> None:
        redis = await self._get_pool()
        # One job per lease; a duplicate enqueue for the same lease is a no-op in arq.
        queued = await redis.enqueue_job(
            BACKGROUND_SYNC_FUNCTION,
            job.model_dump(mode="json"),
            _job_id=f"background-sync:{job.tenant_id}:{job.lease_owner}",
            _queue_name=self._queue_name,
        )
        increment_counter("sync_background_enqueued_total")
        logger.info(
            "background_sync_enqueued tenant_id=%s job_id=%s",
            job.tenant_id,
            queued.job_id if queued else None,
        )

    def state(self, tenant_id: str) -> BackgroundTaskState | None:
        # Queue mode keeps no local task state; the status row is authoritative.
        return None

    async def aclose(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
