from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import func, or_, select, update

from crmsync.domain.models import Tenant, TenantSyncCollection, TenantSyncStatus
from crmsync.persistence.db import SessionFactory
from crmsync.persistence.upsert import insert_if_absent_statement, upsert_statement


logger = logging.getLogger(__name__)

SYNC_COLLECTIONS = (
    "tenant",
    "organizations",
    "roles",
    "users",
    "employee_assignments",
    "role_assignments",
    "credit_configs",
    "entity_credits",
)

STATUS_PENDING = "pending"
STATUS_SYNCING = "syncing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

PHASE_INDEPENDENT = "independent"
PHASE_DEPENDENT = "dependent"

FAIL_BACKOFF_BASE_S = 60
FAIL_BACKOFF_MAX_S = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def next_attempt_delay_s(attempt_count: int) -> int:
    # 60s, 120s, 240s ... capped at one hour.
    exponent = max(attempt_count, 1) - 1
    return min(FAIL_BACKOFF_BASE_S * (2 ** min(exponent, 16)), FAIL_BACKOFF_MAX_S)


@dataclass(frozen=True)
class SyncLease:
    tenant_id: str
    owner: str
    acquired_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class CollectionStatus:
    name: str
    status: str
    record_count: int
    error: str | None
    last_sync_at: datetime | None


@dataclass(frozen=True)
class CollectionFailure:
    name: str
    error: str | None
    last_sync_at: datetime | None


@dataclass(frozen=True)
class SyncStatusSnapshot:
    tenant_id: str
    status: str
    phase: str
    lock_owner: str | None
    lock_expires_at: datetime | None
    attempt_count: int
    last_attempt_at: datetime | None
    next_attempt_at: datetime | None
    error_message: str | None
    error_code: str | None
    total_records: int
    duration_ms: int
    completed_at: datetime | None
    collections: dict[str, CollectionStatus] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "status": self.status,
            "phase": self.phase,
            "lockedBy": self.lock_owner,
            "lockExpiresAt": _iso(self.lock_expires_at),
            "attemptCount": self.attempt_count,
            "lastAttemptAt": _iso(self.last_attempt_at),
            "nextAttemptAt": _iso(self.next_attempt_at),
            "errorMessage": self.error_message,
            "errorCode": self.error_code,
            "totalRecords": self.total_records,
            "durationMs": self.duration_ms,
            "completedAt": _iso(self.completed_at),
            "collections": {
                name: {
                    "status": item.status,
                    "recordCount": item.record_count,
                    "error": item.error,
                    "lastSyncAt": _iso(item.last_sync_at),
                }
                for name, item in self.collections.items()
            },
        }


@dataclass(frozen=True)
class StatusSummary:
    status: str
    count: int
    avg_duration_ms: int
    total_records: int


@dataclass(frozen=True)
class SyncStatistics:
    summary: list[StatusSummary]
    active_syncs: int
    stuck_syncs: int
    active_tenants: list[str]

    def to_payload(self) -> dict[str, Any]:
        return {
            "summary": {
                item.status: {
                    "count": item.count,
                    "avgDurationMs": item.avg_duration_ms,
                    "totalRecords": item.total_records,
                }
                for item in self.summary
            },
            "activeSyncs": self.active_syncs,
            "stuckSyncs": self.stuck_syncs,
            "activeTenants": self.active_tenants,
        }


def _snapshot(row: TenantSyncStatus, collections: list[TenantSyncCollection]) -> SyncStatusSnapshot:
    return SyncStatusSnapshot(
        tenant_id=row.tenant_id,
        status=row.status,
        phase=row.phase,
        lock_owner=row.lock_owner,
        lock_expires_at=row.lock_expires_at,
        attempt_count=row.attempt_count,
        last_attempt_at=row.last_attempt_at,
        next_attempt_at=row.next_attempt_at,
        error_message=row.error_message,
        error_code=row.error_code,
        total_records=row.total_records,
        duration_ms=row.duration_ms,
        completed_at=row.completed_at,
        collections={
            item.collection: CollectionStatus(
                name=item.collection,
                status=item.status,
                record_count=item.record_count,
                error=item.error,
                last_sync_at=item.last_sync_at,
            )
            for item in collections
        },
    )


class SyncStatusTracker:
    """Per-tenant sync control plane: status, lease lock and per-collection outcomes.

    The lease is a single conditional UPDATE on the tenant's status row, so two
    processes racing for the same tenant cannot both win. Timestamps are only
    compared inside SQL.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        lock_ttl_s: int = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lock_ttl_s = max(1, int(lock_ttl_s))
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def get(self, tenant_id: str) -> SyncStatusSnapshot | None:
        # Status row plus its per-collection outcomes.
        async with self._session_factory() as session:
            row = await session.get(TenantSyncStatus, tenant_id)
            if row is None:
                return None
            result = await session.execute(
                select(TenantSyncCollection)
                .where(TenantSyncCollection.tenant_id == tenant_id)
                .order_by(TenantSyncCollection.id)
            )
            return _snapshot(row, list(result.scalars().all()))

    async def needs_sync(self, tenant_id: str) -> bool:
        # A completed status only counts while the tenant's data still exists.
        async with self._session_factory() as session:
            status = await session.scalar(
                select(TenantSyncStatus.status).where(TenantSyncStatus.tenant_id == tenant_id)
            )
            if status != STATUS_COMPLETED:
                return True
            tenant_rows = await session.scalar(
                select(func.count()).select_from(Tenant).where(Tenant.tenant_id == tenant_id)
            )
            return not tenant_rows

    async def get_or_create(self, tenant_id: str) -> SyncStatusSnapshot:
        # Insert-if-absent tolerates concurrent first syncs for the same tenant.
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    insert_if_absent_statement(
                        session,
                        TenantSyncStatus,
                        {
                            "tenant_id": tenant_id,
                            "status": STATUS_PENDING,
                            "phase": PHASE_INDEPENDENT,
                            "attempt_count": 0,
                            "total_records": 0,
                            "duration_ms": 0,
                        },
                        conflict_columns=("tenant_id",),
                    )
                )
        snapshot = await self.get(tenant_id)
        if snapshot is None:
            raise RuntimeError(f"sync status row missing after insert: {tenant_id}")
        return snapshot

    async def acquire_lock(self, tenant_id: str, owner: str) -> SyncLease | None:
        # Free or expired locks only.
        now = self._now()
        expires_at = now + timedelta(seconds=self._lock_ttl_s)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TenantSyncStatus)
                    .where(
                        TenantSyncStatus.tenant_id == tenant_id,
                        or_(
                            TenantSyncStatus.lock_owner.is_(None),
                            TenantSyncStatus.lock_expires_at < now,
                        ),
                    )
                    .values(
                        lock_owner=owner,
                        lock_acquired_at=now,
                        lock_expires_at=expires_at,
                        status=STATUS_SYNCING,
                        phase=PHASE_INDEPENDENT,
                        attempt_count=TenantSyncStatus.attempt_count + 1,
                        last_attempt_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount != 1:
            logger.info("sync_lock_busy tenant_id=%s owner=%s", tenant_id, owner)
            return None
        logger.info("sync_lock_acquired tenant_id=%s owner=%s", tenant_id, owner)
        return SyncLease(tenant_id=tenant_id, owner=owner, acquired_at=now, expires_at=expires_at)

    async def release_lock(self, lease: SyncLease) -> bool:
        # Release only if this lease still owns the row to avoid clobbering a newer holder.
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TenantSyncStatus)
                    .where(
                        TenantSyncStatus.tenant_id == lease.tenant_id,
                        TenantSyncStatus.lock_owner == lease.owner,
                    )
                    .values(
                        lock_owner=None,
                        lock_acquired_at=None,
                        lock_expires_at=None,
                        updated_at=self._now(),
                    )
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    async def extend_lock(self, lease: SyncLease) -> SyncLease | None:
        # Push the expiry out by a full TTL; None means another run has taken the lock.
        now = self._now()
        expires_at = now + timedelta(seconds=self._lock_ttl_s)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TenantSyncStatus)
                    .where(
                        TenantSyncStatus.tenant_id == lease.tenant_id,
                        TenantSyncStatus.lock_owner == lease.owner,
                    )
                    .values(lock_expires_at=expires_at, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount != 1:
            logger.warning("sync_lock_extend_lost tenant_id=%s owner=%s", lease.tenant_id, lease.owner)
            return None
        return SyncLease(
            tenant_id=lease.tenant_id,
            owner=lease.owner,
            acquired_at=lease.acquired_at,
            expires_at=expires_at,
        )

    async def force_release(self, tenant_id: str) -> str | None:
        """Release a tenant's lock regardless of owner and mark the run failed.

        Operator escape hatch for stuck locks. Returns the owner that was evicted,
        or None when the tenant had no lock.
        """
        now = self._now()
        async with self._session_factory() as session:
            async with session.begin():
                owner = await session.scalar(
                    select(TenantSyncStatus.lock_owner).where(TenantSyncStatus.tenant_id == tenant_id)
                )
                if owner is None:
                    return None
                await session.execute(
                    update(TenantSyncStatus)
                    .where(
                        TenantSyncStatus.tenant_id == tenant_id,
                        TenantSyncStatus.lock_owner == owner,
                    )
                    .values(
                        status=STATUS_FAILED,
                        error_message="Sync lock released manually",
                        last_error_at=now,
                        lock_owner=None,
                        lock_acquired_at=None,
                        lock_expires_at=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
        logger.warning("sync_lock_force_released tenant_id=%s owner=%s", tenant_id, owner)
        return owner

    async def set_phase(self, tenant_id: str, phase: str) -> None:
        # Phase only moves forward within a run; acquire_lock resets it.
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(TenantSyncStatus)
                    .where(TenantSyncStatus.tenant_id == tenant_id)
                    .values(phase=phase, updated_at=self._now())
                    .execution_options(synchronize_session=False)
                )

    async def _upsert_collection(
        self, tenant_id: str, name: str, *, status: str, record_count: int, error: str | None
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    upsert_statement(
                        session,
                        TenantSyncCollection,
                        [
                            {
                                "tenant_id": tenant_id,
                                "collection": name,
                                "status": status,
                                "record_count": record_count,
                                "error": error,
                                "last_sync_at": self._now(),
                            }
                        ],
                        conflict_columns=("tenant_id", "collection"),
                        update_columns=("status", "record_count", "error", "last_sync_at"),
                    )
                )

    async def mark_collection_synced(self, tenant_id: str, name: str, count: int) -> None:
        await self._upsert_collection(tenant_id, name, status="success", record_count=count, error=None)

    async def mark_collection_failed(self, tenant_id: str, name: str, error: str) -> None:
        logger.warning("sync_collection_failed tenant_id=%s collection=%s error=%s", tenant_id, name, error)
        await self._upsert_collection(tenant_id, name, status="failed", record_count=0, error=error)

    async def complete_sync(self, lease: SyncLease, total_records: int, duration_ms: int) -> bool:
        # Only the current owner can close out a run.
        now = self._now()
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TenantSyncStatus)
                    .where(
                        TenantSyncStatus.tenant_id == lease.tenant_id,
                        TenantSyncStatus.lock_owner == lease.owner,
                    )
                    .values(
                        status=STATUS_COMPLETED,
                        completed_at=now,
                        total_records=total_records,
                        duration_ms=duration_ms,
                        error_message=None,
                        error_code=None,
                        next_attempt_at=None,
                        lock_owner=None,
                        lock_acquired_at=None,
                        lock_expires_at=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount != 1:
            logger.warning("sync_complete_lock_lost tenant_id=%s owner=%s", lease.tenant_id, lease.owner)
            return False
        logger.info(
            "sync_completed tenant_id=%s total_records=%s duration_ms=%s",
            lease.tenant_id,
            total_records,
            duration_ms,
        )
        return True

    async def fail_sync(self, lease: SyncLease, message: str, code: str) -> bool:
        # Backoff grows with the attempt count recorded by acquire_lock.
        now = self._now()
        async with self._session_factory() as session:
            async with session.begin():
                attempts = await session.scalar(
                    select(TenantSyncStatus.attempt_count).where(TenantSyncStatus.tenant_id == lease.tenant_id)
                )
                delay_s = next_attempt_delay_s(int(attempts or 1))
                result = await session.execute(
                    update(TenantSyncStatus)
                    .where(
                        TenantSyncStatus.tenant_id == lease.tenant_id,
                        TenantSyncStatus.lock_owner == lease.owner,
                    )
                    .values(
                        status=STATUS_FAILED,
                        error_message=message,
                        error_code=code,
                        last_error_at=now,
                        next_attempt_at=now + timedelta(seconds=delay_s),
                        lock_owner=None,
                        lock_acquired_at=None,
                        lock_expires_at=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount != 1:
            logger.warning("sync_fail_lock_lost tenant_id=%s owner=%s", lease.tenant_id, lease.owner)
            return False
        logger.warning(
            "sync_failed tenant_id=%s code=%s next_attempt_in_s=%s message=%s",
            lease.tenant_id,
            code,
            delay_s,
            message,
        )
        return True

    async def failed_collections(self, tenant_id: str) -> list[CollectionFailure]:
        # Failed background collections stay visible until a later run stores them.
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantSyncCollection)
                .where(
                    TenantSyncCollection.tenant_id == tenant_id,
                    TenantSyncCollection.status == "failed",
                )
                .order_by(TenantSyncCollection.id)
            )
            return [
                CollectionFailure(name=item.collection, error=item.error, last_sync_at=item.last_sync_at)
                for item in result.scalars().all()
            ]

    async def reset(self, tenant_id: str) -> None:
        # Forced syncs clear completion so the next run is not short-circuited.
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(TenantSyncStatus)
                    .where(
                        TenantSyncStatus.tenant_id == tenant_id,
                        TenantSyncStatus.status != STATUS_SYNCING,
                    )
                    .values(status=STATUS_PENDING, completed_at=None, updated_at=self._now())
                    .execution_options(synchronize_session=False)
                )

    async def cleanup_stuck_syncs(self, stuck_after_s: int = 600) -> int:
        now = self._now()
        threshold = now - timedelta(seconds=stuck_after_s)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TenantSyncStatus)
                    .where(
                        TenantSyncStatus.status == STATUS_SYNCING,
                        TenantSyncStatus.lock_owner.is_not(None),
                        TenantSyncStatus.lock_expires_at < threshold,
                    )
                    .values(
                        status=STATUS_FAILED,
                        error_message="Sync marked as failed due to stuck lock",
                        last_error_at=now,
                        lock_owner=None,
                        lock_acquired_at=None,
                        lock_expires_at=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
        cleaned = int(result.rowcount or 0)
        if cleaned:
            logger.warning("sync_stuck_cleaned count=%s", cleaned)
        return cleaned

    async def statistics(self, stuck_after_s: int = 600) -> SyncStatistics:
        # Aggregate over every tenant's status row for operator dashboards.
        now = self._now()
        async with self._session_factory() as session:
            grouped = await session.execute(
                select(
                    TenantSyncStatus.status,
                    func.count(),
                    func.avg(TenantSyncStatus.duration_ms),
                    func.sum(TenantSyncStatus.total_records),
                )
                .group_by(TenantSyncStatus.status)
                .order_by(TenantSyncStatus.status)
            )
            summary = [
                StatusSummary(
                    status=status,
                    count=int(count),
                    avg_duration_ms=int(avg_duration or 0),
                    total_records=int(total_records or 0),
                )
                for status, count, avg_duration, total_records in grouped.all()
            ]
            active = await session.execute(
                select(TenantSyncStatus.tenant_id)
                .where(
                    TenantSyncStatus.lock_owner.is_not(None),
                    TenantSyncStatus.lock_expires_at >= now,
                )
                .order_by(TenantSyncStatus.tenant_id)
            )
            stuck = await session.scalar(
                select(func.count())
                .select_from(TenantSyncStatus)
                .where(
                    TenantSyncStatus.status == STATUS_SYNCING,
                    TenantSyncStatus.lock_owner.is_not(None),
                    TenantSyncStatus.lock_expires_at < now - timedelta(seconds=stuck_after_s),
                )
            )
        active_tenants = list(active.scalars().all())
        return SyncStatistics(
            summary=summary,
            active_syncs=len(active_tenants),
            stuck_syncs=int(stuck or 0),
            active_tenants=active_tenants,
        )

    async def list_statuses(self, status: str | None = None, limit: int = 100) -> list[SyncStatusSnapshot]:
        # Most recently attempted first; collections are omitted from listings.
        query = select(TenantSyncStatus)
        if status:
            query = query.where(TenantSyncStatus.status == status)
        query = query.order_by(
            TenantSyncStatus.last_attempt_at.desc().nulls_last(),
            TenantSyncStatus.tenant_id,
        ).limit(max(1, limit))
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_snapshot(row, []) for row in result.scalars().all()]
