from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Sequence
from uuid import uuid4

from crmsync.persistence.db import SessionFactory
from crmsync.services.resilience import RetryPolicy, classify_error, retry_operation
from crmsync.services.sync.background import BackgroundDispatcher, BackgroundSyncJob
from crmsync.services.sync.references import ReferenceMaps, build_reference_maps
from crmsync.services.sync.status import PHASE_DEPENDENT, SyncLease, SyncStatusSnapshot, SyncStatusTracker
from crmsync.services.sync.writer import CollectionWriter
from crmsync.services.telemetry import increment_counter
from crmsync.services.wrapper.client import WrapperClient


logger = logging.getLogger(__name__)

LOCK_BUSY_MESSAGE = "Sync already in progress"

# (collection name, wrapper resource)
BACKGROUND_COLLECTIONS = (
    ("employee_assignments", "employee-assignments"),
    ("role_assignments", "role-assignments"),
    ("credit_configs", "credit-configs"),
    ("entity_credits", "entity-credits"),
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def default_process_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass(frozen=True)
class EssentialStats:
    tenant: int
    organizations: int
    roles: int
    users: int

    @property
    def total_records(self) -> int:
        return self.tenant + self.organizations + self.roles + self.users

    def to_payload(self) -> dict[str, int]:
        return {
            "tenant": self.tenant,
            "organizations": self.organizations,
            "roles": self.roles,
            "users": self.users,
            "totalRecords": self.total_records,
        }


@dataclass(frozen=True)
class CollectionOutcome:
    name: str
    success: bool
    count: int = 0
    error: str | None = None


@dataclass
class BackgroundReport:
    tenant_id: str
    outcomes: list[CollectionOutcome] = field(default_factory=list)
    resolved_references: int = 0
    linked_profiles: int = 0
    error: str | None = None

    @property
    def total_records(self) -> int:
        return sum(outcome.count for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> list[str]:
        return [outcome.name for outcome in self.outcomes if not outcome.success]


@dataclass
class SyncResult:
    success: bool
    already_synced: bool = False
    stats: EssentialStats | None = None
    background_sync_started: bool = False
    error: str | None = None
    locked_by: str | None = None
    correlation_id: str | None = None
    duration_ms: int | None = None
    sync_status: SyncStatusSnapshot | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "alreadySynced": self.already_synced,
            "stats": self.stats.to_payload() if self.stats else None,
            "backgroundSyncStarted": self.background_sync_started,
            "error": self.error,
        }
        if self.locked_by is not None:
            payload["lockedBy"] = self.locked_by
        if self.correlation_id is not None:
            payload["correlationId"] = self.correlation_id
        if self.duration_ms is not None:
            payload["durationMs"] = self.duration_ms
        if self.sync_status is not None:
            payload["syncStatus"] = self.sync_status.to_payload()
        return payload


class TenantSyncOrchestrator:
    """Drives a tenant sync: status check, lease, essential phase, background handoff.

    The essential phase (tenant, organizations, roles, users) is committed in a
    single transaction before the caller gets an answer. The dependent collections
    are written afterwards by the background dispatcher, each on its own, and the
    lease is released once they finish.
    """

    def __init__(
        self,
        *,
        wrapper: WrapperClient,
        tracker: SyncStatusTracker,
        writer: CollectionWriter,
        session_factory: SessionFactory,
        background: BackgroundDispatcher,
        retry_policy: RetryPolicy | None = None,
        process_id: str | None = None,
    ) -> None:
        self._wrapper = wrapper
        self._tracker = tracker
        self._writer = writer
        self._session_factory = session_factory
        self._background = background
        self._retry_policy = retry_policy
        self._process_id = process_id or default_process_id()

    @property
    def tracker(self) -> SyncStatusTracker:
        return self._tracker

    @property
    def session_factory(self) -> SessionFactory:
        return self._session_factory

    @property
    def background(self) -> BackgroundDispatcher:
        return self._background

    async def aclose(self) -> None:
        await self._wrapper.aclose()
        close_background = getattr(self._background, "aclose", None)
        if close_background is not None:
            await close_background()

    def _lock_owner(self) -> str:
        # Unique per run so a stale run in this process cannot release a newer lease.
        return f"{self._process_id}:{uuid4().hex[:8]}"

    async def sync_tenant(
        self,
        tenant_id: str,
        token: str,
        *,
        force: bool = False,
        correlation_id: str | None = None,
    ) -> SyncResult:
        correlation_id = correlation_id or uuid4().hex
        started_at = _utc_now()
        start = time.monotonic()

        if force:
            await self._tracker.reset(tenant_id)
        elif not await self._tracker.needs_sync(tenant_id):
            increment_counter("sync_already_synced_total")
            logger.info("sync_skipped_already_synced tenant_id=%s", tenant_id)
            return SyncResult(
                success=True,
                already_synced=True,
                correlation_id=correlation_id,
                sync_status=await self._tracker.get(tenant_id),
            )

        await self._tracker.get_or_create(tenant_id)
        lease = await self._tracker.acquire_lock(tenant_id, self._lock_owner())
        if lease is None:
            snapshot = await self._tracker.get(tenant_id)
            increment_counter("sync_lock_conflicts_total")
            return SyncResult(
                success=False,
                error=LOCK_BUSY_MESSAGE,
                locked_by=snapshot.lock_owner if snapshot else None,
                correlation_id=correlation_id,
            )

        logger.info(
            "sync_started tenant_id=%s owner=%s force=%s correlation_id=%s",
            tenant_id,
            lease.owner,
            force,
            correlation_id,
        )
        try:
            stats: EssentialStats = await retry_operation(
                lambda: self.run_essential_phase(tenant_id, token),
                label="essential data sync",
                policy=self._retry_policy,
            )
        except Exception as exc:
            error_type = classify_error(exc)
            increment_counter("sync_essential_failures_total")
            logger.warning(
                "sync_essential_failed tenant_id=%s error_type=%s",
                tenant_id,
                error_type.value,
                exc_info=exc,
            )
            try:
                await self._tracker.fail_sync(lease, str(exc), error_type.value)
            except Exception:  # noqa: BLE001 - keep the original failure for the caller
                logger.exception("sync_fail_record_failed tenant_id=%s", tenant_id)
            raise

        # Essential retries may have eaten most of the lease.
        lease = await self._renew_lease(lease)
        job = BackgroundSyncJob.for_lease(
            lease,
            token=token,
            essential_records=stats.total_records,
            started_at=started_at,
            correlation_id=correlation_id,
        )
        background_started = True
        try:
            await self._background.dispatch(job, self.finish_background)
        except Exception as exc:  # noqa: BLE001 - essential data is committed; close out the sync
            background_started = False
            logger.warning("background_sync_dispatch_failed tenant_id=%s", tenant_id, exc_info=exc)
            await self._tracker.complete_sync(lease, stats.total_records, int((time.monotonic() - start) * 1000))

        duration_ms = int((time.monotonic() - start) * 1000)
        increment_counter("sync_essential_completed_total")
        logger.info(
            "sync_essential_completed tenant_id=%s records=%s duration_ms=%s",
            tenant_id,
            stats.total_records,
            duration_ms,
        )
        return SyncResult(
            success=True,
            stats=stats,
            background_sync_started=background_started,
            correlation_id=correlation_id,
            duration_ms=duration_ms,
        )

    async def run_essential_phase(self, tenant_id: str, token: str) -> EssentialStats:
        # Fetch everything first so the write transaction stays short.
        tenant_data, organizations, roles, users = await asyncio.gather(
            self._wrapper.fetch_tenant(tenant_id, token),
            self._wrapper.fetch_collection(tenant_id, "organizations", token),
            self._wrapper.fetch_collection(tenant_id, "roles", token),
            self._wrapper.fetch_collection(tenant_id, "users", token),
        )

        # Parents before children; any failure rolls back all four collections.
        async with self._session_factory() as session:
            async with session.begin():
                tenant_count = await self._writer.store_tenant(session, tenant_id, tenant_data)
                org_count = await self._writer.store_organizations(session, tenant_id, organizations)
                role_count = await self._writer.store_roles(session, tenant_id, roles)
                user_count = await self._writer.store_users(session, tenant_id, users)

        stats = EssentialStats(
            tenant=tenant_count,
            organizations=org_count,
            roles=role_count,
            users=user_count,
        )
        for name, count in (
            ("tenant", tenant_count),
            ("organizations", org_count),
            ("roles", role_count),
            ("users", user_count),
        ):
            await self._tracker.mark_collection_synced(tenant_id, name, count)
        await self._tracker.set_phase(tenant_id, PHASE_DEPENDENT)
        return stats

    async def _renew_lease(self, lease: SyncLease) -> SyncLease:
        # Extend the lease between steps so a long run is not taken over mid-write.
        try:
            renewed = await self._tracker.extend_lock(lease)
        except Exception as exc:  # noqa: BLE001 - a missed renewal only shortens the lease
            logger.warning("sync_lock_extend_failed tenant_id=%s", lease.tenant_id, exc_info=exc)
            return lease
        if renewed is None:
            increment_counter("sync_lock_lost_total")
            return lease
        return renewed

    async def run_background_phase(
        self, tenant_id: str, token: str, lease: SyncLease | None = None
    ) -> BackgroundReport:
        if lease is not None:
            lease = await self._renew_lease(lease)
        async with self._session_factory() as session:
            refs = await build_reference_maps(session, tenant_id)

        resolved = 0
        try:
            resolved = await self._writer.resolve_pending_references(self._session_factory, tenant_id, refs)
        except Exception as exc:  # noqa: BLE001 - unresolved references are retried next sync
            logger.warning("sync_reference_resolution_failed tenant_id=%s", tenant_id, exc_info=exc)

        fetched: Sequence[Any] = await asyncio.gather(
            *(self._wrapper.fetch_collection(tenant_id, resource, token) for _, resource in BACKGROUND_COLLECTIONS),
            return_exceptions=True,
        )
        stores: dict[str, Callable[..., Awaitable[int]]] = {
            "employee_assignments": self._writer.store_employee_assignments,
            "role_assignments": self._writer.store_role_assignments,
            "credit_configs": self._writer.store_credit_configs,
            "entity_credits": self._writer.store_entity_credits,
        }
        outcomes = await asyncio.gather(
            *(
                self._store_collection(tenant_id, name, records, stores[name], refs, lease)
                for (name, _), records in zip(BACKGROUND_COLLECTIONS, fetched)
            )
        )
        report = BackgroundReport(tenant_id=tenant_id, outcomes=list(outcomes), resolved_references=resolved)

        try:
            report.linked_profiles = await self._writer.link_user_profile_assignments(
                self._session_factory, tenant_id
            )
        except Exception as exc:  # noqa: BLE001 - profile re-link is best effort
            logger.warning("sync_profile_link_failed tenant_id=%s", tenant_id, exc_info=exc)

        logger.info(
            "sync_background_completed tenant_id=%s records=%s failed=%s",
            tenant_id,
            report.total_records,
            ",".join(report.failed) or "-",
        )
        return report

    async def _store_collection(
        self,
        tenant_id: str,
        name: str,
        records: Any,
        store: Callable[..., Awaitable[int]],
        refs: ReferenceMaps,
        lease: SyncLease | None = None,
    ) -> CollectionOutcome:
        # One collection's failure is recorded and never affects the others.
        if isinstance(records, BaseException):
            error = f"fetch failed: {records}"
            await self._tracker.mark_collection_failed(tenant_id, name, error)
            return CollectionOutcome(name=name, success=False, error=error)
        try:
            count = await store(self._session_factory, tenant_id, records, refs)
        except Exception as exc:  # noqa: BLE001 - isolate collection failures
            logger.warning("sync_collection_store_failed tenant_id=%s collection=%s", tenant_id, name, exc_info=exc)
            await self._tracker.mark_collection_failed(tenant_id, name, str(exc))
            outcome = CollectionOutcome(name=name, success=False, error=str(exc))
        else:
            await self._tracker.mark_collection_synced(tenant_id, name, count)
            outcome = CollectionOutcome(name=name, success=True, count=count)
        if lease is not None:
            await self._renew_lease(lease)
        return outcome

    async def finish_background(self, job: BackgroundSyncJob) -> BackgroundReport:
        # Run the background phase and always close out the sync for this lease.
        try:
            report = await self.run_background_phase(job.tenant_id, job.token, job.lease)
        except Exception as exc:  # noqa: BLE001 - background failures never fail the sync
            logger.exception("sync_background_phase_failed tenant_id=%s", job.tenant_id)
            report = BackgroundReport(tenant_id=job.tenant_id, error=str(exc))
        duration_ms = int((_utc_now() - job.started_at).total_seconds() * 1000)
        await self._tracker.complete_sync(
            job.lease,
            job.essential_records + report.total_records,
            max(duration_ms, 0),
        )
        return report
