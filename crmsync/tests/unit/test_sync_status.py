from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, func, select

from crmsync.domain.models import Tenant, TenantSyncStatus
from crmsync.services.sync.status import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SYNCING,
    SyncLease,
    SyncStatusTracker,
    next_attempt_delay_s,
)


def test_next_attempt_delay_backs_off_to_one_hour() -> None:
    assert next_attempt_delay_s(0) == 60
    assert next_attempt_delay_s(1) == 60
    assert next_attempt_delay_s(2) == 120
    assert next_attempt_delay_s(3) == 240
    assert next_attempt_delay_s(7) == 3600
    assert next_attempt_delay_s(50) == 3600


@pytest.mark.asyncio
async def test_get_or_create_is_idempotent(session_factory) -> None:
    tracker = SyncStatusTracker(session_factory)
    assert await tracker.get("t-1") is None

    first = await tracker.get_or_create("t-1")
    second = await tracker.get_or_create("t-1")

    assert first.status == STATUS_PENDING
    assert second.status == STATUS_PENDING
    async with session_factory() as session:
        rows = await session.scalar(select(func.count()).select_from(TenantSyncStatus))
    assert rows == 1


@pytest.mark.asyncio
async def test_lock_is_exclusive_until_released_by_owner(session_factory) -> None:
    tracker = SyncStatusTracker(session_factory)
    await tracker.get_or_create("t-1")

    lease = await tracker.acquire_lock("t-1", "host-a:1:aaaa")
    assert lease is not None
    assert await tracker.acquire_lock("t-1", "host-b:2:bbbb") is None

    snapshot = await tracker.get("t-1")
    assert snapshot is not None
    assert snapshot.status == STATUS_SYNCING
    assert snapshot.lock_owner == "host-a:1:aaaa"
    assert snapshot.attempt_count == 1

    # Only the holder can release.
    stranger = SyncLease(
        tenant_id="t-1",
        owner="host-b:2:bbbb",
        acquired_at=lease.acquired_at,
        expires_at=lease.expires_at,
    )
    assert await tracker.release_lock(stranger) is False
    assert await tracker.release_lock(lease) is True

    second = await tracker.acquire_lock("t-1", "host-b:2:bbbb")
    assert second is not None
    assert (await tracker.get("t-1")).attempt_count == 2


@pytest.mark.asyncio
async def test_expired_lock_can_be_taken_over(session_factory) -> None:
    long_ago = datetime.now(timezone.utc) - timedelta(hours=1)
    stale_tracker = SyncStatusTracker(session_factory, lock_ttl_s=300, clock=lambda: long_ago)
    tracker = SyncStatusTracker(session_factory, lock_ttl_s=300)
    await tracker.get_or_create("t-1")

    stale = await stale_tracker.acquire_lock("t-1", "crashed:1:0000")
    assert stale is not None
    fresh = await tracker.acquire_lock("t-1", "alive:2:1111")
    assert fresh is not None

    # The crashed holder can no longer close out the sync.
    assert await tracker.complete_sync(stale, 10, 100) is False
    assert await tracker.complete_sync(fresh, 10, 100) is True
    snapshot = await tracker.get("t-1")
    assert snapshot.status == STATUS_COMPLETED
    assert snapshot.lock_owner is None
    assert snapshot.total_records == 10


@pytest.mark.asyncio
async def test_fail_sync_schedules_backoff_and_releases_lock(session_factory) -> None:
    fixed = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    tracker = SyncStatusTracker(session_factory, clock=lambda: fixed)
    await tracker.get_or_create("t-1")

    lease = await tracker.acquire_lock("t-1", "host:1:aaaa")
    assert await tracker.fail_sync(lease, "wrapper unreachable", "NETWORK_ERROR") is True
    snapshot = await tracker.get("t-1")
    assert snapshot.status == STATUS_FAILED
    assert snapshot.error_code == "NETWORK_ERROR"
    assert snapshot.error_message == "wrapper unreachable"
    assert snapshot.lock_owner is None
    assert (snapshot.next_attempt_at - snapshot.last_attempt_at).total_seconds() == 60

    lease = await tracker.acquire_lock("t-1", "host:1:bbbb")
    await tracker.fail_sync(lease, "still down", "NETWORK_ERROR")
    snapshot = await tracker.get("t-1")
    assert snapshot.attempt_count == 2
    assert (snapshot.next_attempt_at - snapshot.last_attempt_at).total_seconds() == 120


@pytest.mark.asyncio
async def test_needs_sync_tracks_completion_and_tenant_presence(session_factory) -> None:
    tracker = SyncStatusTracker(session_factory)
    assert await tracker.needs_sync("t-1") is True

    await tracker.get_or_create("t-1")
    lease = await tracker.acquire_lock("t-1", "host:1:aaaa")
    async with session_factory() as session:
        session.add(Tenant(id="tenant-row", tenant_id="t-1", name="Acme", status="active"))
        await session.commit()
    await tracker.complete_sync(lease, 1, 5)
    assert await tracker.needs_sync("t-1") is False

    # A completed status without tenant data means the data was removed.
    async with session_factory() as session:
        await session.execute(delete(Tenant).where(Tenant.tenant_id == "t-1"))
        await session.commit()
    assert await tracker.needs_sync("t-1") is True


@pytest.mark.asyncio
async def test_reset_clears_completion_but_not_running_syncs(session_factory) -> None:
    tracker = SyncStatusTracker(session_factory)
    await tracker.get_or_create("t-1")
    lease = await tracker.acquire_lock("t-1", "host:1:aaaa")

    await tracker.reset("t-1")
    assert (await tracker.get("t-1")).status == STATUS_SYNCING

    await tracker.complete_sync(lease, 3, 10)
    await tracker.reset("t-1")
    snapshot = await tracker.get("t-1")
    assert snapshot.status == STATUS_PENDING
    assert snapshot.completed_at is None


@pytest.mark.asyncio
async def test_collection_outcomes_and_failures(session_factory) -> None:
    tracker = SyncStatusTracker(session_factory)
    await tracker.get_or_create("t-1")

    await tracker.mark_collection_synced("t-1", "organizations", 4)
    await tracker.mark_collection_failed("t-1", "credit_configs", "fetch failed: down")
    # A later success overwrites the earlier failure for the same collection.
    await tracker.mark_collection_failed("t-1", "roles", "boom")
    await tracker.mark_collection_synced("t-1", "roles", 2)

    failed = await tracker.failed_collections("t-1")
    assert [item.name for item in failed] == ["credit_configs"]
    assert failed[0].error == "fetch failed: down"

    snapshot = await tracker.get("t-1")
    assert snapshot.collections["organizations"].record_count == 4
    assert snapshot.collections["roles"].status == "success"
    payload = snapshot.to_payload()
    assert payload["tenantId"] == "t-1"
    assert payload["collections"]["credit_configs"]["status"] == "failed"


@pytest.mark.asyncio
async def test_cleanup_marks_stuck_syncs_failed(session_factory) -> None:
    long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    stale_tracker = SyncStatusTracker(session_factory, lock_ttl_s=300, clock=lambda: long_ago)
    tracker = SyncStatusTracker(session_factory)
    await tracker.get_or_create("stuck")
    await tracker.get_or_create("healthy")
    await stale_tracker.acquire_lock("stuck", "crashed:1:0000")
    await tracker.acquire_lock("healthy", "alive:2:1111")

    assert await tracker.cleanup_stuck_syncs(stuck_after_s=600) == 1
    stuck = await tracker.get("stuck")
    assert stuck.status == STATUS_FAILED
    assert stuck.error_message == "Sync marked as failed due to stuck lock"
    assert stuck.lock_owner is None
    assert (await tracker.get("healthy")).status == STATUS_SYNCING

    assert await tracker.cleanup_stuck_syncs(stuck_after_s=600) == 0


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.mark.asyncio
async def test_extend_lock_keeps_a_long_run_from_being_taken_over(session_factory) -> None:
    clock = _Clock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))
    tracker = SyncStatusTracker(session_factory, lock_ttl_s=300, clock=clock)
    await tracker.get_or_create("t-1")

    lease = await tracker.acquire_lock("t-1", "host-a:1:aaaa")
    clock.advance(250)
    renewed = await tracker.extend_lock(lease)
    assert renewed is not None
    assert renewed.expires_at == clock.now + timedelta(seconds=300)
    assert renewed.acquired_at == lease.acquired_at

    # Past the original expiry, but inside the renewed one.
    clock.advance(150)
    assert await tracker.acquire_lock("t-1", "host-b:2:bbbb") is None
    assert (await tracker.get("t-1")).lock_owner == "host-a:1:aaaa"

    stranger = SyncLease(
        tenant_id="t-1",
        owner="host-b:2:bbbb",
        acquired_at=lease.acquired_at,
        expires_at=lease.expires_at,
    )
    assert await tracker.extend_lock(stranger) is None
    assert await tracker.complete_sync(renewed, 5, 400) is True


@pytest.mark.asyncio
async def test_extend_lock_fails_once_another_run_took_over(session_factory) -> None:
    clock = _Clock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))
    tracker = SyncStatusTracker(session_factory, lock_ttl_s=300, clock=clock)
    await tracker.get_or_create("t-1")

    lease = await tracker.acquire_lock("t-1", "host-a:1:aaaa")
    clock.advance(301)
    assert await tracker.acquire_lock("t-1", "host-b:2:bbbb") is not None
    assert await tracker.extend_lock(lease) is None
    assert (await tracker.get("t-1")).lock_owner == "host-b:2:bbbb"


@pytest.mark.asyncio
async def test_force_release_evicts_any_owner_and_fails_the_run(session_factory) -> None:
    tracker = SyncStatusTracker(session_factory)
    await tracker.get_or_create("t-1")
    assert await tracker.force_release("t-1") is None
    assert await tracker.force_release("unknown") is None

    lease = await tracker.acquire_lock("t-1", "host-a:1:aaaa")
    assert await tracker.force_release("t-1") == "host-a:1:aaaa"

    snapshot = await tracker.get("t-1")
    assert snapshot.status == STATUS_FAILED
    assert snapshot.error_message == "Sync lock released manually"
    assert snapshot.lock_owner is None
    assert snapshot.lock_expires_at is None
    # The evicted run can no longer close out the sync, and the lock is free again.
    assert await tracker.complete_sync(lease, 1, 1) is False
    assert await tracker.acquire_lock("t-1", "host-b:2:bbbb") is not None


@pytest.mark.asyncio
async def test_statistics_summarize_status_rows(session_factory) -> None:
    clock = _Clock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))
    tracker = SyncStatusTracker(session_factory, lock_ttl_s=300, clock=clock)
    for tenant_id in ("done-1", "done-2", "running", "stuck", "idle"):
        await tracker.get_or_create(tenant_id)

    stuck = await tracker.acquire_lock("stuck", "crashed:1:0000")
    assert stuck is not None
    clock.advance(3600)
    await tracker.complete_sync(await tracker.acquire_lock("done-1", "host:1:aaaa"), 10, 100)
    await tracker.complete_sync(await tracker.acquire_lock("done-2", "host:1:bbbb"), 30, 300)
    await tracker.acquire_lock("running", "host:1:cccc")

    stats = await tracker.statistics(stuck_after_s=600)
    payload = stats.to_payload()

    assert payload["summary"]["completed"] == {"count": 2, "avgDurationMs": 200, "totalRecords": 40}
    assert payload["summary"]["syncing"]["count"] == 2
    assert payload["summary"]["pending"]["count"] == 1
    assert payload["activeSyncs"] == 1
    assert payload["activeTenants"] == ["running"]
    assert payload["stuckSyncs"] == 1


@pytest.mark.asyncio
async def test_list_statuses_filters_and_orders_by_last_attempt(session_factory) -> None:
    clock = _Clock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))
    tracker = SyncStatusTracker(session_factory, clock=clock)
    for tenant_id in ("t-a", "t-b", "t-c"):
        await tracker.get_or_create(tenant_id)

    await tracker.fail_sync(await tracker.acquire_lock("t-a", "host:1:aaaa"), "down", "NETWORK_ERROR")
    clock.advance(60)
    await tracker.complete_sync(await tracker.acquire_lock("t-b", "host:1:bbbb"), 1, 1)

    everything = await tracker.list_statuses()
    assert [item.tenant_id for item in everything] == ["t-b", "t-a", "t-c"]
    assert all(item.collections == {} for item in everything)

    failed = await tracker.list_statuses(status=STATUS_FAILED)
    assert [item.tenant_id for item in failed] == ["t-a"]
    assert len(await tracker.list_statuses(limit=1)) == 1
