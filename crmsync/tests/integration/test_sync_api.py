from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from crmsync.apps.api.main import create_app
from crmsync.core.config import get_settings
from crmsync.core.errors import WrapperAuthError, WrapperResponseError
from crmsync.persistence.db import build_session_factory
from crmsync.services.sync.status import SyncStatusTracker
from crmsync.tests.utils.data import BACKGROUND_RECORDS, ESSENTIAL_RECORDS, TENANT_ID
from crmsync.tests.utils.fakes import FakeStreamRedis, FakeWrapper, build_test_orchestrator


AUTH = {"Authorization": "Bearer tok-123"}


def _client(orchestrator, redis=None) -> AsyncClient:
    app = create_app(orchestrator, redis=redis)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_endpoints(session_factory) -> None:
    async with _client(build_test_orchestrator(session_factory, FakeWrapper())) as client:
        bare = await client.get("/health")
        versioned = await client.get("/v1/health")
    assert bare.status_code == 200
    assert bare.json() == {"status": "ok", "database": "ok"}
    assert versioned.json()["data"] == {"status": "ok", "database": "ok"}
    assert versioned.json()["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_trigger_requires_bearer_token(session_factory) -> None:
    wrapper = FakeWrapper()
    async with _client(build_test_orchestrator(session_factory, wrapper)) as client:
        response = await client.post(f"/v1/sync/tenants/{TENANT_ID}/trigger")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert wrapper.calls == []


@pytest.mark.asyncio
async def test_trigger_then_status(session_factory) -> None:
    orchestrator = build_test_orchestrator(session_factory, FakeWrapper())
    async with _client(orchestrator) as client:
        response = await client.post(
            f"/v1/sync/tenants/{TENANT_ID}/trigger",
            headers={**AUTH, "X-Request-Id": "req-42"},
        )
        assert response.status_code == 200
        body = response.json()
        assert response.headers["X-Request-Id"] == "req-42"
        assert body["meta"]["request_id"] == "req-42"
        assert body["data"]["success"] is True
        assert body["data"]["correlationId"] == "req-42"
        assert body["data"]["stats"]["totalRecords"] == ESSENTIAL_RECORDS

        await orchestrator.background.wait(TENANT_ID, timeout=10)
        status = await client.get(f"/v1/sync/tenants/{TENANT_ID}/status", headers=AUTH)
        repeat = await client.post(f"/v1/sync/tenants/{TENANT_ID}/trigger", headers=AUTH)

    assert status.status_code == 200
    data = status.json()["data"]
    assert data["status"] == "completed"
    assert data["needsSync"] is False
    assert data["hasFailedCollections"] is False
    assert data["failedCollections"] == []
    assert data["background"]["status"] == "succeeded"
    assert data["collections"]["users"]["recordCount"] == 2

    assert repeat.status_code == 200
    assert repeat.json()["data"]["alreadySynced"] is True
    assert repeat.json()["data"]["syncStatus"]["status"] == "completed"


@pytest.mark.asyncio
async def test_trigger_conflicts_while_locked(session_factory) -> None:
    orchestrator = build_test_orchestrator(session_factory, FakeWrapper())
    await orchestrator.tracker.get_or_create(TENANT_ID)
    await orchestrator.tracker.acquire_lock(TENANT_ID, "other-host:99:abcd")

    async with _client(orchestrator) as client:
        response = await client.post(f"/v1/sync/tenants/{TENANT_ID}/trigger", headers=AUTH)

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "SYNC_IN_PROGRESS"
    assert error["message"] == "Sync already in progress"
    assert error["details"]["locked_by"] == "other-host:99:abcd"


@pytest.mark.asyncio
async def test_status_unknown_tenant_returns_404(session_factory) -> None:
    async with _client(build_test_orchestrator(session_factory, FakeWrapper())) as client:
        response = await client.get("/v1/sync/tenants/nobody/status", headers=AUTH)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_upstream_auth_failure_maps_to_401(session_factory) -> None:
    rejected = WrapperAuthError("wrapper authentication failed: 401", status_code=401)
    wrapper = FakeWrapper(failures={"tenant": rejected})
    orchestrator = build_test_orchestrator(session_factory, wrapper)
    async with _client(orchestrator) as client:
        response = await client.post(f"/v1/sync/tenants/{TENANT_ID}/force", headers=AUTH)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    snapshot = await orchestrator.tracker.get(TENANT_ID)
    assert snapshot.error_code == "AUTH_ERROR"


@pytest.mark.asyncio
async def test_upstream_failure_maps_to_502(session_factory) -> None:
    wrapper = FakeWrapper(failures={"users": WrapperResponseError("wrapper returned status 503")})
    orchestrator = build_test_orchestrator(session_factory, wrapper, max_attempts=1)
    async with _client(orchestrator) as client:
        response = await client.post(f"/v1/sync/tenants/{TENANT_ID}/trigger", headers=AUTH)
        status = await client.get(f"/v1/sync/tenants/{TENANT_ID}/status", headers=AUTH)

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "SYNC_FAILED"
    assert error["details"]["error_type"] == "UNKNOWN_ERROR"
    data = status.json()["data"]
    assert data["status"] == "failed"
    assert data["needsSync"] is True
    assert data["nextAttemptAt"] is not None
    assert data["background"] is None


@pytest.mark.asyncio
async def test_health_reports_event_stream_consumer_group(session_factory) -> None:
    settings = get_settings()
    redis = FakeStreamRedis(entries=[(b"5-0", {b"payload": b"{}"})])
    await redis.xgroup_create(settings.org_assignment_stream, settings.org_assignment_group)

    async with _client(build_test_orchestrator(session_factory, FakeWrapper()), redis=redis) as client:
        response = await client.get("/v1/health")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "ok"
    assert data["event_stream"] == {"status": "ok", "consumers": 0, "pending": 0, "lag": 1}


@pytest.mark.asyncio
async def test_health_degrades_when_consumer_group_is_missing(session_factory) -> None:
    async with _client(build_test_orchestrator(session_factory, FakeWrapper()), redis=FakeStreamRedis()) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "degraded", "database": "ok", "event_stream": {"status": "missing"}}


@pytest.mark.asyncio
async def test_health_returns_503_when_database_is_unreachable(tmp_path) -> None:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'crmsync.db'}")
    orchestrator = build_test_orchestrator(build_session_factory(engine), FakeWrapper())
    try:
        async with _client(orchestrator) as client:
            response = await client.get("/v1/health")
    finally:
        await engine.dispose()

    assert response.status_code == 503
    assert response.json()["data"] == {"status": "degraded", "database": "unavailable"}


@pytest.mark.asyncio
async def test_admin_routes_require_bearer_token(session_factory) -> None:
    async with _client(build_test_orchestrator(session_factory, FakeWrapper())) as client:
        responses = [
            await client.delete(f"/v1/sync/tenants/{TENANT_ID}/lock"),
            await client.post("/v1/sync/cleanup"),
            await client.get("/v1/sync/statistics"),
            await client.get("/v1/sync/all"),
        ]
    assert [response.status_code for response in responses] == [401, 401, 401, 401]


@pytest.mark.asyncio
async def test_release_lock_evicts_holder(session_factory) -> None:
    orchestrator = build_test_orchestrator(session_factory, FakeWrapper())
    await orchestrator.tracker.get_or_create(TENANT_ID)
    await orchestrator.tracker.acquire_lock(TENANT_ID, "other-host:99:abcd")

    async with _client(orchestrator) as client:
        released = await client.delete(f"/v1/sync/tenants/{TENANT_ID}/lock", headers=AUTH)
        again = await client.delete(f"/v1/sync/tenants/{TENANT_ID}/lock", headers=AUTH)
        unknown = await client.delete("/v1/sync/tenants/nobody/lock", headers=AUTH)
        retry = await client.post(f"/v1/sync/tenants/{TENANT_ID}/trigger", headers=AUTH)
        await orchestrator.background.wait(TENANT_ID, timeout=10)

    assert released.status_code == 200
    assert released.json()["data"] == {
        "tenantId": TENANT_ID,
        "released": True,
        "previousOwner": "other-host:99:abcd",
    }
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "LOCK_NOT_HELD"
    assert unknown.status_code == 404
    # The tenant can be synced again right away.
    assert retry.status_code == 200
    assert retry.json()["data"]["success"] is True


@pytest.mark.asyncio
async def test_cleanup_fails_stuck_syncs(session_factory) -> None:
    orchestrator = build_test_orchestrator(session_factory, FakeWrapper())
    long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    stale_tracker = SyncStatusTracker(session_factory, lock_ttl_s=300, clock=lambda: long_ago)
    await orchestrator.tracker.get_or_create(TENANT_ID)
    await stale_tracker.acquire_lock(TENANT_ID, "crashed:1:0000")

    async with _client(orchestrator) as client:
        first = await client.post("/v1/sync/cleanup", headers=AUTH)
        second = await client.post("/v1/sync/cleanup", headers=AUTH)
        status = await client.get(f"/v1/sync/tenants/{TENANT_ID}/status", headers=AUTH)

    assert first.json()["data"] == {"cleanedCount": 1}
    assert second.json()["data"] == {"cleanedCount": 0}
    assert status.json()["data"]["status"] == "failed"
    assert status.json()["data"]["lockedBy"] is None


@pytest.mark.asyncio
async def test_statistics_and_listing(session_factory) -> None:
    orchestrator = build_test_orchestrator(session_factory, FakeWrapper())
    await orchestrator.tracker.get_or_create("t-idle")

    async with _client(orchestrator) as client:
        await client.post(f"/v1/sync/tenants/{TENANT_ID}/trigger", headers=AUTH)
        await orchestrator.background.wait(TENANT_ID, timeout=10)
        stats = await client.get("/v1/sync/statistics", headers=AUTH)
        everything = await client.get("/v1/sync/all", headers=AUTH)
        completed = await client.get("/v1/sync/all", params={"status": "completed"}, headers=AUTH)
        invalid = await client.get("/v1/sync/all", params={"limit": 0}, headers=AUTH)

    data = stats.json()["data"]
    assert data["summary"]["completed"]["count"] == 1
    assert data["summary"]["completed"]["totalRecords"] == ESSENTIAL_RECORDS + BACKGROUND_RECORDS
    assert data["summary"]["pending"]["count"] == 1
    assert data["activeSyncs"] == 0
    assert data["activeTenants"] == []
    assert data["stuckSyncs"] == 0

    listing = everything.json()["data"]
    assert listing["count"] == 2
    assert [item["tenantId"] for item in listing["items"]] == [TENANT_ID, "t-idle"]
    assert "collections" not in listing["items"][0]
    assert [item["tenantId"] for item in completed.json()["data"]["items"]] == [TENANT_ID]
    assert invalid.status_code == 422
