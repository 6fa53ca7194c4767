from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from crmsync.apps.api.deps import get_orchestrator, require_bearer_token
from crmsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from crmsync.apps.api.response import request_id_for, success_response
from crmsync.core.config import get_settings
from crmsync.core.errors import SyncErrorType
from crmsync.services.resilience import classify_error
from crmsync.services.sync.orchestrator import TenantSyncOrchestrator


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"], responses=DEFAULT_ERROR_RESPONSES)


async def _run_sync(
    request: Request,
    orchestrator: TenantSyncOrchestrator,
    tenant_id: str,
    token: str,
    *,
    force: bool,
) -> dict[str, Any]:
    try:
        result = await orchestrator.sync_tenant(
            tenant_id,
            token,
            force=force,
            correlation_id=request_id_for(request),
        )
    except Exception as exc:  # noqa: BLE001 - mapped to an HTTP error below
        error_type = classify_error(exc)
        if error_type is SyncErrorType.AUTH_ERROR:
            raise HTTPException(
                status_code=401,
                detail={"code": "AUTH_UNAUTHORIZED", "message": "Upstream rejected the bearer token"},
            ) from exc
        logger.warning("api_sync_failed tenant_id=%s error_type=%s", tenant_id, error_type.value, exc_info=exc)
        raise HTTPException(
            status_code=502,
            detail={"code": "SYNC_FAILED", "message": str(exc), "error_type": error_type.value},
        ) from exc

    if not result.success:
        raise HTTPException(
            status_code=409,
            detail={"code": "SYNC_IN_PROGRESS", "message": result.error, "locked_by": result.locked_by},
        )
    return success_response(request=request, data=result.to_payload())


@router.post("/tenants/{tenant_id}/trigger")
async def trigger_sync(
    tenant_id: str,
    request: Request,
    token: str = Depends(require_bearer_token),
    orchestrator: TenantSyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await _run_sync(request, orchestrator, tenant_id, token, force=False)


@router.post("/tenants/{tenant_id}/force")
async def force_sync(
    tenant_id: str,
    request: Request,
    token: str = Depends(require_bearer_token),
    orchestrator: TenantSyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    # Re-syncs even when the last run completed.
    return await _run_sync(request, orchestrator, tenant_id, token, force=True)


@router.get("/tenants/{tenant_id}/status")
async def sync_status(
    tenant_id: str,
    request: Request,
    token: str = Depends(require_bearer_token),
    orchestrator: TenantSyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    tracker = orchestrator.tracker
    snapshot = await tracker.get(tenant_id)
    if snapshot is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": "No sync status for tenant"},
        )
    failed = await tracker.failed_collections(tenant_id)
    background_state = orchestrator.background.state(tenant_id)
    data = {
        **snapshot.to_payload(),
        "needsSync": await tracker.needs_sync(tenant_id),
        "hasFailedCollections": bool(failed),
        "failedCollections": [
            {
                "name": item.name,
                "error": item.error,
                "lastSyncAt": item.last_sync_at.isoformat() if item.last_sync_at else None,
            }
            for item in failed
        ],
        "background": background_state.to_payload() if background_state else None,
    }
    return success_response(request=request, data=data)


@router.delete("/tenants/{tenant_id}/lock")
async def release_lock(
    tenant_id: str,
    request: Request,
    token: str = Depends(require_bearer_token),
    orchestrator: TenantSyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    # Operator release of a stuck lock; the interrupted run is marked failed.
    tracker = orchestrator.tracker
    if await tracker.get(tenant_id) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": "No sync status for tenant"},
        )
    owner = await tracker.force_release(tenant_id)
    if owner is None:
        raise HTTPException(
            status_code=409,
            detail={"code": "LOCK_NOT_HELD", "message": "No lock to release"},
        )
    logger.warning("api_sync_lock_released tenant_id=%s owner=%s", tenant_id, owner)
    return success_response(
        request=request,
        data={"tenantId": tenant_id, "released": True, "previousOwner": owner},
    )


@router.post("/cleanup")
async def cleanup_stuck_syncs(
    request: Request,
    token: str = Depends(require_bearer_token),
    orchestrator: TenantSyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    cleaned = await orchestrator.tracker.cleanup_stuck_syncs(get_settings().sync_stuck_after_s)
    return success_response(request=request, data={"cleanedCount": cleaned})


@router.get("/statistics")
async def sync_statistics(
    request: Request,
    token: str = Depends(require_bearer_token),
    orchestrator: TenantSyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    stats = await orchestrator.tracker.statistics(get_settings().sync_stuck_after_s)
    return success_response(request=request, data=stats.to_payload())


@router.get("/all")
async def list_sync_statuses(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    token: str = Depends(require_bearer_token),
    orchestrator: TenantSyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    snapshots = await orchestrator.tracker.list_statuses(status=status, limit=limit)
    items = []
    for snapshot in snapshots:
        payload = snapshot.to_payload()
        payload.pop("collections", None)
        items.append(payload)
    return success_response(request=request, data={"count": len(items), "items": items})
