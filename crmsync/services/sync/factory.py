from __future__ import annotations

from crmsync.core.config import Settings, get_settings
from crmsync.persistence.db import SessionFactory, get_session_factory
from crmsync.services.resilience import default_retry_policy
from crmsync.services.sync.background import ArqBackgroundDispatcher, BackgroundDispatcher, BackgroundSyncRunner
from crmsync.services.sync.orchestrator import TenantSyncOrchestrator
from crmsync.services.sync.status import SyncStatusTracker
from crmsync.services.sync.writer import CollectionWriter
from crmsync.services.wrapper.client import WrapperClient


def build_background_dispatcher(settings: Settings) -> BackgroundDispatcher:
    # "queue" hands background phases to the arq sync worker; anything else runs in-process.
    if settings.sync_background_mode.lower() == "queue":
        return ArqBackgroundDispatcher(redis_url=settings.redis_url, queue_name=settings.sync_queue_name)
    return BackgroundSyncRunner()


def build_orchestrator(
    settings: Settings | None = None,
    *,
    session_factory: SessionFactory | None = None,
    background: BackgroundDispatcher | None = None,
) -> TenantSyncOrchestrator:
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    return TenantSyncOrchestrator(
        wrapper=WrapperClient(
            settings.wrapper_api_url,
            timeout_s=settings.wrapper_timeout_ms / 1000.0,
            page_size=settings.wrapper_page_size,
        ),
        tracker=SyncStatusTracker(session_factory, lock_ttl_s=settings.sync_lock_ttl_s),
        writer=CollectionWriter(batch_size=settings.sync_batch_size),
        session_factory=session_factory,
        background=background or build_background_dispatcher(settings),
        retry_policy=default_retry_policy(),
    )
