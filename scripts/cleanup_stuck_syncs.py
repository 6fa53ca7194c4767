from __future__ import annotations

import asyncio

from crmsync.core.config import get_settings
from crmsync.core.logging import configure_logging
from crmsync.persistence.db import get_session_factory
from crmsync.services.sync.status import SyncStatusTracker


async def cleanup() -> None:
    # Fail syncs whose lease expired long ago so the next trigger can retry them.
    configure_logging()
    settings = get_settings()
    tracker = SyncStatusTracker(get_session_factory(), lock_ttl_s=settings.sync_lock_ttl_s)
    cleaned = await tracker.cleanup_stuck_syncs(settings.sync_stuck_after_s)
    print(f"cleaned_stuck_syncs={cleaned}")


if __name__ == "__main__":
    asyncio.run(cleanup())
