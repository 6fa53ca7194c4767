from __future__ import annotations

import argparse
import asyncio
import json
import sys

from crmsync.core.logging import configure_logging
from crmsync.services.sync.background import BackgroundSyncRunner
from crmsync.services.sync.factory import build_orchestrator


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync one tenant from the wrapper API")
    parser.add_argument("tenant_id", help="Upstream tenant identifier")
    parser.add_argument("token", help="Bearer token forwarded to the wrapper API")
    parser.add_argument("--force", action="store_true", help="Re-sync even if the last run completed")
    parser.add_argument(
        "--wait",
        action="store_true",
        help="Wait for the background collections before exiting",
    )
    parser.add_argument("--timeout", type=float, default=600.0, help="Seconds to wait with --wait")
    return parser


async def _sync(args: argparse.Namespace) -> int:
    # Run the background phase in this process so --wait can observe it.
    runner = BackgroundSyncRunner()
    orchestrator = build_orchestrator(background=runner)
    try:
        result = await orchestrator.sync_tenant(args.tenant_id, args.token, force=args.force)
        print(json.dumps(result.to_payload(), indent=2, default=str))
        if not result.success:
            return 2
        if result.background_sync_started and args.wait:
            state = await runner.wait(args.tenant_id, timeout=args.timeout)
            if state is not None:
                print(json.dumps({"background": state.to_payload()}, indent=2))
            snapshot = await orchestrator.tracker.get(args.tenant_id)
            if snapshot is not None:
                print(json.dumps({"syncStatus": snapshot.to_payload()}, indent=2))
        return 0
    finally:
        # Without --wait the background phase is cancelled; its lease expires and cleanup fails it.
        await runner.shutdown()
        await orchestrator.aclose()


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_sync(args))
    except Exception as exc:  # noqa: BLE001 - surface sync failures clearly
        print(f"sync_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
