"""CLI script to find and delete provider resources no live instance uses."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Delete credential keys, inboxes and phone numbers that no live pool "
            "instance references."
        ),
    )
    parser.add_argument(
        "--tool",
        choices=["openrouter", "agentmail", "telnyx"],
        action="append",
        default=None,
        help="Limit the pass to one tool kind (repeatable; default: all configured)",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Delete without asking for confirmation",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List orphans and exit without deleting anything",
    )
    return parser.parse_args()


def _confirm(total: int) -> bool:
    answer = input(f"Delete {total} orphaned resource(s)? [y/N] ")
    return answer.strip().lower() in {"y", "yes"}


async def _run() -> int:
    from agent_pool.core.config import settings
    from agent_pool.db.session import async_session_maker
    from agent_pool.services.pool.compute import RailwayClient
    from agent_pool.services.pool.orphans import (
        active_resource_ids,
        delete_orphans,
        live_instance_ids,
        scan_orphans,
    )
    from agent_pool.services.pool.providers.base import ToolKind, build_provider_registry

    args = _parse_args()
    kinds = [ToolKind(tool) for tool in args.tool] if args.tool else None
    registry = build_provider_registry(settings, async_session_maker)
    if not registry.configured(kinds):
        sys.stdout.write("no configured providers for the requested tools\n")
        return 0

    compute = RailwayClient(settings)
    try:
        live_ids = await live_instance_ids(compute, settings, async_session_maker)
    except Exception as exc:
        message = f"could not list live instances; refusing to scan: {exc}"
        raise SystemExit(message) from exc
    active_ids = await active_resource_ids(async_session_maker)
    orphans = await scan_orphans(
        registry,
        active_ids=active_ids,
        live_ids=live_ids,
        kinds=kinds,
    )

    sys.stdout.write(f"live_instances={len(live_ids)}\n")
    total = 0
    for kind, items in orphans.items():
        sys.stdout.write(f"{kind.value}: {len(items)} orphan(s)\n")
        for item in items:
            sys.stdout.write(f"- {item.resource_id} {item.label}\n")
        total += len(items)

    if total == 0 or args.dry_run:
        return 0
    if not args.yes and not _confirm(total):
        sys.stdout.write("aborted\n")
        return 0

    result = await delete_orphans(registry, orphans)
    sys.stdout.write(f"deleted={len(result.deleted)} failed={len(result.failed)}\n")
    if result.failed:
        sys.stdout.write("failed:\n")
        for resource_id in result.failed:
            sys.stdout.write(f"- {resource_id}\n")
        return 1
    return 0


def main() -> None:
    """Run the async CLI workflow and exit with its return code."""
    raise SystemExit(asyncio.run(_run()))


if __name__ == "__main__":
    main()
