"""Find and delete provider resources that no live instance references.

A resource is an orphan when its provider still lists it but neither the
store's active resource rows nor the compute provider's live instance set
account for it. This runs on operator demand, never inside the tick.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlmodel import col, select

from agent_pool.core.logging import get_logger
from agent_pool.models.instance_resources import InstanceResource
from agent_pool.services.pool.batch_status import fetch_batch_status
from agent_pool.services.pool.providers.base import ToolKind

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from agent_pool.core.config import Settings
    from agent_pool.db.session import SessionMaker
    from agent_pool.services.pool.compute import RailwayClient
    from agent_pool.services.pool.providers.base import InventoryItem, ProviderRegistry

logger = get_logger(__name__)


@dataclass
class OrphanDeletion:
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def find_orphans(
    inventory: Iterable[InventoryItem],
    active_resource_ids: set[str],
    live_instance_ids: set[str],
) -> list[InventoryItem]:
    """Pure filter: keep inventory items referenced by neither set."""
    orphans: list[InventoryItem] = []
    seen: set[str] = set()
    for item in inventory:
        if item.resource_id in seen:
            continue
        seen.add(item.resource_id)
        if item.resource_id in active_resource_ids:
            continue
        if item.instance_id is not None and item.instance_id in live_instance_ids:
            continue
        orphans.append(item)
    return orphans


async def active_resource_ids(session_maker: SessionMaker) -> dict[ToolKind, set[str]]:
    """Resource ids referenced by active store rows, grouped by kind."""
    statement = select(col(InstanceResource.tool_id), col(InstanceResource.resource_id)).where(
        col(InstanceResource.status) == "active",
    )
    grouped: dict[ToolKind, set[str]] = defaultdict(set)
    async with session_maker() as session:
        for tool_id, resource_id in await session.exec(statement):
            try:
                grouped[ToolKind(tool_id)].add(resource_id)
            except ValueError:
                logger.warning("pool.orphans.unknown_tool_row", extra={"tool_id": tool_id})
    return dict(grouped)


async def live_instance_ids(
    compute: RailwayClient,
    settings: Settings,
    session_maker: SessionMaker,
) -> set[str]:
    """Instance ids the compute provider currently runs.

    Raises when the listing fails: an empty live set would turn every
    warm instance's resources into orphans.
    """
    services = await fetch_batch_status(compute, settings, session_maker)
    return {service.instance_id for service in services}


async def scan_orphans(
    registry: ProviderRegistry,
    *,
    active_ids: Mapping[ToolKind, set[str]],
    live_ids: set[str],
    kinds: Iterable[ToolKind] | None = None,
) -> dict[ToolKind, list[InventoryItem]]:
    wanted = list(kinds) if kinds is not None else None
    found: dict[ToolKind, list[InventoryItem]] = {}
    for provider in registry.configured(wanted):
        inventory = await provider.list_inventory()
        orphans = find_orphans(inventory, active_ids.get(provider.kind, set()), live_ids)
        logger.info(
            "pool.orphans.scanned",
            extra={
                "tool_id": provider.kind.value,
                "inventory": len(inventory),
                "orphans": len(orphans),
            },
        )
        found[provider.kind] = orphans
    return found


async def delete_orphans(
    registry: ProviderRegistry,
    orphans: Mapping[ToolKind, list[InventoryItem]],
) -> OrphanDeletion:
    result = OrphanDeletion()
    for kind, items in orphans.items():
        provider = registry[kind]
        for item in items:
            try:
                ok = await provider.destroy(item.resource_id)
            except Exception as exc:
                logger.warning(
                    "pool.orphans.delete_failed",
                    extra={
                        "tool_id": kind.value,
                        "resource_id": item.resource_id,
                        "error": str(exc),
                    },
                )
                ok = False
            (result.deleted if ok else result.failed).append(item.resource_id)
    logger.info(
        "pool.orphans.deleted",
        extra={"deleted": len(result.deleted), "failed": len(result.failed)},
    )
    return result
