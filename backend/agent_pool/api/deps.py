"""Reusable FastAPI dependencies and the per-app pool service graph."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import Depends, Request

from agent_pool.core.logging import get_logger
from agent_pool.db.session import get_session
from agent_pool.services.pool.claims import ClaimService, ProvisioningTracker
from agent_pool.services.pool.compute import RailwayClient
from agent_pool.services.pool.infra import ResourceLifecycleManager
from agent_pool.services.pool.instance_client import InstanceClient
from agent_pool.services.pool.lifecycle import PoolOperations
from agent_pool.services.pool.metrics import PoolMetrics
from agent_pool.services.pool.providers.base import build_provider_registry
from agent_pool.services.pool.reconcile import PoolReconciler
from agent_pool.services.pool.scheduler import TickScheduler
from agent_pool.services.pool.tick_lock import TickLease

if TYPE_CHECKING:
    import httpx

    from agent_pool.core.config import Settings
    from agent_pool.db.session import SessionMaker
    from agent_pool.services.pool.providers.base import ProviderRegistry

logger = get_logger(__name__)
SESSION_DEP = Depends(get_session)


@dataclass
class PoolServices:
    """Everything the routes and the tick loop share for one app instance."""

    settings: Settings
    session_maker: SessionMaker
    registry: ProviderRegistry
    compute: RailwayClient
    manager: ResourceLifecycleManager
    instance_client: InstanceClient
    tracker: ProvisioningTracker
    metrics: PoolMetrics
    reconciler: PoolReconciler
    claims: ClaimService
    ops: PoolOperations
    scheduler: TickScheduler


def build_pool_services(
    settings: Settings,
    session_maker: SessionMaker,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    metrics: PoolMetrics | None = None,
) -> PoolServices:
    """Wire providers, clients and services from one settings object.

    `transport` replaces every outbound HTTP transport, which lets tests run
    the whole graph against an `httpx.MockTransport`.
    """
    metrics = metrics or PoolMetrics()
    registry = build_provider_registry(settings, session_maker, transport=transport)
    compute = RailwayClient(settings, transport=transport)
    manager = ResourceLifecycleManager(settings, session_maker, compute, registry)
    instance_client = InstanceClient(settings, transport=transport)
    tracker = ProvisioningTracker()
    lease = None
    if settings.tick_lock_redis_url:
        lease = TickLease(
            settings.tick_lock_key,
            settings.tick_lock_ttl_seconds,
            redis_url=settings.tick_lock_redis_url,
        )
    reconciler = PoolReconciler(
        settings,
        session_maker,
        compute=compute,
        manager=manager,
        instance_client=instance_client,
        tracker=tracker,
        metrics=metrics,
        lease=lease,
    )
    claims = ClaimService(
        settings,
        session_maker,
        instance_client=instance_client,
        tracker=tracker,
        metrics=metrics,
    )
    ops = PoolOperations(
        settings,
        session_maker,
        compute=compute,
        manager=manager,
        reconciler=reconciler,
        metrics=metrics,
    )
    logger.info(
        "pool.services.built",
        extra={
            "configured_tools": [provider.kind.value for provider in registry.configured()],
            "tick_lease": lease is not None,
        },
    )
    return PoolServices(
        settings=settings,
        session_maker=session_maker,
        registry=registry,
        compute=compute,
        manager=manager,
        instance_client=instance_client,
        tracker=tracker,
        metrics=metrics,
        reconciler=reconciler,
        claims=claims,
        ops=ops,
        scheduler=TickScheduler(reconciler, interval_seconds=settings.tick_interval_seconds),
    )


def get_pool_services(request: Request) -> PoolServices:
    return request.app.state.pool


SERVICES_DEP = Depends(get_pool_services)
