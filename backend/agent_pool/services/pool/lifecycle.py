"""Operator-facing pool operations: create, drain, kill, dismiss, replenish."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agent_pool.core.logging import get_logger
from agent_pool.db import pool_store
from agent_pool.models.pool_status import PoolStatus
from agent_pool.services.pool.batch_status import fetch_batch_status
from agent_pool.services.pool.errors import (
    ComputeProviderError,
    DismissRefusedError,
    InstanceNotFoundError,
)
from agent_pool.services.pool.infra import DEFAULT_TOOLS
from agent_pool.services.pool.secrets import generate_instance_id

if TYPE_CHECKING:
    from agent_pool.core.config import Settings
    from agent_pool.db.session import SessionMaker
    from agent_pool.services.pool.compute import RailwayClient
    from agent_pool.services.pool.infra import CreatedInstance, ResourceLifecycleManager
    from agent_pool.services.pool.metrics import PoolMetrics
    from agent_pool.services.pool.providers.base import ToolKind
    from agent_pool.services.pool.reconcile import PoolReconciler, TickReport

logger = get_logger(__name__)

MAX_REPLENISH = 20
MAX_REPLENISH_CONCURRENCY = 5
MAX_DRAIN = 20
MAX_DRAIN_CONCURRENCY = 10
DRAINABLE_STATUSES = (PoolStatus.IDLE, PoolStatus.STARTING, PoolStatus.DEAD)

Emit = Callable[[dict[str, Any]], Awaitable[None]]


async def create_pool_instance(
    settings: Settings,
    session_maker: SessionMaker,
    manager: ResourceLifecycleManager,
    *,
    instance_id: str | None = None,
    tools: Sequence[ToolKind] = DEFAULT_TOOLS,
) -> CreatedInstance:
    """Create one pool instance, recording it as `starting` before any remote call.

    The early row keeps the tick from treating the new service as an orphan;
    it is removed again if creation fails.
    """
    instance_id = instance_id or generate_instance_id()
    name = f"{settings.instance_name_prefix}{instance_id}"
    async with session_maker() as session:
        await pool_store.insert_starting_instance(session, instance_id=instance_id, name=name)
    logger.info("pool.instance.creating", extra={"instance_id": instance_id})

    try:
        created = await manager.create_instance(instance_id, name, tools)
    except Exception:
        async with session_maker() as session:
            await pool_store.delete_instance_rows(session, instance_id)
        raise

    if created.url:
        async with session_maker() as session:
            await pool_store.upsert_instance(
                session,
                instance_id=instance_id,
                name=name,
                status=PoolStatus.STARTING,
                url=created.url,
            )
    return created


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


@dataclass
class DrainResult:
    drained: list[str] = field(default_factory=list)
    failed: int = 0
    skipped: int = 0


@dataclass
class ReplenishResult:
    created: list[CreatedInstance] = field(default_factory=list)
    failed: int = 0
    tick: TickReport | None = None


async def _discard(event: dict[str, Any]) -> None:
    del event


def _step(progress: dict[str, Any], step: str, status: str, message: str = "") -> dict[str, Any]:
    return {"type": "step", **progress, "step": step, "status": status, "message": message}


async def _bounded(count: int, concurrency: int, job: Callable[[int], Awaitable[None]]) -> None:
    semaphore = asyncio.Semaphore(concurrency)

    async def run(index: int) -> None:
        async with semaphore:
            await job(index)

    await asyncio.gather(*(run(index) for index in range(count)))


async def _stream(
    work: Callable[[Emit], Awaitable[dict[str, Any]]],
) -> AsyncIterator[dict[str, Any]]:
    """Yield events emitted by `work`, then its summary event."""
    queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    async def emit(event: dict[str, Any]) -> None:
        await queue.put(event)

    task = asyncio.create_task(work(emit))
    task.add_done_callback(lambda _: queue.put_nowait(None))
    while (event := await queue.get()) is not None:
        yield event
    yield await task


class PoolOperations:
    def __init__(
        self,
        settings: Settings,
        session_maker: SessionMaker,
        *,
        compute: RailwayClient,
        manager: ResourceLifecycleManager,
        reconciler: PoolReconciler,
        metrics: PoolMetrics,
    ) -> None:
        self._settings = settings
        self._session_maker = session_maker
        self._compute = compute
        self._manager = manager
        self._reconciler = reconciler
        self._metrics = metrics

    @property
    def reconciler(self) -> PoolReconciler:
        return self._reconciler

    async def counts(self) -> dict[str, int]:
        async with self._session_maker() as session:
            return await pool_store.get_counts(session)

    async def create_instance(
        self,
        *,
        instance_id: str | None = None,
        tools: Sequence[ToolKind] = DEFAULT_TOOLS,
    ) -> CreatedInstance:
        try:
            created = await create_pool_instance(
                self._settings,
                self._session_maker,
                self._manager,
                instance_id=instance_id,
                tools=tools,
            )
        except Exception:
            self._metrics.instances_created_total.labels(result="failed").inc()
            raise
        self._metrics.instances_created_total.labels(result="ok").inc()
        return created

    async def _service_locations(self, instance_ids: list[str]) -> dict[str, tuple[str, str]]:
        """Map instance id to (service id, project id) for the fallback destroy path."""
        if not instance_ids or not self._compute.is_configured():
            return {}
        try:
            services = await fetch_batch_status(
                self._compute,
                self._settings,
                self._session_maker,
                instance_ids,
            )
        except ComputeProviderError as exc:
            logger.warning("pool.ops.service_lookup_failed", extra={"error": str(exc)})
            return {}
        return {
            service.instance_id: (service.service_id, service.project_id) for service in services
        }

    async def _destroy(
        self,
        instance_id: str,
        location: tuple[str, str] | None,
        reason: str,
    ) -> None:
        service_id, project_id = location or (None, None)
        await self._manager.safe_destroy(
            instance_id,
            service_id=service_id,
            project_id=project_id,
        )
        self._metrics.instances_destroyed_total.labels(reason=reason).inc()

    async def _drain(self, count: int, concurrency: int, emit: Emit) -> DrainResult:
        count = _clamp(count, 1, MAX_DRAIN)
        concurrency = _clamp(concurrency, 1, MAX_DRAIN_CONCURRENCY)
        async with self._session_maker() as session:
            candidates = await pool_store.list_by_status(session, DRAINABLE_STATUSES, limit=count)
        result = DrainResult()
        if not candidates:
            return result
        locations = await self._service_locations([row.id for row in candidates])
        logger.info("pool.drain.started", extra={"count": len(candidates)})

        async def job(index: int) -> None:
            row = candidates[index]
            progress = {"instanceNum": index + 1, "instanceId": row.id, "instanceName": row.name}
            # Fence the row away from claimants before tearing it down.
            async with self._session_maker() as session:
                fenced = await pool_store.update_status(
                    session,
                    row.id,
                    PoolStatus.DEAD,
                    expected=DRAINABLE_STATUSES,
                )
                current = await pool_store.get_instance(session, row.id)
            if not fenced or current is None or current.is_bound:
                result.skipped += 1
                logger.info("pool.drain.skipped", extra={"instance_id": row.id})
                await emit(_step(progress, "skip", "ok", "no longer unclaimed"))
                return
            await emit(_step(progress, "destroy", "start"))
            try:
                await self._destroy(row.id, locations.get(row.id), "drain")
            except Exception as exc:
                result.failed += 1
                logger.exception("pool.drain.failed", extra={"instance_id": row.id})
                await emit(_step(progress, "error", "fail", str(exc)))
                return
            result.drained.append(row.id)
            await emit(_step(progress, "done", "ok"))

        await _bounded(len(candidates), concurrency, job)
        logger.info(
            "pool.drain.completed",
            extra={
                "drained": len(result.drained),
                "failed": result.failed,
                "skipped": result.skipped,
            },
        )
        return result

    async def drain(self, count: int, *, concurrency: int = 5) -> DrainResult:
        """Destroy up to `count` unclaimed instances, oldest first."""
        return await self._drain(count, concurrency, _discard)

    def drain_events(self, count: int, *, concurrency: int) -> AsyncIterator[dict[str, Any]]:
        async def work(emit: Emit) -> dict[str, Any]:
            result = await self._drain(count, concurrency, emit)
            return {
                "type": "complete",
                "drained": len(result.drained),
                "failed": result.failed,
                "drainedIds": result.drained,
                "counts": await self.counts(),
            }

        return _stream(work)

    async def kill(self, instance_id: str) -> None:
        """Destroy an instance whether or not it is claimed."""
        async with self._session_maker() as session:
            instance = await pool_store.get_instance(session, instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        locations = await self._service_locations([instance_id])
        logger.info(
            "pool.instance.killing",
            extra={"instance_id": instance_id, "agent_name": instance.agent_name},
        )
        await self._destroy(instance_id, locations.get(instance_id), "kill")

    async def dismiss(self, instance_id: str) -> None:
        """Clean up a crashed instance that was never bound to an agent."""
        async with self._session_maker() as session:
            instance = await pool_store.get_instance(session, instance_id)
        if instance is None or instance.status != PoolStatus.CRASHED:
            raise InstanceNotFoundError(instance_id)
        if instance.agent_name:
            raise DismissRefusedError(
                f"Cannot dismiss claimed agent {instance_id} ({instance.agent_name}); "
                "use kill instead",
            )
        locations = await self._service_locations([instance_id])
        logger.info("pool.instance.dismissing", extra={"instance_id": instance_id})
        await self._destroy(instance_id, locations.get(instance_id), "dismiss")

    async def verify_instance_token(self, instance_id: str, gateway_token: str) -> bool:
        async with self._session_maker() as session:
            return await pool_store.find_instance_by_token(session, instance_id, gateway_token)

    async def self_destruct(self, instance_id: str) -> None:
        """Background teardown requested by the instance itself; never raises."""
        logger.info("pool.instance.self_destruct", extra={"instance_id": instance_id})
        try:
            await self.kill(instance_id)
        except InstanceNotFoundError:
            logger.warning(
                "pool.instance.self_destruct_missing",
                extra={"instance_id": instance_id},
            )
        except Exception:
            logger.exception(
                "pool.instance.self_destruct_failed",
                extra={"instance_id": instance_id},
            )

    async def _replenish(self, count: int, concurrency: int, emit: Emit) -> ReplenishResult:
        count = min(count, MAX_REPLENISH)
        concurrency = _clamp(concurrency, 1, MAX_REPLENISH_CONCURRENCY)
        result = ReplenishResult()

        async def job(index: int) -> None:
            progress: dict[str, Any] = {"instanceNum": index + 1}
            await emit(_step(progress, "create", "start"))
            try:
                created = await self.create_instance()
            except Exception as exc:
                result.failed += 1
                logger.exception("pool.replenish.create_failed", extra={"instance_num": index + 1})
                await emit(_step(progress, "error", "fail", str(exc)))
                return
            result.created.append(created)
            instance = {"id": created.instance_id, "name": created.name, "url": created.url}
            await emit({"type": "instance", **progress, "instance": instance})
            await emit(_step({**progress, "instanceId": created.instance_id}, "done", "ok"))

        await _bounded(count, concurrency, job)
        logger.info(
            "pool.replenish.completed",
            extra={"created": len(result.created), "failed": result.failed},
        )
        return result

    async def replenish(self, count: int = 0, *, concurrency: int = 5) -> ReplenishResult:
        """Create `count` instances now, or run a tick when `count` is 0."""
        if count <= 0:
            return ReplenishResult(tick=await self._reconciler.tick())
        return await self._replenish(count, concurrency, _discard)

    def replenish_events(self, count: int, *, concurrency: int) -> AsyncIterator[dict[str, Any]]:
        async def work(emit: Emit) -> dict[str, Any]:
            result = await self._replenish(max(count, 1), concurrency, emit)
            return {
                "type": "complete",
                "created": len(result.created),
                "failed": result.failed,
                "counts": await self.counts(),
            }

        return _stream(work)
