"""Periodic reconciliation of store rows against the compute provider.

One tick lists every pool service, probes the ones that finished deploying,
derives a pool status per instance, evicts dead unbound instances, marks
failed bound ones `crashed`, forgets rows the provider no longer reports and
tops the pool back up to the configured idle minimum.

Every step is isolated: a failing probe, teardown or creation is logged and
skipped. Only a failed status listing aborts the tick, since acting on a
partial listing would evict live instances.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from agent_pool.core.logging import get_logger
from agent_pool.core.time import age_ms
from agent_pool.db import pool_store
from agent_pool.models.pool_status import DeployStatus, PoolStatus
from agent_pool.services.pool.batch_status import fetch_batch_status
from agent_pool.services.pool.lifecycle import create_pool_instance
from agent_pool.services.pool.status import derive_status

if TYPE_CHECKING:
    from agent_pool.core.config import Settings
    from agent_pool.db.session import SessionMaker
    from agent_pool.models.instances import Instance
    from agent_pool.services.pool.batch_status import ServiceStatus
    from agent_pool.services.pool.claims import ProvisioningTracker
    from agent_pool.services.pool.compute import RailwayClient
    from agent_pool.services.pool.infra import ResourceLifecycleManager
    from agent_pool.services.pool.instance_client import InstanceClient
    from agent_pool.services.pool.metrics import PoolMetrics
    from agent_pool.services.pool.status import ProbeResult
    from agent_pool.services.pool.tick_lock import TickLease

logger = get_logger(__name__)

EVICTED_STATUSES = frozenset({PoolStatus.DEAD, PoolStatus.SLEEPING})
BOUND_FAILURE_STATUSES = frozenset({PoolStatus.DEAD, PoolStatus.SLEEPING, PoolStatus.CRASHED})
FENCEABLE_STATUSES = (PoolStatus.IDLE, PoolStatus.STARTING, PoolStatus.SLEEPING, PoolStatus.DEAD)


@dataclass
class TickReport:
    """Summary of one tick, returned to operator routes and logged."""

    skipped: str | None = None
    listed: int = 0
    probed: int = 0
    updated: int = 0
    crashed: list[str] = field(default_factory=list)
    torn_down: list[str] = field(default_factory=list)
    forgotten: list[str] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    create_failures: int = 0
    counts: dict[str, int] = field(default_factory=dict)


def _instance_age_ms(row: Instance | None) -> float:
    if row is None:
        return 0.0
    if row.is_bound:
        return age_ms(row.claimed_at or row.created_at)
    return age_ms(row.created_at)


class PoolReconciler:
    def __init__(
        self,
        settings: Settings,
        session_maker: SessionMaker,
        *,
        compute: RailwayClient,
        manager: ResourceLifecycleManager,
        instance_client: InstanceClient,
        tracker: ProvisioningTracker,
        metrics: PoolMetrics,
        lease: TickLease | None = None,
    ) -> None:
        self._settings = settings
        self._session_maker = session_maker
        self._compute = compute
        self._manager = manager
        self._instance_client = instance_client
        self._tracker = tracker
        self._metrics = metrics
        self._lease = lease
        self.tick_count = 0

    async def tick(self) -> TickReport:
        """Run one reconciliation pass; never raises."""
        if not self._settings.railway_environment_id or not self._compute.is_configured():
            logger.warning("pool.tick.skipped", extra={"reason": "compute_unconfigured"})
            return TickReport(skipped="compute_unconfigured")
        if self._lease is not None and not self._lease.acquire():
            logger.info("pool.tick.skipped", extra={"reason": "lease_held"})
            return TickReport(skipped="lease_held")

        started = time.monotonic()
        self.tick_count += 1
        try:
            report = await self._run()
        except Exception:
            logger.exception("pool.tick.failed", extra={"tick": self.tick_count})
            self._metrics.record_tick("failed", time.monotonic() - started)
            return TickReport(skipped="failed")
        finally:
            if self._lease is not None:
                self._lease.release()

        self._metrics.record_tick("ok", time.monotonic() - started)
        self._metrics.set_counts(report.counts)
        logger.info(
            "pool.tick.completed",
            extra={
                "tick": self.tick_count,
                "listed": report.listed,
                "probed": report.probed,
                "crashed": len(report.crashed),
                "torn_down": len(report.torn_down),
                "created": len(report.created),
                "create_failures": report.create_failures,
                **report.counts,
            },
        )
        return report

    async def _run(self) -> TickReport:
        report = TickReport()
        services = await fetch_batch_status(self._compute, self._settings, self._session_maker)
        report.listed = len(services)

        async with self._session_maker() as session:
            rows = {row.id: row for row in await pool_store.list_instances(session)}

        probes = await self._probe(services, rows)
        report.probed = len(probes)

        evict: list[ServiceStatus] = []
        for service in services:
            row = rows.get(service.instance_id)
            if row is None:
                # Rows are written before services are created; a service
                # without one is left to the orphan scan.
                continue
            try:
                if await self._apply(service, row, probes.get(service.instance_id), report):
                    evict.append(service)
            except Exception:
                logger.exception(
                    "pool.tick.instance_failed",
                    extra={"instance_id": service.instance_id},
                )

        await self._forget_unreported(services, rows, report)

        if self._settings.orphan_scan_every_ticks and (
            self.tick_count % self._settings.orphan_scan_every_ticks == 0
        ):
            try:
                await self._scan_orphans(services, report)
            except Exception:
                logger.exception("pool.tick.orphan_scan_failed")

        await asyncio.gather(*(self._evict(service, report) for service in evict))

        await self._replenish(report)
        async with self._session_maker() as session:
            report.counts = await pool_store.get_counts(session)
        return report

    def _resolve_url(self, service: ServiceStatus, row: Instance | None) -> str | None:
        if row is not None and row.url:
            return row.url
        return service.public_url

    async def _probe(
        self,
        services: list[ServiceStatus],
        rows: dict[str, Instance],
    ) -> dict[str, ProbeResult | None]:
        targets: list[tuple[str, str]] = []
        for service in services:
            if service.deploy_status != DeployStatus.SUCCESS.value:
                continue
            row = rows.get(service.instance_id)
            if row is None or service.instance_id in self._tracker:
                continue
            # Idle rows proved healthy once; a slept service wakes too slowly for the probe.
            if row.status in (PoolStatus.CLAIMING, PoolStatus.IDLE, PoolStatus.CRASHED):
                continue
            url = self._resolve_url(service, row)
            if url:
                targets.append((service.instance_id, url))

        results = await asyncio.gather(
            *(self._instance_client.probe(url) for _, url in targets),
            return_exceptions=True,
        )
        probes: dict[str, ProbeResult | None] = {}
        for (instance_id, _), result in zip(targets, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    "pool.tick.probe_failed",
                    extra={"instance_id": instance_id, "error": str(result)},
                )
                probes[instance_id] = None
            else:
                probes[instance_id] = result
        return probes

    async def _apply(
        self,
        service: ServiceStatus,
        row: Instance,
        probe: ProbeResult | None,
        report: TickReport,
    ) -> bool:
        """Persist the derived status for one listed instance.

        Returns True when the instance should be torn down.
        """
        url = self._resolve_url(service, row)
        async with self._session_maker() as session:
            await pool_store.update_infra_status(
                session,
                service.instance_id,
                deploy_status=service.deploy_status,
                url=url,
            )

        # Mid-claim rows belong to the claimant; crashed rows wait for an operator.
        if row.status in (PoolStatus.CLAIMING, PoolStatus.CRASHED):
            return False
        if row.status == PoolStatus.IDLE and service.deploy_status == DeployStatus.SUCCESS.value:
            status = PoolStatus.IDLE
        else:
            status = derive_status(
                service.deploy_status,
                probe,
                _instance_age_ms(row),
                is_claimed=row.is_bound,
                stuck_timeout_ms=self._settings.stuck_timeout_ms,
                claimed_unreachable_timeout_ms=self._settings.claimed_unreachable_timeout_ms,
            )

        if row.is_bound and status in BOUND_FAILURE_STATUSES:
            async with self._session_maker() as session:
                if await pool_store.mark_crashed(
                    session,
                    row.id,
                    expected=[PoolStatus.CLAIMED, PoolStatus.SLEEPING],
                ):
                    report.crashed.append(row.id)
                    logger.warning(
                        "pool.tick.marked_crashed",
                        extra={"instance_id": row.id, "deploy_status": service.deploy_status},
                    )
            return False
        if status in EVICTED_STATUSES:
            return True

        async with self._session_maker() as session:
            written = await pool_store.upsert_instance(
                session,
                instance_id=row.id,
                name=service.name,
                status=status,
                url=url,
            )
        if written:
            report.updated += 1
        if status != row.status:
            logger.info(
                "pool.tick.status_changed",
                extra={"instance_id": row.id, "from": row.status, "to": status.value},
            )
        return False

    async def _evict(self, service: ServiceStatus, report: TickReport) -> None:
        # Fence the row away from claimants before tearing it down.
        async with self._session_maker() as session:
            fenced = await pool_store.update_status(
                session,
                service.instance_id,
                PoolStatus.DEAD,
                expected=FENCEABLE_STATUSES,
            )
        if not fenced:
            logger.info(
                "pool.tick.evict_skipped",
                extra={"instance_id": service.instance_id},
            )
            return
        try:
            await self._manager.safe_destroy(
                service.instance_id,
                service_id=service.service_id,
                project_id=service.project_id,
            )
        except Exception:
            logger.exception(
                "pool.tick.teardown_failed",
                extra={"instance_id": service.instance_id},
            )
            return
        self._metrics.instances_destroyed_total.labels(reason="dead").inc()
        report.torn_down.append(service.instance_id)
        logger.info("pool.tick.torn_down", extra={"instance_id": service.instance_id})

    async def _forget_unreported(
        self,
        services: list[ServiceStatus],
        rows: dict[str, Instance],
        report: TickReport,
    ) -> None:
        """Handle rows whose service the provider no longer lists.

        Bound rows surface as crashed. Unbound rows have their provider
        resources released and are deleted. Starting rows are only dropped
        once they exceed the stuck timeout, since their service may still be
        on its way.
        """
        reported = {service.instance_id for service in services}
        async with self._session_maker() as session:
            unreported = await pool_store.find_unreported(session, reported)

        for row in unreported:
            if row.is_bound:
                if row.status != PoolStatus.CRASHED:
                    async with self._session_maker() as session:
                        if await pool_store.mark_crashed(session, row.id):
                            report.crashed.append(row.id)
                continue
            try:
                await self._manager.release_resources(row.id)
            except Exception:
                logger.exception("pool.tick.release_failed", extra={"instance_id": row.id})

        stale_starting = [
            row.id
            for row in rows.values()
            if row.id not in reported
            and row.status == PoolStatus.STARTING
            and row.id not in self._tracker
            and age_ms(row.created_at) >= self._settings.stuck_timeout_ms
        ]
        async with self._session_maker() as session:
            forgotten = await pool_store.delete_unreported(session, reported)
            for instance_id in stale_starting:
                try:
                    await self._manager.release_resources(instance_id)
                except Exception:
                    logger.exception(
                        "pool.tick.release_failed",
                        extra={"instance_id": instance_id},
                    )
                if await pool_store.delete_instance_rows(session, instance_id):
                    forgotten.append(instance_id)
        if forgotten:
            report.forgotten.extend(forgotten)
            logger.info("pool.tick.forgotten", extra={"instance_ids": forgotten})

    async def _scan_orphans(self, services: list[ServiceStatus], report: TickReport) -> None:
        """Tear down pool-named services that have no store row at all."""
        async with self._session_maker() as session:
            known = {row.id for row in await pool_store.list_instances(session)}
        for service in services:
            if service.instance_id in known or service.instance_id in self._tracker:
                continue
            logger.warning(
                "pool.tick.orphan_service",
                extra={"instance_id": service.instance_id, "service_id": service.service_id},
            )
            try:
                await self._manager.safe_destroy(
                    service.instance_id,
                    service_id=service.service_id,
                    project_id=service.project_id,
                )
            except Exception:
                logger.exception(
                    "pool.tick.orphan_cleanup_failed",
                    extra={"instance_id": service.instance_id},
                )
                continue
            self._metrics.instances_destroyed_total.labels(reason="orphan").inc()
            report.orphans.append(service.instance_id)

    async def _replenish(self, report: TickReport) -> None:
        async with self._session_maker() as session:
            counts = await pool_store.get_counts(session)
        available = counts[PoolStatus.IDLE.value] + counts[PoolStatus.STARTING.value]
        deficit = self._settings.pool_min_idle - available
        if deficit <= 0:
            return
        logger.info("pool.tick.replenishing", extra={"deficit": deficit, "available": available})
        results = await asyncio.gather(
            *(
                create_pool_instance(self._settings, self._session_maker, self._manager)
                for _ in range(deficit)
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                report.create_failures += 1
                self._metrics.instances_created_total.labels(result="failed").inc()
                logger.error(
                    "pool.tick.create_failed",
                    extra={"error": str(result)},
                )
            else:
                report.created.append(result.instance_id)
                self._metrics.instances_created_total.labels(result="ok").inc()
