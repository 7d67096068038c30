"""Batched deploy-status listing across every compute project the pool uses."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlmodel import col, select

from agent_pool.core.logging import get_logger
from agent_pool.models.instance_infra import InstanceInfra
from agent_pool.services.pool.providers.base import instance_id_from_name

if TYPE_CHECKING:
    from agent_pool.core.config import Settings
    from agent_pool.db.session import SessionMaker
    from agent_pool.services.pool.compute import ListedService, RailwayClient

logger = get_logger(__name__)


@dataclass(frozen=True)
class ServiceStatus:
    """Provider-reported state of one pool instance's compute service."""

    instance_id: str
    service_id: str
    project_id: str
    name: str
    deploy_status: str | None
    domain: str | None
    image: str | None
    environment_ids: tuple[str, ...]

    @property
    def public_url(self) -> str | None:
        return f"https://{self.domain}" if self.domain else None


async def _tracked_project_ids(settings: Settings, session_maker: SessionMaker) -> list[str]:
    async with session_maker() as session:
        rows = await session.exec(select(col(InstanceInfra.provider_project_id)).distinct())
        recorded = {project_id for project_id in rows if project_id}
    ordered = [settings.railway_project_id] if settings.railway_project_id else []
    ordered.extend(sorted(recorded - set(ordered)))
    return ordered


def _to_status(service: ListedService, settings: Settings) -> ServiceStatus | None:
    if service.name == settings.pool_manager_service_name:
        return None
    instance_id = instance_id_from_name(service.name, settings.instance_name_prefix)
    if instance_id is None:
        return None
    env_id = settings.railway_environment_id
    if env_id and env_id not in service.environment_ids:
        return None
    return ServiceStatus(
        instance_id=instance_id,
        service_id=service.service_id,
        project_id=service.project_id,
        name=service.name,
        deploy_status=service.deploy_status,
        domain=service.domain,
        image=service.image,
        environment_ids=service.environment_ids,
    )


async def fetch_batch_status(
    compute: RailwayClient,
    settings: Settings,
    session_maker: SessionMaker,
    instance_ids: Iterable[str] | None = None,
) -> list[ServiceStatus]:
    """List pool services with one call per project.

    Raises `ComputeProviderError` if any project listing fails: a partial
    listing would make live instances look unreported.
    """
    wanted = set(instance_ids) if instance_ids is not None else None
    statuses: list[ServiceStatus] = []
    for project_id in await _tracked_project_ids(settings, session_maker):
        services = await compute.list_project_services(
            project_id,
            environment_id=settings.railway_environment_id or None,
        )
        for service in services:
            status = _to_status(service, settings)
            if status is None:
                continue
            if wanted is not None and status.instance_id not in wanted:
                continue
            statuses.append(status)
    logger.debug("pool.batch_status.fetched", extra={"count": len(statuses)})
    return statuses
