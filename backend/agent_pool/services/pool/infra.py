"""Resource lifecycle manager: create and destroy everything one instance owns.

An instance owns a compute service (plus an optional volume and domain) and
one resource per configured tool kind. Creation provisions the tool
resources first so their env vars are set before the service's first deploy;
any failure rolls the already-created resources back. Destruction tears down
every provider resource independently, then volumes, then the service, and
only then deletes the store rows.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agent_pool.core.logging import get_logger
from agent_pool.db import pool_store
from agent_pool.models.instance_infra import InstanceInfra
from agent_pool.models.instance_resources import InstanceResource
from agent_pool.services.pool.errors import (
    ComputeProviderError,
    InstanceNotFoundError,
    ResourceAlreadyProvisionedError,
    ToolNotConfiguredError,
    UnknownToolError,
)
from agent_pool.services.pool.providers.base import ToolKind
from agent_pool.services.pool.secrets import InstanceSecrets

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from agent_pool.core.config import Settings
    from agent_pool.db.session import SessionMaker
    from agent_pool.services.pool.compute import RailwayClient
    from agent_pool.services.pool.providers.base import (
        ProviderRegistry,
        ProvisionedResource,
        ResourceProvider,
    )

logger = get_logger(__name__)
DEFAULT_TOOLS: tuple[ToolKind, ...] = (ToolKind.OPENROUTER, ToolKind.AGENTMAIL, ToolKind.TELNYX)


@dataclass(frozen=True)
class CreatedInstance:
    instance_id: str
    name: str
    service_id: str
    url: str | None
    resources: dict[str, str] = field(default_factory=dict)


@dataclass
class DestroyResult:
    """Per-resource teardown flags; False entries are left for the orphan pass."""

    instance_id: str
    destroyed: dict[str, bool] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return all(self.destroyed.values())


class ResourceLifecycleManager:
    def __init__(
        self,
        settings: Settings,
        session_maker: SessionMaker,
        compute: RailwayClient,
        registry: ProviderRegistry,
    ) -> None:
        self._settings = settings
        self._session_maker = session_maker
        self._compute = compute
        self._registry = registry

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def base_env(self) -> dict[str, str]:
        """Environment shared by every runtime instance."""
        env = {
            "OPENCLAW_STATE_DIR": "/app",
            "OPENCLAW_PRIMARY_MODEL": self._settings.openclaw_primary_model,
            "XMTP_ENV": self._settings.xmtp_env,
            "CHROMIUM_PATH": "/usr/bin/chromium",
            "POOL_API_KEY": self._settings.pool_api_key,
            "AGENTMAIL_API_KEY": self._settings.agentmail_api_key,
            "BANKR_API_KEY": self._settings.bankr_api_key,
            "TELNYX_API_KEY": self._settings.telnyx_api_key,
        }
        return {key: value for key, value in env.items() if value}

    def _provider(self, tool_id: str) -> ResourceProvider:
        kind = ToolKind.parse(tool_id)
        provider = self._registry.get(kind)
        if provider is None:
            raise UnknownToolError(tool_id)
        return provider

    async def _rollback(self, instance_id: str, created: Sequence[ProvisionedResource]) -> None:
        for resource in created:
            provider = self._registry[resource.kind]
            try:
                await provider.destroy(resource.resource_id)
            except Exception as exc:
                logger.warning(
                    "pool.infra.rollback_failed",
                    extra={
                        "instance_id": instance_id,
                        "tool_id": resource.kind.value,
                        "error": str(exc),
                    },
                )

    async def create_instance(
        self,
        instance_id: str,
        name: str,
        tools: Sequence[ToolKind] = DEFAULT_TOOLS,
    ) -> CreatedInstance:
        environment_id = self._settings.railway_environment_id
        project_id = self._settings.railway_project_id
        if not environment_id or not project_id:
            raise ComputeProviderError("RAILWAY_PROJECT_ID and RAILWAY_ENVIRONMENT_ID must be set")

        secrets = InstanceSecrets.generate()
        variables = {**self.base_env(), **secrets.env()}

        created: list[ProvisionedResource] = []
        try:
            for provider in self._registry.configured(list(tools)):
                resource = await provider.create(instance_id)
                created.append(resource)
                variables.update(resource.env)
            service_id = await self._compute.create_service(
                name,
                variables,
                project_id=project_id,
                environment_id=environment_id,
            )
        except Exception:
            logger.exception("pool.infra.create_failed", extra={"instance_id": instance_id})
            await self._rollback(instance_id, created)
            raise

        volume_id = await self._compute.ensure_volume(
            service_id,
            project_id=project_id,
            environment_id=environment_id,
        )
        if volume_id is None:
            logger.warning("pool.infra.volume_missing", extra={"instance_id": instance_id})

        url: str | None = None
        try:
            domain = await self._compute.create_domain(service_id, environment_id=environment_id)
            url = f"https://{domain}"
        except ComputeProviderError as exc:
            logger.warning(
                "pool.infra.domain_failed",
                extra={"instance_id": instance_id, "error": str(exc)},
            )

        async with self._session_maker() as session:
            session.add(
                InstanceInfra(
                    instance_id=instance_id,
                    provider_service_id=service_id,
                    provider_env_id=environment_id,
                    provider_project_id=project_id,
                    url=url,
                    deploy_status="BUILDING",
                    runtime_image=self._settings.railway_runtime_image,
                    gateway_token=secrets.gateway_token,
                    volume_id=volume_id,
                ),
            )
            # Infra row first: resource rows reference it.
            await session.flush()
            for resource in created:
                session.add(
                    InstanceResource(
                        instance_id=instance_id,
                        tool_id=resource.kind.value,
                        resource_id=resource.resource_id,
                        resource_meta=dict(resource.meta),
                        env_key=resource.env_key,
                        env_value=resource.env_value,
                    ),
                )
            await session.commit()

        logger.info(
            "pool.infra.created",
            extra={"instance_id": instance_id, "service_id": service_id, "url": url},
        )
        return CreatedInstance(
            instance_id=instance_id,
            name=name,
            service_id=service_id,
            url=url,
            resources={resource.kind.value: resource.resource_id for resource in created},
        )

    async def _destroy_resources(
        self,
        instance_id: str,
        resources: Sequence[InstanceResource],
        result: DestroyResult,
    ) -> None:
        for resource in resources:
            try:
                provider = self._provider(resource.tool_id)
                ok = await provider.destroy(resource.resource_id)
            except Exception as exc:
                logger.warning(
                    "pool.infra.resource_destroy_failed",
                    extra={
                        "instance_id": instance_id,
                        "tool_id": resource.tool_id,
                        "error": str(exc),
                    },
                )
                ok = False
            result.destroyed[resource.tool_id] = ok

    async def release_resources(self, instance_id: str) -> DestroyResult:
        """Destroy provider resources only, for instances whose service is already gone.

        Store rows are left to the caller.
        """
        async with self._session_maker() as session:
            resources = await pool_store.list_resources(session, instance_id)
        result = DestroyResult(instance_id=instance_id)
        await self._destroy_resources(instance_id, resources, result)
        return result

    async def _destroy_service(self, service_id: str, project_id: str) -> tuple[bool, bool]:
        volumes_ok = True
        try:
            volume_map = await self._compute.volumes_by_service(project_id)
        except ComputeProviderError as exc:
            logger.warning(
                "pool.infra.volume_listing_failed",
                extra={"service_id": service_id, "error": str(exc)},
            )
            volumes_ok = False
        else:
            for volume_id in volume_map.get(service_id, []):
                volumes_ok = await self._compute.delete_volume(volume_id) and volumes_ok

        attempts = max(1, self._settings.service_delete_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self._compute.delete_service(service_id)
                return volumes_ok, True
            except ComputeProviderError as exc:
                logger.warning(
                    "pool.infra.service_delete_failed",
                    extra={"service_id": service_id, "attempt": attempt, "error": str(exc)},
                )
                if attempt < attempts:
                    await asyncio.sleep(self._settings.service_delete_backoff_seconds * attempt)
        return volumes_ok, False

    async def destroy_instance(self, instance_id: str) -> DestroyResult:
        """Tear down every resource of an instance, then delete its rows.

        Raises `InstanceNotFoundError` when there is no infra row, which makes a
        repeated destroy a clean 404 rather than a partial double delete.
        """
        async with self._session_maker() as session:
            infra = await pool_store.get_infra(session, instance_id)
            if infra is None:
                raise InstanceNotFoundError(instance_id)
            resources = await pool_store.list_resources(session, instance_id)

        result = DestroyResult(instance_id=instance_id)
        await self._destroy_resources(instance_id, resources, result)

        volumes_ok, service_ok = await self._destroy_service(
            infra.provider_service_id,
            infra.provider_project_id,
        )
        result.destroyed["volumes"] = volumes_ok
        result.destroyed["service"] = service_ok

        async with self._session_maker() as session:
            await pool_store.delete_instance_rows(session, instance_id)
        logger.info(
            "pool.infra.destroyed",
            extra={"instance_id": instance_id, "destroyed": result.destroyed},
        )
        return result

    async def safe_destroy(
        self,
        instance_id: str,
        *,
        service_id: str | None = None,
        project_id: str | None = None,
    ) -> DestroyResult | None:
        """Destroy via the infra row, falling back to a known service id.

        The fallback covers instances whose infra row was never written (or
        services found on the provider with no row at all): the service and
        its volumes are deleted directly and each provider is asked to find
        the instance's resource by naming convention.
        """
        try:
            return await self.destroy_instance(instance_id)
        except InstanceNotFoundError:
            pass

        result: DestroyResult | None = None
        if service_id:
            result = DestroyResult(instance_id=instance_id)
            volumes_ok, service_ok = await self._destroy_service(
                service_id,
                project_id or self._settings.railway_project_id,
            )
            result.destroyed["volumes"] = volumes_ok
            result.destroyed["service"] = service_ok
            for provider in self._registry.configured():
                try:
                    resource_id = await provider.find_by_instance(instance_id)
                    if not resource_id:
                        continue
                    ok = await provider.destroy(resource_id)
                except Exception as exc:
                    logger.warning(
                        "pool.infra.resource_destroy_failed",
                        extra={
                            "instance_id": instance_id,
                            "tool_id": provider.kind.value,
                            "error": str(exc),
                        },
                    )
                    ok = False
                result.destroyed[provider.kind.value] = ok
            logger.info(
                "pool.infra.fallback_destroyed",
                extra={"instance_id": instance_id, "service_id": service_id},
            )
        else:
            logger.warning("pool.infra.destroy_untracked", extra={"instance_id": instance_id})

        async with self._session_maker() as session:
            await pool_store.delete_instance_rows(session, instance_id)
        return result

    async def _require_infra(self, instance_id: str) -> InstanceInfra:
        async with self._session_maker() as session:
            infra = await pool_store.get_infra(session, instance_id)
        if infra is None:
            raise InstanceNotFoundError(instance_id)
        return infra

    async def provision_tool(
        self,
        instance_id: str,
        tool_id: str,
        *,
        options: Mapping[str, Any] | None = None,
    ) -> InstanceResource:
        """Attach one more resource kind to an existing instance."""
        infra = await self._require_infra(instance_id)
        async with self._session_maker() as session:
            if await pool_store.get_resource(session, instance_id, tool_id) is not None:
                raise ResourceAlreadyProvisionedError(instance_id, tool_id)
        provider = self._provider(tool_id)
        if not provider.is_configured():
            raise ToolNotConfiguredError(tool_id, provider.setting_name)

        resource = await provider.create(instance_id, options=options)
        try:
            await self._compute.upsert_variables(
                infra.provider_service_id,
                resource.env,
                project_id=infra.provider_project_id,
                environment_id=infra.provider_env_id,
            )
        except ComputeProviderError:
            await self._rollback(instance_id, [resource])
            raise

        row = InstanceResource(
            instance_id=instance_id,
            tool_id=resource.kind.value,
            resource_id=resource.resource_id,
            resource_meta=dict(resource.meta),
            env_key=resource.env_key,
            env_value=resource.env_value,
        )
        async with self._session_maker() as session:
            session.add(row)
            await session.commit()
        logger.info(
            "pool.infra.tool_provisioned",
            extra={"instance_id": instance_id, "tool_id": tool_id},
        )
        return row

    async def destroy_tool(self, instance_id: str, tool_id: str, resource_id: str) -> bool:
        provider = self._provider(tool_id)
        deleted = await provider.destroy(resource_id)
        async with self._session_maker() as session:
            await pool_store.delete_resource(
                session,
                instance_id=instance_id,
                tool_id=tool_id,
                resource_id=resource_id,
            )
        logger.info(
            "pool.infra.tool_destroyed",
            extra={"instance_id": instance_id, "tool_id": tool_id, "deleted": deleted},
        )
        return deleted

    async def configure(
        self,
        instance_id: str,
        variables: Mapping[str, str],
        *,
        redeploy: bool = False,
    ) -> None:
        if not variables:
            raise ValueError("variables object is required")
        infra = await self._require_infra(instance_id)
        await self._compute.upsert_variables(
            infra.provider_service_id,
            dict(variables),
            project_id=infra.provider_project_id,
            environment_id=infra.provider_env_id,
            skip_deploys=not redeploy,
        )
        if redeploy:
            await self._compute.redeploy_service(
                infra.provider_service_id,
                environment_id=infra.provider_env_id,
            )
        logger.info(
            "pool.infra.configured",
            extra={"instance_id": instance_id, "variable_count": len(variables)},
        )

    async def redeploy(self, instance_id: str) -> None:
        infra = await self._require_infra(instance_id)
        await self._compute.redeploy_service(
            infra.provider_service_id,
            environment_id=infra.provider_env_id,
        )
        logger.info("pool.infra.redeployed", extra={"instance_id": instance_id})
