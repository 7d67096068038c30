"""Internal resource-layer endpoints: per-instance infrastructure and tools."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, status

from agent_pool.api.deps import SERVICES_DEP, SESSION_DEP
from agent_pool.core.auth import AUTH_DEP
from agent_pool.core.logging import get_logger
from agent_pool.db import pool_store
from agent_pool.schemas.infra import (
    BatchStatusRequest,
    BatchStatusResponse,
    ConfigureRequest,
    CreateInstanceRequest,
    CreateInstanceResponse,
    CreditsResponse,
    CreditsView,
    DestroyResponse,
    DestroyToolResponse,
    InstanceOkResponse,
    KeyUsageView,
    ProvisionToolRequest,
    ProvisionToolResponse,
    RegistryEntry,
    RegistryResponse,
    ServiceStatusView,
)
from agent_pool.services.pool.batch_status import fetch_batch_status
from agent_pool.services.pool.errors import (
    InstanceNotFoundError,
    ProviderError,
    ResourceAlreadyProvisionedError,
    ToolNotConfiguredError,
    UnknownToolError,
)
from agent_pool.services.pool.infra import DEFAULT_TOOLS
from agent_pool.services.pool.providers.base import ToolKind
from agent_pool.services.pool.providers.openrouter import OpenRouterKeyProvider

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from agent_pool.api.deps import PoolServices

router = APIRouter(tags=["infra"])
logger = get_logger(__name__)


def _not_found(exc: InstanceNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _bad_gateway(exc: ProviderError) -> HTTPException:
    logger.warning(
        "infra.provider_error",
        extra={"provider": exc.provider, "status_code": exc.status_code, "error": str(exc)},
    )
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.post("/create-instance", response_model=CreateInstanceResponse, dependencies=[AUTH_DEP])
async def create_instance(
    payload: CreateInstanceRequest,
    services: PoolServices = SERVICES_DEP,
    session: AsyncSession = SESSION_DEP,
) -> CreateInstanceResponse:
    """Create a pool instance under a caller-chosen id.

    The instance joins the pool as `starting`, exactly like one created by
    replenishment.
    """
    expected_name = f"{services.settings.instance_name_prefix}{payload.instance_id}"
    if payload.name is not None and payload.name != expected_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"name must be {expected_name}",
        )
    try:
        tools = (
            [ToolKind.parse(tool) for tool in payload.tools]
            if payload.tools is not None
            else list(DEFAULT_TOOLS)
        )
    except UnknownToolError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if await pool_store.get_instance(session, payload.instance_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Instance {payload.instance_id} already exists",
        )

    try:
        created = await services.ops.create_instance(
            instance_id=payload.instance_id,
            tools=tools,
        )
    except ProviderError as exc:
        raise _bad_gateway(exc) from exc
    return CreateInstanceResponse(
        instance_id=created.instance_id,
        service_id=created.service_id,
        url=created.url,
        services={
            tool_id: {"resourceId": resource_id}
            for tool_id, resource_id in created.resources.items()
        },
    )


@router.delete("/destroy/{instance_id}", response_model=DestroyResponse, dependencies=[AUTH_DEP])
async def destroy_instance(
    instance_id: str,
    services: PoolServices = SERVICES_DEP,
) -> DestroyResponse:
    """Destroy every resource of an instance; a second call returns 404."""
    try:
        result = await services.manager.destroy_instance(instance_id)
    except InstanceNotFoundError as exc:
        raise _not_found(exc) from exc
    services.metrics.instances_destroyed_total.labels(reason="api").inc()
    return DestroyResponse(instance_id=result.instance_id, destroyed=result.destroyed)


@router.post("/status/batch", response_model=BatchStatusResponse, dependencies=[AUTH_DEP])
async def batch_status(
    payload: BatchStatusRequest | None = None,
    services: PoolServices = SERVICES_DEP,
) -> BatchStatusResponse:
    """Deploy status of every pool service, optionally filtered by instance id."""
    instance_ids = payload.instance_ids if payload is not None else None
    try:
        listed = await fetch_batch_status(
            services.compute,
            services.settings,
            services.session_maker,
            instance_ids or None,
        )
    except ProviderError as exc:
        raise _bad_gateway(exc) from exc
    return BatchStatusResponse(
        project_id=services.settings.railway_project_id,
        services=[
            ServiceStatusView(
                instance_id=service.instance_id,
                service_id=service.service_id,
                project_id=service.project_id,
                name=service.name,
                deploy_status=service.deploy_status,
                domain=service.domain,
                image=service.image,
                environment_ids=list(service.environment_ids),
            )
            for service in listed
        ],
    )


@router.post(
    "/configure/{instance_id}",
    response_model=InstanceOkResponse,
    dependencies=[AUTH_DEP],
)
async def configure_instance(
    instance_id: str,
    payload: ConfigureRequest,
    services: PoolServices = SERVICES_DEP,
) -> InstanceOkResponse:
    """Upsert environment variables on an instance, redeploying only on request."""
    try:
        await services.manager.configure(
            instance_id,
            payload.variables,
            redeploy=payload.redeploy,
        )
    except InstanceNotFoundError as exc:
        raise _not_found(exc) from exc
    except ProviderError as exc:
        raise _bad_gateway(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return InstanceOkResponse(instance_id=instance_id)


@router.post(
    "/redeploy/{instance_id}",
    response_model=InstanceOkResponse,
    dependencies=[AUTH_DEP],
)
async def redeploy_instance(
    instance_id: str,
    services: PoolServices = SERVICES_DEP,
) -> InstanceOkResponse:
    try:
        await services.manager.redeploy(instance_id)
    except InstanceNotFoundError as exc:
        raise _not_found(exc) from exc
    except ProviderError as exc:
        raise _bad_gateway(exc) from exc
    return InstanceOkResponse(instance_id=instance_id)


@router.post(
    "/provision/{instance_id}/{tool_id}",
    response_model=ProvisionToolResponse,
    dependencies=[AUTH_DEP],
)
async def provision_tool(
    instance_id: str,
    tool_id: str,
    payload: ProvisionToolRequest | None = None,
    services: PoolServices = SERVICES_DEP,
) -> ProvisionToolResponse:
    """Attach one more resource kind to an existing instance."""
    options = payload.config if payload is not None else None
    try:
        row = await services.manager.provision_tool(instance_id, tool_id, options=options)
    except InstanceNotFoundError as exc:
        raise _not_found(exc) from exc
    except ResourceAlreadyProvisionedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (UnknownToolError, ToolNotConfiguredError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ProviderError as exc:
        raise _bad_gateway(exc) from exc
    return ProvisionToolResponse(
        tool_id=row.tool_id,
        resource_id=row.resource_id,
        env_key=row.env_key,
        status=row.status,
    )


@router.delete(
    "/destroy/{instance_id}/{tool_id}/{resource_id}",
    response_model=DestroyToolResponse,
    dependencies=[AUTH_DEP],
)
async def destroy_tool(
    instance_id: str,
    tool_id: str,
    resource_id: str,
    services: PoolServices = SERVICES_DEP,
) -> DestroyToolResponse:
    try:
        deleted = await services.manager.destroy_tool(instance_id, tool_id, resource_id)
    except UnknownToolError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return DestroyToolResponse(tool_id=tool_id, resource_id=resource_id, deleted=deleted)


@router.get("/dashboard/credits", response_model=CreditsResponse, dependencies=[AUTH_DEP])
async def get_credits(services: PoolServices = SERVICES_DEP) -> CreditsResponse:
    """Credential-provider account credits plus spend per pool key."""
    provider = services.registry.get(ToolKind.OPENROUTER)
    if not isinstance(provider, OpenRouterKeyProvider) or not provider.is_configured():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="OPENROUTER_MANAGEMENT_KEY not configured",
        )
    try:
        credits, keys = await asyncio.gather(provider.credits(), provider.key_usage())
    except ProviderError as exc:
        raise _bad_gateway(exc) from exc
    return CreditsResponse(
        credits=CreditsView(
            total_credits=credits.total_credits,
            total_usage=credits.total_usage,
            remaining=credits.total_credits - credits.total_usage,
        ),
        keys=[
            KeyUsageView(key_hash=key.key_hash, name=key.name, usage=key.usage, limit=key.limit)
            for key in keys
        ],
    )


@router.get("/registry", response_model=RegistryResponse)
async def get_registry(services: PoolServices = SERVICES_DEP) -> RegistryResponse:
    """Attachable tool kinds, their provisioning modes and env keys."""
    return RegistryResponse(
        tools=[
            RegistryEntry(
                id=kind.value,
                name=provider.label,
                mode=provider.mode,
                env_keys=list(provider.env_keys),
                configured=provider.is_configured(),
            )
            for kind, provider in services.registry.items()
        ],
    )
