"""Schemas for the internal resource-layer endpoints and the provider registry."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from agent_pool.schemas.common import CamelModel


class CreateInstanceRequest(CamelModel):
    instance_id: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9]+$")
    name: str | None = None
    tools: list[str] | None = None


class CreateInstanceResponse(CamelModel):
    instance_id: str
    service_id: str
    url: str | None = None
    services: dict[str, dict[str, str]] = Field(default_factory=dict)


class DestroyResponse(CamelModel):
    """Per-resource teardown flags; False entries are retried by the orphan pass."""

    instance_id: str
    destroyed: dict[str, bool]


class BatchStatusRequest(CamelModel):
    instance_ids: list[str] | None = None


class ServiceStatusView(CamelModel):
    instance_id: str
    service_id: str
    project_id: str
    name: str
    deploy_status: str | None = None
    domain: str | None = None
    image: str | None = None
    environment_ids: list[str] = Field(default_factory=list)


class BatchStatusResponse(CamelModel):
    project_id: str
    services: list[ServiceStatusView]


class ConfigureRequest(CamelModel):
    variables: dict[str, str] = Field(default_factory=dict)
    redeploy: bool = False


class InstanceOkResponse(CamelModel):
    instance_id: str
    ok: bool = True


class ProvisionToolRequest(CamelModel):
    config: dict[str, Any] | None = None


class ProvisionToolResponse(CamelModel):
    tool_id: str
    resource_id: str
    env_key: str
    status: str


class DestroyToolResponse(CamelModel):
    tool_id: str
    resource_id: str
    deleted: bool


class RegistryEntry(CamelModel):
    id: str
    name: str
    mode: str
    env_keys: list[str]
    configured: bool


class RegistryResponse(CamelModel):
    tools: list[RegistryEntry]


class CreditsView(CamelModel):
    total_credits: float
    total_usage: float
    remaining: float


class KeyUsageView(CamelModel):
    key_hash: str
    name: str
    usage: float
    limit: float | None = None


class CreditsResponse(CamelModel):
    credits: CreditsView
    keys: list[KeyUsageView]
