# ruff: noqa: INP001, S101
"""Tests for creating and destroying everything one instance owns."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from agent_pool.core.config import settings
from agent_pool.db import pool_store
from agent_pool.models.instances import Instance
from agent_pool.services.pool.errors import (
    ComputeProviderError,
    InstanceNotFoundError,
    ProviderError,
    ResourceAlreadyProvisionedError,
    ToolNotConfiguredError,
    UnknownToolError,
)
from agent_pool.services.pool.infra import ResourceLifecycleManager
from agent_pool.services.pool.providers.base import (
    InventoryItem,
    ProviderRegistry,
    ProvisionedResource,
    ResourceProvider,
    ToolKind,
)


async def _make_engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    return engine


class _FakeProvider(ResourceProvider):
    mode = "fake"
    setting_name = "FAKE_API_KEY"

    def __init__(
        self,
        kind: ToolKind,
        *,
        configured: bool = True,
        fail_create: bool = False,
    ) -> None:
        self.kind = kind
        self.label = kind.value
        self.env_key = f"{kind.value.upper()}_VALUE"
        self.configured = configured
        self.fail_create = fail_create
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.by_instance: dict[str, str] = {}

    def is_configured(self) -> bool:
        return self.configured

    async def create(
        self,
        instance_id: str,
        *,
        options: Mapping[str, Any] | None = None,
    ) -> ProvisionedResource:
        if self.fail_create:
            raise ProviderError(self.kind.value, "create failed", status_code=500, retryable=True)
        resource_id = f"{self.kind.value}-{instance_id}"
        self.created.append(resource_id)
        return ProvisionedResource(
            kind=self.kind,
            resource_id=resource_id,
            env={self.env_key: f"value-{instance_id}"},
            meta=dict(options or {}),
        )

    async def destroy(self, resource_id: str) -> bool:
        self.destroyed.append(resource_id)
        return True

    async def list_inventory(self) -> list[InventoryItem]:
        return []

    async def find_by_instance(self, instance_id: str) -> str | None:
        return self.by_instance.get(instance_id)


@dataclass
class _FakeCompute:
    fail_create: bool = False
    fail_upsert: bool = False
    variables: dict[str, dict[str, str]] = field(default_factory=dict)
    deleted: list[str] = field(default_factory=list)
    deleted_volumes: list[str] = field(default_factory=list)
    redeployed: list[str] = field(default_factory=list)
    upserts: list[dict[str, Any]] = field(default_factory=list)

    async def create_service(
        self,
        name: str,
        variables: dict[str, str],
        *,
        project_id: str,
        environment_id: str,
    ) -> str:
        del project_id, environment_id
        if self.fail_create:
            raise ComputeProviderError("serviceCreate failed", status_code=500)
        self.variables[name] = dict(variables)
        return f"svc-{name}"

    async def ensure_volume(self, service_id: str, **_: str) -> str:
        return f"vol-{service_id}"

    async def create_domain(self, service_id: str, *, environment_id: str) -> str:
        del environment_id
        return f"{service_id}.up.railway.app"

    async def volumes_by_service(self, project_id: str) -> dict[str, list[str]]:
        del project_id
        return {service_id: [f"vol-{service_id}"] for service_id in self.variables_services()}

    def variables_services(self) -> list[str]:
        return [f"svc-{name}" for name in self.variables]

    async def delete_volume(self, volume_id: str) -> bool:
        self.deleted_volumes.append(volume_id)
        return True

    async def delete_service(self, service_id: str) -> None:
        self.deleted.append(service_id)

    async def upsert_variables(
        self,
        service_id: str,
        variables: dict[str, str],
        *,
        project_id: str,
        environment_id: str,
        skip_deploys: bool = False,
    ) -> None:
        del project_id, environment_id
        if self.fail_upsert:
            raise ComputeProviderError("variableCollectionUpsert failed")
        self.upserts.append(
            {"service_id": service_id, "variables": variables, "skip_deploys": skip_deploys},
        )

    async def redeploy_service(self, service_id: str, *, environment_id: str) -> None:
        del environment_id
        self.redeployed.append(service_id)


def _manager(
    maker: async_sessionmaker[AsyncSession],
    compute: _FakeCompute,
    *providers: _FakeProvider,
) -> ResourceLifecycleManager:
    test_settings = settings.model_copy(
        update={
            "railway_project_id": "proj-1",
            "railway_environment_id": "env-1",
            "service_delete_attempts": 1,
        },
    )
    registry = ProviderRegistry({provider.kind: provider for provider in providers})
    return ResourceLifecycleManager(
        test_settings,
        maker,
        compute,  # type: ignore[arg-type]
        registry,
    )


@pytest.mark.asyncio
async def test_create_instance_records_infra_and_resources() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute()
    openrouter = _FakeProvider(ToolKind.OPENROUTER)
    agentmail = _FakeProvider(ToolKind.AGENTMAIL)
    telnyx = _FakeProvider(ToolKind.TELNYX, configured=False)
    manager = _manager(maker, compute, openrouter, agentmail, telnyx)
    try:
        created = await manager.create_instance("abc123", "convos-agent-abc123")
        async with maker() as session:
            infra = await pool_store.get_infra(session, "abc123")
            resources = await pool_store.list_resources(session, "abc123")
    finally:
        await engine.dispose()

    assert created.service_id == "svc-convos-agent-abc123"
    assert created.url == "https://svc-convos-agent-abc123.up.railway.app"
    assert created.resources == {
        "openrouter": "openrouter-abc123",
        "agentmail": "agentmail-abc123",
    }
    variables = compute.variables["convos-agent-abc123"]
    assert variables["OPENROUTER_VALUE"] == "value-abc123"
    assert variables["AGENTMAIL_VALUE"] == "value-abc123"
    assert variables["OPENCLAW_GATEWAY_TOKEN"]
    assert variables["PRIVATE_WALLET_KEY"].startswith("0x")
    assert "TELNYX_VALUE" not in variables
    assert infra is not None
    assert infra.gateway_token == variables["OPENCLAW_GATEWAY_TOKEN"]
    assert infra.volume_id == "vol-svc-convos-agent-abc123"
    assert sorted(resource.tool_id for resource in resources) == ["agentmail", "openrouter"]


@pytest.mark.asyncio
async def test_service_failure_rolls_back_created_resources() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute(fail_create=True)
    openrouter = _FakeProvider(ToolKind.OPENROUTER)
    agentmail = _FakeProvider(ToolKind.AGENTMAIL)
    manager = _manager(maker, compute, openrouter, agentmail)
    try:
        with pytest.raises(ComputeProviderError):
            await manager.create_instance("abc123", "convos-agent-abc123")
        async with maker() as session:
            infra = await pool_store.get_infra(session, "abc123")
    finally:
        await engine.dispose()

    assert openrouter.destroyed == ["openrouter-abc123"]
    assert agentmail.destroyed == ["agentmail-abc123"]
    assert infra is None


@pytest.mark.asyncio
async def test_provider_failure_skips_service_and_rolls_back_earlier_resources() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute()
    openrouter = _FakeProvider(ToolKind.OPENROUTER)
    agentmail = _FakeProvider(ToolKind.AGENTMAIL, fail_create=True)
    manager = _manager(maker, compute, openrouter, agentmail)
    try:
        with pytest.raises(ProviderError):
            await manager.create_instance("abc123", "convos-agent-abc123")
    finally:
        await engine.dispose()

    assert compute.variables == {}
    assert openrouter.destroyed == ["openrouter-abc123"]
    assert agentmail.destroyed == []


@pytest.mark.asyncio
async def test_destroy_instance_tears_down_everything_once() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute()
    openrouter = _FakeProvider(ToolKind.OPENROUTER)
    manager = _manager(maker, compute, openrouter)
    try:
        await manager.create_instance("abc123", "convos-agent-abc123")
        result = await manager.destroy_instance("abc123")
        async with maker() as session:
            infra = await pool_store.get_infra(session, "abc123")
            resources = await pool_store.list_resources(session, "abc123")
        with pytest.raises(InstanceNotFoundError):
            await manager.destroy_instance("abc123")
    finally:
        await engine.dispose()

    assert result.complete is True
    assert result.destroyed == {"openrouter": True, "volumes": True, "service": True}
    assert openrouter.destroyed == ["openrouter-abc123"]
    assert compute.deleted == ["svc-convos-agent-abc123"]
    assert compute.deleted_volumes == ["vol-svc-convos-agent-abc123"]
    assert infra is None
    assert resources == []


@pytest.mark.asyncio
async def test_safe_destroy_falls_back_to_service_and_naming_lookup() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute()
    openrouter = _FakeProvider(ToolKind.OPENROUTER)
    openrouter.by_instance["ghost1"] = "hash-ghost1"
    manager = _manager(maker, compute, openrouter)
    try:
        result = await manager.safe_destroy("ghost1", service_id="svc-ghost1", project_id="proj-1")
    finally:
        await engine.dispose()

    assert result is not None
    assert result.destroyed["service"] is True
    assert result.destroyed["openrouter"] is True
    assert compute.deleted == ["svc-ghost1"]
    assert openrouter.destroyed == ["hash-ghost1"]


@pytest.mark.asyncio
async def test_safe_destroy_without_service_only_clears_rows() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute()
    manager = _manager(maker, compute)
    try:
        result = await manager.safe_destroy("ghost1")
    finally:
        await engine.dispose()

    assert result is None
    assert compute.deleted == []


class _LookupFailingProvider(_FakeProvider):
    async def find_by_instance(self, instance_id: str) -> str | None:
        del instance_id
        raise ProviderError(self.kind.value, "lookup failed", status_code=502, retryable=True)


@pytest.mark.asyncio
async def test_safe_destroy_fallback_continues_past_a_failing_provider() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute()
    openrouter = _LookupFailingProvider(ToolKind.OPENROUTER)
    agentmail = _FakeProvider(ToolKind.AGENTMAIL)
    agentmail.by_instance["ghost1"] = "inbox-ghost1"
    manager = _manager(maker, compute, openrouter, agentmail)
    try:
        async with maker() as session:
            session.add(Instance(id="ghost1", name="convos-agent-ghost1", status="idle"))
            await session.commit()
        result = await manager.safe_destroy("ghost1", service_id="svc-ghost1")
        async with maker() as session:
            row = await pool_store.get_instance(session, "ghost1")
    finally:
        await engine.dispose()

    assert result is not None
    assert result.destroyed["openrouter"] is False
    assert result.destroyed["agentmail"] is True
    assert agentmail.destroyed == ["inbox-ghost1"]
    assert compute.deleted == ["svc-ghost1"]
    assert row is None


@pytest.mark.asyncio
async def test_provision_tool_attaches_resource_and_sets_variables() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute()
    openrouter = _FakeProvider(ToolKind.OPENROUTER)
    agentmail = _FakeProvider(ToolKind.AGENTMAIL)
    manager = _manager(maker, compute, openrouter, agentmail)
    try:
        await manager.create_instance("abc123", "convos-agent-abc123", [ToolKind.OPENROUTER])
        row = await manager.provision_tool("abc123", "agentmail", options={"limit": 5})
        with pytest.raises(ResourceAlreadyProvisionedError):
            await manager.provision_tool("abc123", "agentmail")
        with pytest.raises(UnknownToolError):
            await manager.provision_tool("abc123", "fax")
        with pytest.raises(InstanceNotFoundError):
            await manager.provision_tool("missing", "agentmail")
    finally:
        await engine.dispose()

    assert row.tool_id == "agentmail"
    assert row.resource_id == "agentmail-abc123"
    assert row.resource_meta == {"limit": 5}
    assert compute.upserts[-1]["variables"] == {"AGENTMAIL_VALUE": "value-abc123"}


@pytest.mark.asyncio
async def test_provision_tool_requires_configured_provider() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute()
    telnyx = _FakeProvider(ToolKind.TELNYX, configured=False)
    manager = _manager(maker, compute, telnyx)
    try:
        await manager.create_instance("abc123", "convos-agent-abc123")
        with pytest.raises(ToolNotConfiguredError):
            await manager.provision_tool("abc123", "telnyx")
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_provision_tool_rolls_back_when_variables_fail() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute()
    agentmail = _FakeProvider(ToolKind.AGENTMAIL)
    manager = _manager(maker, compute, agentmail)
    try:
        await manager.create_instance("abc123", "convos-agent-abc123", [])
        compute.fail_upsert = True
        with pytest.raises(ComputeProviderError):
            await manager.provision_tool("abc123", "agentmail")
        async with maker() as session:
            resource = await pool_store.get_resource(session, "abc123", "agentmail")
    finally:
        await engine.dispose()

    assert agentmail.destroyed == ["agentmail-abc123"]
    assert resource is None


@pytest.mark.asyncio
async def test_configure_requires_variables_and_redeploys_on_request() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute()
    manager = _manager(maker, compute)
    try:
        await manager.create_instance("abc123", "convos-agent-abc123")
        with pytest.raises(ValueError, match="variables"):
            await manager.configure("abc123", {})
        await manager.configure("abc123", {"FOO": "bar"})
        await manager.configure("abc123", {"FOO": "baz"}, redeploy=True)
    finally:
        await engine.dispose()

    assert compute.upserts[0]["skip_deploys"] is True
    assert compute.upserts[1]["skip_deploys"] is False
    assert compute.redeployed == ["svc-convos-agent-abc123"]


@pytest.mark.asyncio
async def test_destroy_tool_removes_resource_row() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    compute = _FakeCompute()
    openrouter = _FakeProvider(ToolKind.OPENROUTER)
    manager = _manager(maker, compute, openrouter)
    try:
        await manager.create_instance("abc123", "convos-agent-abc123")
        deleted = await manager.destroy_tool("abc123", "openrouter", "openrouter-abc123")
        async with maker() as session:
            resource = await pool_store.get_resource(session, "abc123", "openrouter")
        with pytest.raises(UnknownToolError):
            await manager.destroy_tool("abc123", "fax", "x")
    finally:
        await engine.dispose()

    assert deleted is True
    assert resource is None
