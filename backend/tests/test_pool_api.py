# ruff: noqa: INP001, S101
"""HTTP tests for the `/pool` routes against an in-memory store."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import httpx
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from agent_pool.api.deps import build_pool_services
from agent_pool.api.pool import router as pool_router
from agent_pool.core.config import settings
from agent_pool.core.error_handling import REQUEST_ID_HEADER, install_error_handling
from agent_pool.core.time import utcnow
from agent_pool.db import pool_store
from agent_pool.db.session import get_session
from agent_pool.models.instance_infra import InstanceInfra
from agent_pool.models.instances import Instance
from agent_pool.models.pool_status import PoolStatus

AUTH = {"Authorization": f"Bearer {settings.pool_api_key}"}


async def _make_engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    return engine


@dataclass
class _InstanceApi:
    """Answers the instance-side `/pool/provision` call."""

    status_code: int = 200
    body: dict[str, object] = field(
        default_factory=lambda: {
            "ok": True,
            "conversationId": "conv-1",
            "inviteUrl": "https://popup.convos.org/v2?i=abc",
            "joined": False,
        },
    )
    payloads: list[dict[str, object]] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/pool/provision":
            self.payloads.append(json.loads(request.content))
            return httpx.Response(self.status_code, json=self.body)
        return httpx.Response(404)


def _build_test_app(
    session_maker: async_sessionmaker[AsyncSession],
    instance_api: _InstanceApi | None = None,
) -> FastAPI:
    app = FastAPI()
    install_error_handling(app)
    app.include_router(pool_router)
    app.state.pool = build_pool_services(
        settings.model_copy(update={"railway_api_token": "", "service_delete_attempts": 1}),
        session_maker,
        transport=httpx.MockTransport(instance_api or _InstanceApi()),
    )

    async def _override_get_session() -> AsyncIterator[AsyncSession]:
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = _override_get_session
    return app


async def _seed(
    maker: async_sessionmaker[AsyncSession],
    instance_id: str,
    status: PoolStatus,
    **fields: object,
) -> None:
    async with maker() as session:
        session.add(
            Instance(
                id=instance_id,
                name=f"convos-agent-{instance_id}",
                status=status.value,
                url=f"https://{instance_id}.up.railway.app",
                **fields,
            ),
        )
        await session.commit()


@pytest.mark.asyncio
async def test_counts_are_public_and_zero_filled() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app = _build_test_app(maker)
    try:
        await _seed(maker, "idle1", PoolStatus.IDLE)
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            response = await client.get("/pool/counts")
    finally:
        await engine.dispose()

    assert response.status_code == 200
    assert response.json() == {
        "starting": 0,
        "idle": 1,
        "claiming": 0,
        "claimed": 0,
        "crashed": 0,
        "dead": 0,
        "sleeping": 0,
    }


@pytest.mark.asyncio
async def test_agents_group_instances_by_status() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app = _build_test_app(maker)
    try:
        await _seed(maker, "idle1", PoolStatus.IDLE)
        await _seed(maker, "bound1", PoolStatus.CLAIMED, agent_name="Bot", claimed_at=utcnow())
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            response = await client.get("/pool/agents")
    finally:
        await engine.dispose()

    assert response.status_code == 200
    body = response.json()
    assert [row["id"] for row in body["idle"]] == ["idle1"]
    assert body["claimed"][0]["agentName"] == "Bot"
    assert body["crashed"] == []


@pytest.mark.asyncio
async def test_operator_routes_require_pool_key() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app = _build_test_app(maker)
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            missing = await client.get("/pool/status")
            wrong = await client.post("/pool/claim", headers={"Authorization": "Bearer nope"})
            query = await client.get("/pool/status", params={"key": settings.pool_api_key})
            header = await client.get("/pool/status", headers=AUTH)
    finally:
        await engine.dispose()

    assert missing.status_code == 401
    assert missing.json()["detail"] == "Unauthorized"
    assert missing.headers.get(REQUEST_ID_HEADER) == missing.json()["request_id"]
    assert wrong.status_code == 401
    assert query.status_code == 200
    assert header.status_code == 200
    assert header.json()["instances"] == []


@pytest.mark.asyncio
async def test_claim_returns_503_when_pool_is_empty() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app = _build_test_app(maker)
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            response = await client.post("/pool/claim", headers=AUTH, json={})
    finally:
        await engine.dispose()

    assert response.status_code == 503
    assert "No idle instances" in response.json()["detail"]


@pytest.mark.asyncio
async def test_claim_binds_idle_instance() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    instance_api = _InstanceApi()
    app = _build_test_app(maker, instance_api)
    try:
        await _seed(maker, "idle1", PoolStatus.IDLE)
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            response = await client.post(
                "/pool/claim",
                headers=AUTH,
                json={"agentName": "Tasks", "instructions": "Keep a list."},
            )
        async with maker() as session:
            row = await pool_store.get_instance(session, "idle1")
    finally:
        await engine.dispose()

    assert response.status_code == 200
    assert response.json() == {
        "instanceId": "idle1",
        "conversationId": "conv-1",
        "inviteUrl": "https://popup.convos.org/v2?i=abc",
        "joined": False,
        "gatewayUrl": "https://idle1.up.railway.app",
    }
    assert instance_api.payloads == [{"agentName": "Tasks", "instructions": "Keep a list."}]
    assert row is not None
    assert row.status == PoolStatus.CLAIMED.value
    assert row.conversation_id == "conv-1"


@pytest.mark.asyncio
async def test_claim_rejects_production_link_outside_production() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    instance_api = _InstanceApi()
    app = _build_test_app(maker, instance_api)
    try:
        await _seed(maker, "idle1", PoolStatus.IDLE)
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            response = await client.post(
                "/pool/claim",
                headers=AUTH,
                json={"joinUrl": "https://popup.convos.org/v2?i=xyz"},
            )
        async with maker() as session:
            counts = await pool_store.get_counts(session)
    finally:
        await engine.dispose()

    assert response.status_code == 400
    assert instance_api.payloads == []
    assert counts["idle"] == 1


@pytest.mark.asyncio
async def test_claim_failure_maps_to_502_and_releases_instance() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app = _build_test_app(maker, _InstanceApi(status_code=503, body={"error": "busy"}))
    try:
        await _seed(maker, "idle1", PoolStatus.IDLE)
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            response = await client.post("/pool/claim", headers=AUTH)
        async with maker() as session:
            row = await pool_store.get_instance(session, "idle1")
    finally:
        await engine.dispose()

    assert response.status_code == 502
    assert row is not None
    assert row.status == PoolStatus.IDLE.value


@pytest.mark.asyncio
async def test_self_destruct_verifies_gateway_token() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app = _build_test_app(maker)
    try:
        await _seed(maker, "bound1", PoolStatus.CLAIMED, agent_name="Bot", claimed_at=utcnow())
        async with maker() as session:
            session.add(
                InstanceInfra(
                    instance_id="bound1",
                    provider_service_id="svc-bound1",
                    provider_env_id="env-1",
                    provider_project_id="proj-1",
                    gateway_token="gw-secret",
                ),
            )
            await session.commit()

        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            missing = await client.post("/pool/self-destruct", json={"instanceId": "bound1"})
            forged = await client.post(
                "/pool/self-destruct",
                json={"instanceId": "bound1", "gatewayToken": "guess"},
            )
            accepted = await client.post(
                "/pool/self-destruct",
                json={"instanceId": "bound1", "gatewayToken": "gw-secret"},
            )
        async with maker() as session:
            row = await pool_store.get_instance(session, "bound1")
    finally:
        await engine.dispose()

    assert missing.status_code == 400
    assert forged.status_code == 403
    assert accepted.status_code == 200
    assert accepted.json() == {"ok": True}
    assert row is None


@pytest.mark.asyncio
async def test_dismiss_crashed_maps_errors_to_status_codes() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app = _build_test_app(maker)
    try:
        await _seed(maker, "crash1", PoolStatus.CRASHED)
        await _seed(maker, "crash2", PoolStatus.CRASHED, agent_name="Bot")
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            unknown = await client.delete("/pool/crashed/nope", headers=AUTH)
            bound = await client.delete("/pool/crashed/crash2", headers=AUTH)
            dismissed = await client.delete("/pool/crashed/crash1", headers=AUTH)
            killed = await client.delete("/pool/instances/crash2", headers=AUTH)
            gone = await client.delete("/pool/instances/crash2", headers=AUTH)
        async with maker() as session:
            rows = await pool_store.list_instances(session)
    finally:
        await engine.dispose()

    assert unknown.status_code == 404
    assert bound.status_code == 409
    assert dismissed.status_code == 200
    assert killed.status_code == 200
    assert gone.status_code == 404
    assert rows == []


@pytest.mark.asyncio
async def test_reconcile_reports_skipped_tick_without_compute() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app = _build_test_app(maker)
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            response = await client.post("/pool/reconcile", headers=AUTH)
    finally:
        await engine.dispose()

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["tick"]["skipped"] == "compute_unconfigured"
    assert body["counts"]["idle"] == 0


@pytest.mark.asyncio
async def test_drain_removes_idle_instances() -> None:
    engine = await _make_engine()
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app = _build_test_app(maker)
    try:
        await _seed(maker, "idle1", PoolStatus.IDLE)
        await _seed(maker, "idle2", PoolStatus.IDLE)
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            response = await client.post("/pool/drain", headers=AUTH, json={"count": 5})
    finally:
        await engine.dispose()

    assert response.status_code == 200
    body = response.json()
    assert body["drained"] == 2
    assert sorted(body["drainedIds"]) == ["idle1", "idle2"]
    assert body["counts"]["idle"] == 0
