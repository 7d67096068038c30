# ruff: noqa: INP001, S101
"""Tests for pool Prometheus instruments and the `/metrics` route."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from agent_pool.api.deps import build_pool_services
from agent_pool.api.metrics import router as metrics_router
from agent_pool.core.config import settings
from agent_pool.models.instances import Instance
from agent_pool.services.pool.metrics import CONTENT_TYPE, ClaimOutcome, PoolMetrics


def test_metrics_are_isolated_per_instance() -> None:
    first = PoolMetrics()
    second = PoolMetrics()

    first.record_claim(ClaimOutcome.CLAIMED, 0.2)

    assert first.registry.get_sample_value("pool_claims_total", {"outcome": "claimed"}) == 1.0
    assert second.registry.get_sample_value("pool_claims_total", {"outcome": "claimed"}) is None


def test_set_counts_fills_every_status() -> None:
    metrics = PoolMetrics()

    metrics.set_counts({"idle": 3, "claimed": 1})

    assert metrics.registry.get_sample_value("pool_instances", {"status": "idle"}) == 3.0
    assert metrics.registry.get_sample_value("pool_instances", {"status": "claimed"}) == 1.0
    assert metrics.registry.get_sample_value("pool_instances", {"status": "sleeping"}) == 0.0


def test_record_tick_counts_results_and_durations() -> None:
    metrics = PoolMetrics()

    metrics.record_tick("ok", 1.5)
    metrics.record_tick("lease_held", 0.01)

    assert metrics.registry.get_sample_value("pool_ticks_total", {"result": "ok"}) == 1.0
    assert metrics.registry.get_sample_value("pool_tick_duration_seconds_count") == 2.0


@pytest.mark.asyncio
async def test_metrics_route_renders_exposition_format() -> None:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app = FastAPI()
    app.include_router(metrics_router)
    app.state.pool = build_pool_services(settings, maker)
    app.state.pool.metrics.record_claim(ClaimOutcome.NO_IDLE, 0.01)
    try:
        async with maker() as session:
            session.add(Instance(id="idle1", name="convos-agent-idle1", status="idle"))
            await session.commit()
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://testserver",
        ) as client:
            response = await client.get("/metrics")
    finally:
        await engine.dispose()

    assert response.status_code == 200
    assert response.headers["content-type"] == CONTENT_TYPE
    assert 'pool_claims_total{outcome="no_idle"} 1.0' in response.text
    assert 'pool_instances{status="idle"} 1.0' in response.text
