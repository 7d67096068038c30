# ruff: noqa: INP001, S101
"""Tests for guarded instance writes and skip-locked claims in the pool store."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel, col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from agent_pool.core.time import utcnow
from agent_pool.db import pool_store
from agent_pool.models.instance_infra import InstanceInfra
from agent_pool.models.instance_resources import InstanceResource
from agent_pool.models.instances import Instance
from agent_pool.models.pool_status import PoolStatus


async def _make_engine(url: str = "sqlite+aiosqlite:///:memory:") -> AsyncEngine:
    engine = create_async_engine(url)
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    return engine


def _maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def _seed(
    session: AsyncSession,
    instance_id: str,
    status: PoolStatus,
    *,
    age_seconds: int = 0,
    **fields: object,
) -> None:
    session.add(
        Instance(
            id=instance_id,
            name=f"convos-agent-{instance_id}",
            status=status.value,
            created_at=utcnow() - timedelta(seconds=age_seconds),
            **fields,
        ),
    )
    await session.commit()


@pytest.mark.asyncio
async def test_counts_include_every_status_zero_filled() -> None:
    engine = await _make_engine()
    try:
        async with _maker(engine)() as session:
            await _seed(session, "a1", PoolStatus.IDLE)
            await _seed(session, "a2", PoolStatus.IDLE)
            await _seed(session, "a3", PoolStatus.CRASHED)

            counts = await pool_store.get_counts(session)
    finally:
        await engine.dispose()

    assert counts == {
        "starting": 0,
        "idle": 2,
        "claiming": 0,
        "claimed": 0,
        "crashed": 1,
        "dead": 0,
        "sleeping": 0,
    }


@pytest.mark.asyncio
async def test_claim_idle_hands_out_oldest_row_once() -> None:
    engine = await _make_engine()
    try:
        async with _maker(engine)() as session:
            await _seed(session, "young", PoolStatus.IDLE, age_seconds=10)
            await _seed(session, "old", PoolStatus.IDLE, age_seconds=600)
            await _seed(session, "busy", PoolStatus.STARTING, age_seconds=900)

            first = await pool_store.claim_idle(session)
            second = await pool_store.claim_idle(session)
            third = await pool_store.claim_idle(session)
    finally:
        await engine.dispose()

    assert first is not None and first.id == "old"
    assert first.status == PoolStatus.CLAIMING.value
    assert second is not None and second.id == "young"
    assert third is None


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_row(tmp_path: Path) -> None:
    engine = await _make_engine(f"sqlite+aiosqlite:///{tmp_path / 'pool.db'}")
    maker = _maker(engine)
    try:
        async with maker() as session:
            for index in range(3):
                await _seed(session, f"idle{index}", PoolStatus.IDLE, age_seconds=index)

        async def claim_one() -> str | None:
            async with maker() as session:
                instance = await pool_store.claim_idle(session)
            return instance.id if instance is not None else None

        results = await asyncio.gather(*(claim_one() for _ in range(5)))
        async with maker() as session:
            counts = await pool_store.get_counts(session)
    finally:
        await engine.dispose()

    claimed = [instance_id for instance_id in results if instance_id is not None]
    assert sorted(claimed) == ["idle0", "idle1", "idle2"]
    assert results.count(None) == 2
    assert counts["claiming"] == 3
    assert counts["idle"] == 0


@pytest.mark.asyncio
async def test_complete_and_release_only_apply_to_claiming_rows() -> None:
    engine = await _make_engine()
    binding = pool_store.ClaimBinding(
        agent_name="Bot",
        instructions="be brief",
        conversation_id="conv-1",
        invite_url="https://dev.convos.org/v2?i=abc",
    )
    try:
        async with _maker(engine)() as session:
            await _seed(session, "a1", PoolStatus.IDLE)
            assert await pool_store.release_claim(session, "a1") is False
            assert await pool_store.complete_claim(session, "a1", binding) is False

            claimed = await pool_store.claim_idle(session)
            assert claimed is not None
            assert await pool_store.complete_claim(session, "a1", binding) is True
            assert await pool_store.release_claim(session, "a1") is False

            row = await pool_store.get_instance(session, "a1")
    finally:
        await engine.dispose()

    assert row is not None
    assert row.status == PoolStatus.CLAIMED.value
    assert row.agent_name == "Bot"
    assert row.conversation_id == "conv-1"
    assert row.claimed_at is not None


@pytest.mark.asyncio
async def test_upsert_never_touches_claiming_rows() -> None:
    engine = await _make_engine()
    try:
        async with _maker(engine)() as session:
            await _seed(session, "a1", PoolStatus.CLAIMING)
            written = await pool_store.upsert_instance(
                session,
                instance_id="a1",
                name="convos-agent-a1",
                status=PoolStatus.DEAD,
            )
            row = await pool_store.get_instance(session, "a1")
    finally:
        await engine.dispose()

    assert written is False
    assert row is not None
    assert row.status == PoolStatus.CLAIMING.value


@pytest.mark.asyncio
async def test_upsert_never_demotes_bound_row_to_idle() -> None:
    engine = await _make_engine()
    try:
        async with _maker(engine)() as session:
            await _seed(
                session,
                "a1",
                PoolStatus.CLAIMED,
                agent_name="Bot",
                claimed_at=utcnow(),
            )
            written = await pool_store.upsert_instance(
                session,
                instance_id="a1",
                name="convos-agent-a1",
                status=PoolStatus.IDLE,
            )
            row = await pool_store.get_instance(session, "a1")
    finally:
        await engine.dispose()

    assert written is False
    assert row is not None
    assert row.status == PoolStatus.CLAIMED.value
    assert row.agent_name == "Bot"


@pytest.mark.asyncio
async def test_upsert_keeps_set_fields_when_new_value_is_null() -> None:
    engine = await _make_engine()
    try:
        async with _maker(engine)() as session:
            await _seed(
                session,
                "a1",
                PoolStatus.CLAIMED,
                agent_name="Bot",
                url="https://a1.example",
                claimed_at=utcnow(),
            )
            written = await pool_store.upsert_instance(
                session,
                instance_id="a1",
                name="convos-agent-a1",
                status=PoolStatus.SLEEPING,
                url=None,
            )
            row = await pool_store.get_instance(session, "a1")
    finally:
        await engine.dispose()

    assert written is True
    assert row is not None
    assert row.status == PoolStatus.SLEEPING.value
    assert row.url == "https://a1.example"
    assert row.agent_name == "Bot"


@pytest.mark.asyncio
async def test_upsert_inserts_missing_rows() -> None:
    engine = await _make_engine()
    try:
        async with _maker(engine)() as session:
            written = await pool_store.upsert_instance(
                session,
                instance_id="new1",
                name="convos-agent-new1",
                status=PoolStatus.STARTING,
                url="https://new1.example",
            )
            row = await pool_store.get_instance(session, "new1")
    finally:
        await engine.dispose()

    assert written is True
    assert row is not None
    assert row.status == PoolStatus.STARTING.value
    assert row.url == "https://new1.example"


@pytest.mark.asyncio
async def test_delete_unreported_removes_only_unbound_settled_rows() -> None:
    engine = await _make_engine()
    try:
        async with _maker(engine)() as session:
            await _seed(session, "listed", PoolStatus.IDLE)
            await _seed(session, "gone", PoolStatus.IDLE)
            await _seed(session, "booting", PoolStatus.STARTING)
            await _seed(session, "inflight", PoolStatus.CLAIMING)
            await _seed(session, "bound", PoolStatus.CLAIMED, agent_name="Bot")
            session.add(
                InstanceInfra(
                    instance_id="gone",
                    provider_service_id="svc-gone",
                    provider_env_id="env-1",
                    provider_project_id="proj-1",
                ),
            )
            await session.flush()
            session.add(
                InstanceResource(
                    instance_id="gone",
                    tool_id="openrouter",
                    resource_id="hash-1",
                    env_key="OPENROUTER_API_KEY",
                ),
            )
            await session.commit()

            deleted = await pool_store.delete_unreported(session, ["listed"])
            remaining = sorted(row.id for row in await pool_store.list_instances(session))
            infra_left = list(await session.exec(select(col(InstanceInfra.instance_id))))
            resources_left = await pool_store.list_resources(session)
    finally:
        await engine.dispose()

    assert deleted == ["gone"]
    assert remaining == ["booting", "bound", "inflight", "listed"]
    assert infra_left == []
    assert resources_left == []


@pytest.mark.asyncio
async def test_update_status_respects_expected_statuses() -> None:
    engine = await _make_engine()
    try:
        async with _maker(engine)() as session:
            await _seed(session, "a1", PoolStatus.CLAIMING)
            fenced = await pool_store.update_status(
                session,
                "a1",
                PoolStatus.DEAD,
                expected=[PoolStatus.IDLE, PoolStatus.STARTING],
            )
            crashed = await pool_store.mark_crashed(session, "a1", expected=[PoolStatus.CLAIMING])
            row = await pool_store.get_instance(session, "a1")
    finally:
        await engine.dispose()

    assert fenced is False
    assert crashed is True
    assert row is not None
    assert row.status == PoolStatus.CRASHED.value


@pytest.mark.asyncio
async def test_find_instance_by_token_compares_issued_secret() -> None:
    engine = await _make_engine()
    try:
        async with _maker(engine)() as session:
            session.add(
                InstanceInfra(
                    instance_id="a1",
                    provider_service_id="svc-a1",
                    provider_env_id="env-1",
                    provider_project_id="proj-1",
                    gateway_token="secret-token",
                ),
            )
            await session.commit()

            good = await pool_store.find_instance_by_token(session, "a1", "secret-token")
            bad = await pool_store.find_instance_by_token(session, "a1", "other-token")
            missing = await pool_store.find_instance_by_token(session, "zz", "secret-token")
    finally:
        await engine.dispose()

    assert good is True
    assert bad is False
    assert missing is False
