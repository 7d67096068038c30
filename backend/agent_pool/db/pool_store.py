"""Persistence helpers for pool instances and their provider bindings.

Every write helper here is a single guarded statement (or a short group of
statements committed together) so that concurrent ticks, claims and operator
actions running in other processes cannot clobber each other:

- `claim_idle` hands out at most one idle row per caller using
  `FOR UPDATE SKIP LOCKED`, oldest-created first.
- `upsert_instance` never overwrites a row that is mid-claim, never demotes
  a bound row to idle/starting, and never replaces a set claim field with null.
- `delete_instance_rows` removes the instance, infra and resource rows in one
  transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from hmac import compare_digest
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, update
from sqlmodel import col, select

from agent_pool.core.logging import get_logger
from agent_pool.core.time import utcnow
from agent_pool.models.instance_infra import InstanceInfra
from agent_pool.models.instance_resources import InstanceResource
from agent_pool.models.instances import Instance
from agent_pool.models.pool_status import PoolStatus

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)

UNBOUND_STATUSES = (PoolStatus.IDLE, PoolStatus.STARTING)


@dataclass(frozen=True)
class ClaimBinding:
    """Conversation binding recorded when a claim completes."""

    agent_name: str
    instructions: str
    conversation_id: str | None
    invite_url: str | None


def _status_values(statuses: Iterable[PoolStatus | str]) -> list[str]:
    return [PoolStatus(status).value for status in statuses]


async def get_instance(session: AsyncSession, instance_id: str) -> Instance | None:
    statement = (
        select(Instance)
        .where(col(Instance.id) == instance_id)
        .execution_options(populate_existing=True)
    )
    return (await session.exec(statement)).first()


async def list_instances(session: AsyncSession) -> list[Instance]:
    statement = (
        select(Instance)
        .order_by(col(Instance.created_at).asc())
        .execution_options(populate_existing=True)
    )
    return list(await session.exec(statement))


async def list_by_status(
    session: AsyncSession,
    statuses: Iterable[PoolStatus | str],
    *,
    limit: int | None = None,
) -> list[Instance]:
    statement = (
        select(Instance)
        .where(col(Instance.status).in_(_status_values(statuses)))
        .order_by(col(Instance.created_at).asc())
        .execution_options(populate_existing=True)
    )
    if limit is not None:
        statement = statement.limit(limit)
    return list(await session.exec(statement))


async def get_counts(session: AsyncSession) -> dict[str, int]:
    """Return instance counts for every pool status, zero-filled."""
    counts = {status.value: 0 for status in PoolStatus}
    statement = select(col(Instance.status), func.count()).group_by(col(Instance.status))
    for status_value, count in await session.exec(statement):
        if status_value in counts:
            counts[status_value] = int(count)
    return counts


async def insert_starting_instance(
    session: AsyncSession,
    *,
    instance_id: str,
    name: str,
    commit: bool = True,
) -> Instance:
    instance = Instance(id=instance_id, name=name, status=PoolStatus.STARTING.value)
    session.add(instance)
    if commit:
        await session.commit()
    return instance


async def upsert_instance(
    session: AsyncSession,
    *,
    instance_id: str,
    name: str,
    status: PoolStatus,
    url: str | None = None,
    agent_name: str | None = None,
    conversation_id: str | None = None,
    invite_url: str | None = None,
    instructions: str | None = None,
    created_at: datetime | None = None,
    claimed_at: datetime | None = None,
    commit: bool = True,
) -> bool:
    """Insert or update one instance row with coalescing semantics.

    Returns False when the existing row was left untouched by a guard.
    """
    values: dict[str, Any] = {"name": name, "status": status.value}
    optional = {
        "url": url,
        "agent_name": agent_name,
        "conversation_id": conversation_id,
        "invite_url": invite_url,
        "instructions": instructions,
        "claimed_at": claimed_at,
    }
    values.update({key: value for key, value in optional.items() if value is not None})

    statement = (
        update(Instance)
        .where(col(Instance.id) == instance_id)
        .where(col(Instance.status) != PoolStatus.CLAIMING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if status in UNBOUND_STATUSES:
        statement = statement.where(
            col(Instance.agent_name).is_(None),
            col(Instance.claimed_at).is_(None),
        )
    result = await session.exec(statement)
    written = bool(result.rowcount)
    if not written:
        exists = await session.exec(select(col(Instance.id)).where(col(Instance.id) == instance_id))
        if exists.first() is None:
            session.add(
                Instance(
                    id=instance_id,
                    created_at=created_at or utcnow(),
                    **values,
                ),
            )
            written = True
    if commit:
        await session.commit()
    return written


async def claim_idle(session: AsyncSession) -> Instance | None:
    """Atomically move the oldest idle row to `claiming` and return it.

    Concurrent callers never receive the same row and never wait on each
    other's locks. Returns None when no idle row is available.
    """
    candidate = (
        select(col(Instance.id))
        .where(col(Instance.status) == PoolStatus.IDLE.value)
        .order_by(col(Instance.created_at).asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    statement = (
        update(Instance)
        .where(col(Instance.id) == candidate)
        .where(col(Instance.status) == PoolStatus.IDLE.value)
        .values(status=PoolStatus.CLAIMING.value)
        .returning(col(Instance.id))
        .execution_options(synchronize_session=False)
    )
    claimed_id = (await session.exec(statement)).scalar_one_or_none()
    await session.commit()
    if claimed_id is None:
        return None
    return await get_instance(session, claimed_id)


async def complete_claim(
    session: AsyncSession,
    instance_id: str,
    binding: ClaimBinding,
) -> bool:
    statement = (
        update(Instance)
        .where(col(Instance.id) == instance_id)
        .where(col(Instance.status) == PoolStatus.CLAIMING.value)
        .values(
            status=PoolStatus.CLAIMED.value,
            agent_name=binding.agent_name,
            instructions=binding.instructions,
            conversation_id=binding.conversation_id,
            invite_url=binding.invite_url,
            claimed_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.exec(statement)
    await session.commit()
    return bool(result.rowcount)


async def release_claim(session: AsyncSession, instance_id: str) -> bool:
    """Return a `claiming` row to `idle`; rows in any other state are left alone."""
    statement = (
        update(Instance)
        .where(col(Instance.id) == instance_id)
        .where(col(Instance.status) == PoolStatus.CLAIMING.value)
        .values(status=PoolStatus.IDLE.value)
        .execution_options(synchronize_session=False)
    )
    result = await session.exec(statement)
    await session.commit()
    return bool(result.rowcount)


async def update_status(
    session: AsyncSession,
    instance_id: str,
    status: PoolStatus,
    *,
    expected: Sequence[PoolStatus] | None = None,
    commit: bool = True,
) -> bool:
    statement = (
        update(Instance)
        .where(col(Instance.id) == instance_id)
        .values(status=status.value)
        .execution_options(synchronize_session=False)
    )
    if expected is not None:
        statement = statement.where(col(Instance.status).in_(_status_values(expected)))
    result = await session.exec(statement)
    if commit:
        await session.commit()
    return bool(result.rowcount)


async def mark_crashed(
    session: AsyncSession,
    instance_id: str,
    *,
    expected: Sequence[PoolStatus] | None = None,
) -> bool:
    return await update_status(session, instance_id, PoolStatus.CRASHED, expected=expected)


async def find_unreported(
    session: AsyncSession,
    reported_ids: Iterable[str],
) -> list[Instance]:
    """Rows the compute provider no longer lists, excluding in-flight creates and claims."""
    statement = (
        select(Instance)
        .where(col(Instance.id).not_in(list(reported_ids)))
        .where(
            col(Instance.status).not_in(
                [PoolStatus.STARTING.value, PoolStatus.CLAIMING.value],
            ),
        )
        .execution_options(populate_existing=True)
    )
    return list(await session.exec(statement))


async def delete_unreported(
    session: AsyncSession,
    reported_ids: Iterable[str],
) -> list[str]:
    """Delete unbound rows the provider no longer lists; bound rows are kept."""
    statement = (
        select(col(Instance.id))
        .where(col(Instance.id).not_in(list(reported_ids)))
        .where(
            col(Instance.status).not_in(
                [PoolStatus.STARTING.value, PoolStatus.CLAIMING.value],
            ),
        )
        .where(col(Instance.agent_name).is_(None), col(Instance.claimed_at).is_(None))
    )
    doomed = list(await session.exec(statement))
    if not doomed:
        return []
    await session.exec(
        delete(InstanceResource).where(col(InstanceResource.instance_id).in_(doomed)),
    )
    await session.exec(delete(InstanceInfra).where(col(InstanceInfra.instance_id).in_(doomed)))
    await session.exec(delete(Instance).where(col(Instance.id).in_(doomed)))
    await session.commit()
    return doomed


async def get_infra(session: AsyncSession, instance_id: str) -> InstanceInfra | None:
    statement = (
        select(InstanceInfra)
        .where(col(InstanceInfra.instance_id) == instance_id)
        .execution_options(populate_existing=True)
    )
    return (await session.exec(statement)).first()


async def list_infra(session: AsyncSession) -> list[InstanceInfra]:
    return list(await session.exec(select(InstanceInfra)))


async def list_resources(
    session: AsyncSession,
    instance_id: str | None = None,
) -> list[InstanceResource]:
    statement = select(InstanceResource).order_by(col(InstanceResource.id).asc())
    if instance_id is not None:
        statement = statement.where(col(InstanceResource.instance_id) == instance_id)
    return list(await session.exec(statement))


async def get_resource(
    session: AsyncSession,
    instance_id: str,
    tool_id: str,
) -> InstanceResource | None:
    statement = select(InstanceResource).where(
        col(InstanceResource.instance_id) == instance_id,
        col(InstanceResource.tool_id) == tool_id,
    )
    return (await session.exec(statement)).first()


async def delete_resource(
    session: AsyncSession,
    *,
    instance_id: str,
    tool_id: str,
    resource_id: str,
) -> int:
    result = await session.exec(
        delete(InstanceResource).where(
            col(InstanceResource.instance_id) == instance_id,
            col(InstanceResource.tool_id) == tool_id,
            col(InstanceResource.resource_id) == resource_id,
        ),
    )
    await session.commit()
    return int(result.rowcount or 0)


async def update_infra_status(
    session: AsyncSession,
    instance_id: str,
    *,
    deploy_status: str | None,
    url: str | None,
    commit: bool = True,
) -> None:
    values: dict[str, Any] = {"updated_at": utcnow()}
    if deploy_status is not None:
        values["deploy_status"] = deploy_status
    if url is not None:
        values["url"] = url
    await session.exec(
        update(InstanceInfra)
        .where(col(InstanceInfra.instance_id) == instance_id)
        .values(**values)
        .execution_options(synchronize_session=False),
    )
    if commit:
        await session.commit()


async def delete_instance_rows(session: AsyncSession, instance_id: str) -> bool:
    """Delete the instance row with its infra and resource rows in one transaction."""
    await session.exec(
        delete(InstanceResource).where(col(InstanceResource.instance_id) == instance_id),
    )
    await session.exec(delete(InstanceInfra).where(col(InstanceInfra.instance_id) == instance_id))
    result = await session.exec(delete(Instance).where(col(Instance.id) == instance_id))
    await session.commit()
    return bool(result.rowcount)


async def find_instance_by_token(
    session: AsyncSession,
    instance_id: str,
    gateway_token: str,
) -> bool:
    """Return True when `gateway_token` is the secret issued to `instance_id`."""
    infra = await get_infra(session, instance_id)
    if infra is None or not infra.gateway_token:
        return False
    return compare_digest(infra.gateway_token.encode(), gateway_token.encode())
