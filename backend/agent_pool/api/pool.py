"""Pool endpoints: counts and listings, claims, and operator controls."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, status
from sse_starlette.sse import EventSourceResponse

from agent_pool.api.deps import SERVICES_DEP, SESSION_DEP
from agent_pool.core.auth import AUTH_DEP
from agent_pool.core.logging import get_logger
from agent_pool.db import pool_store
from agent_pool.models.pool_status import PoolStatus
from agent_pool.schemas.common import OkResponse
from agent_pool.schemas.pool import (
    ClaimRequest,
    ClaimResponse,
    CreatedInstanceView,
    DrainRequest,
    DrainResponse,
    InstanceView,
    PoolAgents,
    PoolCounts,
    PoolInfo,
    PoolStatusView,
    ReconcileResponse,
    ReplenishRequest,
    ReplenishResponse,
    SelfDestructRequest,
    TickSummary,
)
from agent_pool.services.pool.claims import InvalidJoinUrlError
from agent_pool.services.pool.errors import (
    DismissRefusedError,
    InstanceNotFoundError,
    ProvisionError,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from typing import Any

    from sqlmodel.ext.asyncio.session import AsyncSession

    from agent_pool.api.deps import PoolServices

router = APIRouter(prefix="/pool", tags=["pool"])
logger = get_logger(__name__)

NO_IDLE_DETAIL = "No idle instances available. Try again in a few minutes."
LISTED_STATUSES = (
    PoolStatus.CLAIMED,
    PoolStatus.CRASHED,
    PoolStatus.IDLE,
    PoolStatus.STARTING,
)


def _views(rows: list[Any]) -> list[InstanceView]:
    return [InstanceView.model_validate(row) for row in rows]


def _sse(request: Request, events: AsyncIterator[dict[str, Any]]) -> EventSourceResponse:
    async def event_generator() -> AsyncIterator[dict[str, str]]:
        async for event in events:
            if await request.is_disconnected():
                break
            yield {"data": json.dumps(event)}

    return EventSourceResponse(event_generator(), ping=15)


@router.get("/counts", response_model=PoolCounts)
async def get_counts(session: AsyncSession = SESSION_DEP) -> PoolCounts:
    """Instance counts by status; polled by dashboards."""
    return PoolCounts.model_validate(await pool_store.get_counts(session))


@router.get("/agents", response_model=PoolAgents)
async def list_agents(session: AsyncSession = SESSION_DEP) -> PoolAgents:
    grouped: dict[str, list[InstanceView]] = {}
    for pool_status in LISTED_STATUSES:
        rows = await pool_store.list_by_status(session, (pool_status,))
        grouped[pool_status.value] = _views(rows)
    return PoolAgents.model_validate(grouped)


@router.get("/info", response_model=PoolInfo)
async def get_info(services: PoolServices = SERVICES_DEP) -> PoolInfo:
    settings = services.settings
    return PoolInfo(
        environment=settings.pool_environment,
        runtime_image=settings.railway_runtime_image,
        min_idle=settings.pool_min_idle,
        tick_interval_seconds=settings.tick_interval_seconds,
    )


@router.get("/status", response_model=PoolStatusView, dependencies=[AUTH_DEP])
async def get_status(session: AsyncSession = SESSION_DEP) -> PoolStatusView:
    counts = await pool_store.get_counts(session)
    rows = await pool_store.list_instances(session)
    return PoolStatusView(counts=PoolCounts.model_validate(counts), instances=_views(rows))


@router.post("/claim", response_model=ClaimResponse, dependencies=[AUTH_DEP])
async def claim_instance(
    payload: ClaimRequest | None = None,
    services: PoolServices = SERVICES_DEP,
) -> ClaimResponse:
    """Bind an idle instance to an agent and conversation.

    Returns 503 when no instance is idle and 502 when the chosen instance
    rejects or fails the binding.
    """
    payload = payload or ClaimRequest()
    try:
        result = await services.claims.claim(
            agent_name=payload.agent_name,
            instructions=payload.instructions,
            join_url=payload.join_url,
        )
    except InvalidJoinUrlError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ProvisionError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    if result is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=NO_IDLE_DETAIL)
    return ClaimResponse(
        instance_id=result.instance_id,
        conversation_id=result.conversation_id,
        invite_url=result.invite_url,
        joined=result.joined,
        gateway_url=result.gateway_url,
    )


@router.post("/replenish", response_model=ReplenishResponse, dependencies=[AUTH_DEP])
async def replenish(
    payload: ReplenishRequest | None = None,
    services: PoolServices = SERVICES_DEP,
) -> ReplenishResponse:
    """Create `count` instances now, or run one tick when `count` is 0."""
    payload = payload or ReplenishRequest()
    result = await services.ops.replenish(payload.count, concurrency=payload.concurrency)
    return ReplenishResponse(
        created=len(result.created),
        failed=result.failed,
        instances=[
            CreatedInstanceView(id=created.instance_id, name=created.name, url=created.url)
            for created in result.created
        ],
        counts=PoolCounts.model_validate(await services.ops.counts()),
    )


@router.get("/replenish/stream", dependencies=[AUTH_DEP])
async def replenish_stream(
    request: Request,
    count: int = Query(default=1, ge=1),
    concurrency: int = Query(default=5, ge=1),
    services: PoolServices = SERVICES_DEP,
) -> EventSourceResponse:
    """Stream per-instance creation progress, then a `complete` summary."""
    return _sse(request, services.ops.replenish_events(count, concurrency=concurrency))


@router.post("/drain", response_model=DrainResponse, dependencies=[AUTH_DEP])
async def drain(
    payload: DrainRequest | None = None,
    services: PoolServices = SERVICES_DEP,
) -> DrainResponse:
    payload = payload or DrainRequest()
    result = await services.ops.drain(payload.count, concurrency=payload.concurrency)
    return DrainResponse(
        drained=len(result.drained),
        failed=result.failed,
        skipped=result.skipped,
        drained_ids=result.drained,
        counts=PoolCounts.model_validate(await services.ops.counts()),
    )


@router.get("/drain/stream", dependencies=[AUTH_DEP])
async def drain_stream(
    request: Request,
    count: int = Query(default=20, ge=1),
    concurrency: int = Query(default=5, ge=1),
    services: PoolServices = SERVICES_DEP,
) -> EventSourceResponse:
    return _sse(request, services.ops.drain_events(count, concurrency=concurrency))


@router.post("/reconcile", response_model=ReconcileResponse, dependencies=[AUTH_DEP])
async def reconcile(services: PoolServices = SERVICES_DEP) -> ReconcileResponse:
    """Run one reconciliation tick immediately."""
    report = await services.reconciler.tick()
    return ReconcileResponse(
        ok=report.skipped != "failed",
        tick=TickSummary.model_validate(report, from_attributes=True),
        counts=PoolCounts.model_validate(await services.ops.counts()),
    )


@router.delete("/instances/{instance_id}", response_model=OkResponse, dependencies=[AUTH_DEP])
async def kill_instance(instance_id: str, services: PoolServices = SERVICES_DEP) -> OkResponse:
    """Destroy an instance, claimed or not."""
    try:
        await services.ops.kill(instance_id)
    except InstanceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return OkResponse()


@router.delete("/crashed/{instance_id}", response_model=OkResponse, dependencies=[AUTH_DEP])
async def dismiss_crashed(instance_id: str, services: PoolServices = SERVICES_DEP) -> OkResponse:
    try:
        await services.ops.dismiss(instance_id)
    except InstanceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DismissRefusedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return OkResponse()


@router.post("/self-destruct", response_model=OkResponse)
async def self_destruct(
    background_tasks: BackgroundTasks,
    payload: SelfDestructRequest | None = None,
    services: PoolServices = SERVICES_DEP,
) -> OkResponse:
    """Tear down the calling instance after verifying its gateway token.

    The teardown runs after the response is sent; the instance does not wait.
    """
    payload = payload or SelfDestructRequest()
    if not payload.instance_id or not payload.gateway_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="instanceId and gatewayToken are required",
        )
    if not await services.ops.verify_instance_token(payload.instance_id, payload.gateway_token):
        logger.warning(
            "pool.self_destruct.rejected",
            extra={"instance_id": payload.instance_id},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid instance ID or token",
        )
    background_tasks.add_task(services.ops.self_destruct, payload.instance_id)
    return OkResponse()
