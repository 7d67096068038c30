"""Prometheus exposition endpoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Response

from agent_pool.api.deps import SERVICES_DEP
from agent_pool.services.pool.metrics import CONTENT_TYPE

if TYPE_CHECKING:
    from agent_pool.api.deps import PoolServices

router = APIRouter(tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
async def metrics(services: PoolServices = SERVICES_DEP) -> Response:
    counts = await services.ops.counts()
    services.metrics.set_counts(counts)
    return Response(content=services.metrics.render(), media_type=CONTENT_TYPE)
