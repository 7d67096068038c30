"""Public schema exports shared across API route modules."""

from agent_pool.schemas.common import CamelModel, OkResponse
from agent_pool.schemas.health import HealthStatusResponse
from agent_pool.schemas.pool import (
    ClaimRequest,
    ClaimResponse,
    InstanceView,
    PoolAgents,
    PoolCounts,
    PoolInfo,
    PoolStatusView,
)

__all__ = [
    "CamelModel",
    "ClaimRequest",
    "ClaimResponse",
    "HealthStatusResponse",
    "InstanceView",
    "OkResponse",
    "PoolAgents",
    "PoolCounts",
    "PoolInfo",
    "PoolStatusView",
]
