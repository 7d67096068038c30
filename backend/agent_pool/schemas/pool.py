"""Schemas for the `/pool` claim, status, and operator endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from agent_pool.schemas.common import CamelModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class PoolCounts(CamelModel):
    """Instance counts by status; every status is present, zero-filled."""

    starting: int = 0
    idle: int = 0
    claiming: int = 0
    claimed: int = 0
    crashed: int = 0
    dead: int = 0
    sleeping: int = 0


class InstanceView(CamelModel):
    """Camel-cased projection of one instance row."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: str
    name: str
    url: str | None = None
    status: str
    agent_name: str | None = None
    conversation_id: str | None = None
    invite_url: str | None = None
    instructions: str | None = None
    created_at: datetime
    claimed_at: datetime | None = None


class PoolAgents(CamelModel):
    claimed: list[InstanceView] = Field(default_factory=list)
    crashed: list[InstanceView] = Field(default_factory=list)
    idle: list[InstanceView] = Field(default_factory=list)
    starting: list[InstanceView] = Field(default_factory=list)


class PoolInfo(CamelModel):
    environment: str
    runtime_image: str
    min_idle: int
    tick_interval_seconds: float


class PoolStatusView(CamelModel):
    counts: PoolCounts
    instances: list[InstanceView]


class ClaimRequest(CamelModel):
    """Claim payload; omitted fields fall back to the pool defaults."""

    agent_name: str | None = None
    instructions: str | None = None
    join_url: str | None = None


class ClaimResponse(CamelModel):
    instance_id: str
    conversation_id: str | None = None
    invite_url: str | None = None
    joined: bool
    gateway_url: str | None = None


class CreatedInstanceView(CamelModel):
    id: str
    name: str
    url: str | None = None


class ReplenishRequest(CamelModel):
    """`count` of 0 runs a reconciliation tick instead of creating instances."""

    count: int = Field(default=0, ge=0)
    concurrency: int = Field(default=5, ge=1)


class ReplenishResponse(CamelModel):
    ok: bool = True
    created: int = 0
    failed: int = 0
    instances: list[CreatedInstanceView] = Field(default_factory=list)
    counts: PoolCounts


class DrainRequest(CamelModel):
    count: int = Field(default=1, ge=1)
    concurrency: int = Field(default=5, ge=1)


class DrainResponse(CamelModel):
    ok: bool = True
    drained: int
    failed: int = 0
    skipped: int = 0
    drained_ids: list[str]
    counts: PoolCounts


class TickSummary(CamelModel):
    """What one reconciliation tick observed and changed."""

    skipped: str | None = None
    listed: int = 0
    probed: int = 0
    updated: int = 0
    crashed: list[str] = Field(default_factory=list)
    torn_down: list[str] = Field(default_factory=list)
    forgotten: list[str] = Field(default_factory=list)
    orphans: list[str] = Field(default_factory=list)
    created: list[str] = Field(default_factory=list)
    create_failures: int = 0


class ReconcileResponse(CamelModel):
    ok: bool = True
    tick: TickSummary
    counts: PoolCounts


class SelfDestructRequest(CamelModel):
    """Sent by an instance asking to be torn down; empty values are rejected."""

    instance_id: str = ""
    gateway_token: str = ""
