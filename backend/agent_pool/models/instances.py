"""Instance rows: the pool-visible state of each ephemeral agent runtime."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel

from agent_pool.core.time import utcnow
from agent_pool.models.pool_status import PoolStatus

RUNTIME_ANNOTATION_TYPES = (datetime,)


class Instance(SQLModel, table=True):
    """One warm-pool instance and, once claimed, its conversation binding."""

    __tablename__ = "instances"  # pyright: ignore[reportAssignmentType]

    id: str = Field(primary_key=True, max_length=64)
    name: str = Field(index=True)
    url: str | None = Field(default=None)
    status: str = Field(default=PoolStatus.STARTING.value, index=True)
    agent_name: str | None = Field(default=None)
    conversation_id: str | None = Field(default=None)
    invite_url: str | None = Field(default=None)
    instructions: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=utcnow)
    claimed_at: datetime | None = Field(default=None)

    @property
    def is_bound(self) -> bool:
        return bool(self.agent_name) or self.claimed_at is not None
