"""Attached external resources (credential, inbox, phone number) per instance."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from agent_pool.core.time import utcnow

RUNTIME_ANNOTATION_TYPES = (datetime,)


class InstanceResource(SQLModel, table=True):
    """One provider resource bound to an instance; at most one per kind."""

    __tablename__ = "instance_resources"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        UniqueConstraint(
            "instance_id",
            "tool_id",
            name="uq_instance_resources_instance_tool",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    instance_id: str = Field(
        foreign_key="instance_infra.instance_id",
        ondelete="CASCADE",
        index=True,
        max_length=64,
    )
    tool_id: str = Field(index=True)
    resource_id: str
    resource_meta: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    env_key: str
    env_value: str | None = Field(default=None)
    status: str = Field(default="active")
    created_at: datetime = Field(default_factory=utcnow)
