"""Compute-provider binding for an instance (one row per instance)."""

from __future__ import annotations

from datetime import datetime

from sqlmodel import Field, SQLModel

from agent_pool.core.time import utcnow

RUNTIME_ANNOTATION_TYPES = (datetime,)


class InstanceInfra(SQLModel, table=True):
    """Remote service identifiers and secrets issued when the instance was created."""

    __tablename__ = "instance_infra"  # pyright: ignore[reportAssignmentType]

    instance_id: str = Field(primary_key=True, max_length=64)
    provider: str = Field(default="railway")
    provider_service_id: str = Field(unique=True, index=True)
    provider_env_id: str
    provider_project_id: str = Field(index=True)
    url: str | None = Field(default=None)
    deploy_status: str | None = Field(default=None)
    runtime_image: str | None = Field(default=None)
    gateway_token: str | None = Field(default=None)
    volume_id: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
