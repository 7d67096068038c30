"""Reusable phone numbers purchased from the phone provider."""

from __future__ import annotations

from datetime import datetime

from sqlmodel import Field, SQLModel

from agent_pool.core.time import utcnow

RUNTIME_ANNOTATION_TYPES = (datetime,)

PHONE_AVAILABLE = "available"
PHONE_ASSIGNED = "assigned"


class PhoneNumberPoolEntry(SQLModel, table=True):
    """A purchased number, either assigned to an instance or free for reuse."""

    __tablename__ = "phone_number_pool"  # pyright: ignore[reportAssignmentType]

    id: int | None = Field(default=None, primary_key=True)
    phone_number: str = Field(unique=True, index=True)
    messaging_profile_id: str
    status: str = Field(default=PHONE_AVAILABLE, index=True)
    instance_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)
