"""create pool tables

Revision ID: a1c3e5f7b9d2
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
import sqlmodel
from alembic import op

# revision identifiers, used by Alembic.
revision = "a1c3e5f7b9d2"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create instance, infra, resource and phone-number tables."""
    op.create_table(
        "instances",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("name", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("url", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("agent_name", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("conversation_id", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("invite_url", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("instructions", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_instances_name"), "instances", ["name"], unique=False)
    op.create_index(op.f("ix_instances_status"), "instances", ["status"], unique=False)

    op.create_table(
        "instance_infra",
        sa.Column("instance_id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("provider", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("provider_service_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("provider_env_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("provider_project_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("url", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("deploy_status", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("runtime_image", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("gateway_token", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("volume_id", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("instance_id"),
    )
    op.create_index(
        op.f("ix_instance_infra_provider_service_id"),
        "instance_infra",
        ["provider_service_id"],
        unique=True,
    )
    op.create_index(
        op.f("ix_instance_infra_provider_project_id"),
        "instance_infra",
        ["provider_project_id"],
        unique=False,
    )

    op.create_table(
        "instance_resources",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("instance_id", sqlmodel.sql.sqltypes.AutoString(length=64), nullable=False),
        sa.Column("tool_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("resource_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("resource_meta", sa.JSON(), nullable=False),
        sa.Column("env_key", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("env_value", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ["instance_id"],
            ["instance_infra.instance_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "instance_id",
            "tool_id",
            name="uq_instance_resources_instance_tool",
        ),
    )
    op.create_index(
        op.f("ix_instance_resources_instance_id"),
        "instance_resources",
        ["instance_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_instance_resources_tool_id"),
        "instance_resources",
        ["tool_id"],
        unique=False,
    )

    op.create_table(
        "phone_number_pool",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("phone_number", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("messaging_profile_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("instance_id", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_phone_number_pool_phone_number"),
        "phone_number_pool",
        ["phone_number"],
        unique=True,
    )
    op.create_index(
        op.f("ix_phone_number_pool_status"),
        "phone_number_pool",
        ["status"],
        unique=False,
    )
    op.create_index(
        op.f("ix_phone_number_pool_instance_id"),
        "phone_number_pool",
        ["instance_id"],
        unique=False,
    )


def downgrade() -> None:
    """Drop the pool tables."""
    op.drop_table("phone_number_pool")
    op.drop_table("instance_resources")
    op.drop_table("instance_infra")
    op.drop_table("instances")
