"""Model exports for SQLAlchemy/SQLModel metadata discovery."""

from agent_pool.models.instance_infra import InstanceInfra
from agent_pool.models.instance_resources import InstanceResource
from agent_pool.models.instances import Instance
from agent_pool.models.phone_numbers import PhoneNumberPoolEntry
from agent_pool.models.pool_status import DeployStatus, PoolStatus

__all__ = [
    "DeployStatus",
    "Instance",
    "InstanceInfra",
    "InstanceResource",
    "PhoneNumberPoolEntry",
    "PoolStatus",
]
