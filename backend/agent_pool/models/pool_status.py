"""Closed status vocabularies for pool instances and provider deployments."""

from __future__ import annotations

from enum import Enum


class PoolStatus(str, Enum):
    """Pool-visible lifecycle label of an instance."""

    STARTING = "starting"
    IDLE = "idle"
    CLAIMING = "claiming"
    CLAIMED = "claimed"
    CRASHED = "crashed"
    DEAD = "dead"
    SLEEPING = "sleeping"


class DeployStatus(str, Enum):
    """Deployment status values reported by the compute provider."""

    QUEUED = "QUEUED"
    WAITING = "WAITING"
    BUILDING = "BUILDING"
    DEPLOYING = "DEPLOYING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CRASHED = "CRASHED"
    REMOVED = "REMOVED"
    SKIPPED = "SKIPPED"
    SLEEPING = "SLEEPING"


TRANSIENT_DEPLOY_STATUSES = frozenset(
    {
        DeployStatus.QUEUED,
        DeployStatus.WAITING,
        DeployStatus.BUILDING,
        DeployStatus.DEPLOYING,
    },
)
TERMINAL_DEPLOY_STATUSES = frozenset(
    {
        DeployStatus.FAILED,
        DeployStatus.CRASHED,
        DeployStatus.REMOVED,
        DeployStatus.SKIPPED,
    },
)
