"""Pure status derivation from provider deploy status and liveness probes."""

from __future__ import annotations

from dataclasses import dataclass

from agent_pool.models.pool_status import (
    TERMINAL_DEPLOY_STATUSES,
    TRANSIENT_DEPLOY_STATUSES,
    DeployStatus,
    PoolStatus,
)


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of `GET /pool/health` against an instance."""

    ready: bool


def _parse_deploy_status(value: DeployStatus | str | None) -> DeployStatus | None:
    if value is None or isinstance(value, DeployStatus):
        return value
    try:
        return DeployStatus(value.upper())
    except ValueError:
        return None


def _age_fallback(
    age_ms: float,
    *,
    is_claimed: bool,
    stuck_timeout_ms: float,
    claimed_unreachable_timeout_ms: float | None,
) -> PoolStatus:
    if is_claimed:
        if claimed_unreachable_timeout_ms is None or age_ms < claimed_unreachable_timeout_ms:
            return PoolStatus.CLAIMED
        return PoolStatus.CRASHED
    if age_ms < stuck_timeout_ms:
        return PoolStatus.STARTING
    return PoolStatus.DEAD


def derive_status(
    deploy_status: DeployStatus | str | None,
    probe: ProbeResult | None,
    age_ms: float,
    *,
    is_claimed: bool,
    stuck_timeout_ms: float,
    claimed_unreachable_timeout_ms: float | None = None,
) -> PoolStatus:
    """Map provider deploy status plus probe result to a pool status.

    `age_ms` is measured from creation for unbound instances and from the
    claim time for bound ones. `claimed_unreachable_timeout_ms=None` keeps an
    unreachable bound instance `claimed` indefinitely. The result is never
    `idle` or `dead` for a bound instance.
    """
    parsed = _parse_deploy_status(deploy_status)

    if parsed is DeployStatus.SLEEPING:
        return PoolStatus.SLEEPING
    if parsed in TERMINAL_DEPLOY_STATUSES:
        return PoolStatus.CRASHED if is_claimed else PoolStatus.DEAD
    if parsed in TRANSIENT_DEPLOY_STATUSES:
        return PoolStatus.CLAIMED if is_claimed else PoolStatus.STARTING
    if parsed is DeployStatus.SUCCESS and probe is not None and probe.ready:
        return PoolStatus.CLAIMED if is_claimed else PoolStatus.IDLE
    return _age_fallback(
        age_ms,
        is_claimed=is_claimed,
        stuck_timeout_ms=stuck_timeout_ms,
        claimed_unreachable_timeout_ms=claimed_unreachable_timeout_ms,
    )
