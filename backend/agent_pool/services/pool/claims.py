"""Claim protocol: hand one idle instance to a requester.

Selection is a single skip-locked UPDATE, so any number of concurrent
claimants (in this or other processes) each get a distinct row or none.
The instance is then asked to bind itself to a conversation. A binding
conflict leaves the runtime unusable and the row is marked `crashed`; any
other failure puts the row back to `idle`.
"""

from __future__ import annotations

import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from agent_pool.core.logging import get_logger
from agent_pool.db import pool_store
from agent_pool.models.pool_status import PoolStatus
from agent_pool.services.pool.errors import (
    ClaimFailureKind,
    ProvisionError,
    classify_provision_error,
)
from agent_pool.services.pool.metrics import ClaimOutcome

if TYPE_CHECKING:
    from agent_pool.core.config import Settings
    from agent_pool.db.session import SessionMaker
    from agent_pool.services.pool.instance_client import InstanceClient
    from agent_pool.services.pool.metrics import PoolMetrics

logger = get_logger(__name__)

DEFAULT_AGENT_NAME = "Assistant"
DEFAULT_INSTRUCTIONS = "You are a helpful AI assistant."


class InvalidJoinUrlError(ValueError):
    """A join link points at a host belonging to another pool environment."""


@dataclass(frozen=True)
class ClaimResult:
    instance_id: str
    conversation_id: str | None
    invite_url: str | None
    joined: bool
    gateway_url: str | None


class ProvisioningTracker:
    """Ids this process is currently provisioning.

    Only used to skip redundant probes; the `claiming` status in the store is
    authoritative, so losing this set on restart is harmless.
    """

    def __init__(self) -> None:
        self._ids: set[str] = set()

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    @contextmanager
    def track(self, instance_id: str) -> Iterator[None]:
        self._ids.add(instance_id)
        try:
            yield
        finally:
            self._ids.discard(instance_id)


def check_join_url(join_url: str | None, settings: Settings) -> None:
    """Reject join links aimed at the other environment's host."""
    if not join_url:
        return
    if settings.pool_environment == "production":
        if re.search(re.escape(settings.dev_join_host), join_url, re.IGNORECASE):
            raise InvalidJoinUrlError(
                f"{settings.dev_join_host} links cannot be used in the production environment",
            )
    elif re.search(re.escape(settings.production_join_host), join_url, re.IGNORECASE):
        raise InvalidJoinUrlError(
            f"{settings.production_join_host} links cannot be used in the "
            f"{settings.pool_environment} environment",
        )


class ClaimService:
    def __init__(
        self,
        settings: Settings,
        session_maker: SessionMaker,
        *,
        instance_client: InstanceClient,
        tracker: ProvisioningTracker,
        metrics: PoolMetrics,
    ) -> None:
        self._settings = settings
        self._session_maker = session_maker
        self._instance_client = instance_client
        self._tracker = tracker
        self._metrics = metrics

    async def claim(
        self,
        *,
        agent_name: str | None = None,
        instructions: str | None = None,
        join_url: str | None = None,
    ) -> ClaimResult | None:
        """Claim an idle instance, or return None when none is available.

        Raises `InvalidJoinUrlError` before touching the store and
        `ProvisionError` when the instance refuses or fails the binding.
        """
        check_join_url(join_url, self._settings)
        agent_name = agent_name or DEFAULT_AGENT_NAME
        instructions = instructions or DEFAULT_INSTRUCTIONS
        started = time.monotonic()

        async with self._session_maker() as session:
            instance = await pool_store.claim_idle(session)
        if instance is None:
            self._metrics.record_claim(ClaimOutcome.NO_IDLE, time.monotonic() - started)
            logger.info("pool.claim.no_idle")
            return None

        logger.info(
            "pool.claim.started",
            extra={"instance_id": instance.id, "agent_name": agent_name, "join": bool(join_url)},
        )
        with self._tracker.track(instance.id):
            try:
                if not instance.url:
                    raise ProvisionError("instance has no url")
                response = await self._instance_client.provision(
                    instance.url,
                    agent_name=agent_name,
                    instructions=instructions,
                    join_url=join_url,
                )
            except Exception as exc:
                await self._fail(instance.id, exc, started)
                raise

            binding = pool_store.ClaimBinding(
                agent_name=agent_name,
                instructions=instructions,
                conversation_id=response.conversation_id,
                invite_url=response.invite_url or join_url,
            )
            async with self._session_maker() as session:
                completed = await pool_store.complete_claim(session, instance.id, binding)
        if not completed:
            logger.warning("pool.claim.row_moved", extra={"instance_id": instance.id})

        self._metrics.record_claim(ClaimOutcome.CLAIMED, time.monotonic() - started)
        logger.info(
            "pool.claim.completed",
            extra={
                "instance_id": instance.id,
                "conversation_id": response.conversation_id,
                "joined": response.joined,
            },
        )
        return ClaimResult(
            instance_id=instance.id,
            conversation_id=response.conversation_id,
            invite_url=response.invite_url,
            joined=response.joined,
            gateway_url=instance.url,
        )

    async def _fail(self, instance_id: str, exc: BaseException, started: float) -> None:
        kind = classify_provision_error(exc)
        async with self._session_maker() as session:
            if kind is ClaimFailureKind.PERMANENT:
                await pool_store.mark_crashed(
                    session,
                    instance_id,
                    expected=[PoolStatus.CLAIMING],
                )
                outcome = ClaimOutcome.PERMANENT_FAILURE
                logger.error(
                    "pool.claim.crashed",
                    extra={"instance_id": instance_id, "error": str(exc)},
                )
            else:
                await pool_store.release_claim(session, instance_id)
                outcome = ClaimOutcome.TRANSIENT_FAILURE
                logger.warning(
                    "pool.claim.released",
                    extra={"instance_id": instance_id, "error": str(exc)},
                )
        self._metrics.record_claim(outcome, time.monotonic() - started)
