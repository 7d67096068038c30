"""Prometheus instruments for claims, ticks and pool occupancy."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from agent_pool.models.pool_status import PoolStatus

if TYPE_CHECKING:
    from collections.abc import Mapping

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    NO_IDLE = "no_idle"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class PoolMetrics:
    """One registry per app so tests can build isolated instances."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry(auto_describe=True)
        self.claim_duration = Histogram(
            "pool_claim_duration_seconds",
            "Time spent serving one claim request",
            ["outcome"],
            registry=self.registry,
        )
        self.claims_total = Counter(
            "pool_claims_total",
            "Claim attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.tick_duration = Histogram(
            "pool_tick_duration_seconds",
            "Reconciliation tick duration",
            registry=self.registry,
            buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120),
        )
        self.ticks_total = Counter(
            "pool_ticks_total",
            "Reconciliation ticks by result",
            ["result"],
            registry=self.registry,
        )
        self.instances = Gauge(
            "pool_instances",
            "Instances per pool status after the last tick",
            ["status"],
            registry=self.registry,
        )
        self.instances_created_total = Counter(
            "pool_instances_created_total",
            "Instance creations by result",
            ["result"],
            registry=self.registry,
        )
        self.instances_destroyed_total = Counter(
            "pool_instances_destroyed_total",
            "Instance teardowns by reason",
            ["reason"],
            registry=self.registry,
        )

    def record_claim(self, outcome: ClaimOutcome, duration_seconds: float) -> None:
        self.claims_total.labels(outcome=outcome.value).inc()
        self.claim_duration.labels(outcome=outcome.value).observe(duration_seconds)

    def record_tick(self, result: str, duration_seconds: float) -> None:
        self.ticks_total.labels(result=result).inc()
        self.tick_duration.observe(duration_seconds)

    def set_counts(self, counts: Mapping[str, int]) -> None:
        for status in PoolStatus:
            self.instances.labels(status=status.value).set(counts.get(status.value, 0))

    def render(self) -> bytes:
        return generate_latest(self.registry)
