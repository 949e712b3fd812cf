"""Capacity reconciliation against elastic backends.

Each scheduling pass compares the capacity that exists or is on its way
(idle + connecting executors + planned nodes) with the queue length for a
label, and asks elastic backends to plan the missing nodes right away. There is
no load averaging: every one-shot item needs its own fresh node, so capacity
cannot be amortized across items.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from oneshot.gatekeeper import SchedulerHost

logger = logging.getLogger(__name__)


class StrategyDecision(str, Enum):
    """Outcome of a capacity pass for one label."""

    PROVISIONING_COMPLETE = "provisioning_complete"
    CONSULT_REMAINING = "consult_remaining"


@dataclass(slots=True)
class PlannedNode:
    """A backend's promise of a future worker."""

    display_name: str
    future: Future[Any]
    executors: int = 1


@dataclass(slots=True)
class CapacityState:
    """Capacity snapshot for one label, recomputed every pass."""

    label: str | None
    idle_executors: int = 0
    connecting_executors: int = 0
    planned_capacity: int = 0
    queue_length: int = 0
    pending: list[PlannedNode] = field(default_factory=list)

    @property
    def additional_planned_capacity(self) -> int:
        """Executors planned during the current pass."""

        return sum(node.executors for node in self.pending)

    @property
    def available_capacity(self) -> int:
        return (
            self.idle_executors
            + self.connecting_executors
            + self.planned_capacity
            + self.additional_planned_capacity
        )

    def record_pending_launches(self, planned: Sequence[PlannedNode]) -> None:
        self.pending.extend(planned)


class ElasticBackend(Protocol):
    """Backend that can create workers on demand."""

    name: str

    def can_provision(self, label: str | None) -> bool:
        """Whether this backend can create workers for ``label``."""

    def provision(self, label: str | None, excess_workload: int) -> list[PlannedNode]:
        """Plan up to ``excess_workload`` new workers for ``label``."""


class CapacityStrategy:
    """Plans new nodes as soon as queue demand exceeds available capacity."""

    def __init__(
        self,
        *,
        backends: Sequence[ElasticBackend] | Callable[[], Sequence[ElasticBackend]],
        host: SchedulerHost,
        enabled: bool = True,
    ) -> None:
        self._backends = backends
        self.host = host
        self.enabled = enabled

    def backends(self) -> list[ElasticBackend]:
        if callable(self._backends):
            return list(self._backends())
        return list(self._backends)

    def apply(self, state: CapacityState) -> StrategyDecision:
        """Run one pass for ``state.label`` across all elastic backends."""

        if not self.enabled or self.host.is_quieting_down():
            return StrategyDecision.CONSULT_REMAINING

        decision = StrategyDecision.CONSULT_REMAINING
        for backend in self.backends():
            decision = self.apply_for_backend(state, backend)
            if decision is StrategyDecision.PROVISIONING_COMPLETE:
                break
        return decision

    def apply_for_backend(
        self,
        state: CapacityState,
        backend: ElasticBackend,
    ) -> StrategyDecision:
        if not backend.can_provision(state.label):
            return StrategyDecision.CONSULT_REMAINING

        available = state.available_capacity
        demand = state.queue_length
        logger.debug("Available capacity=%d, current demand=%d", available, demand)

        if available < demand:
            planned = backend.provision(state.label, demand - available)
            logger.debug("Planned %d new nodes on %s", len(planned), backend.name)
            state.record_pending_launches(planned)
            available = state.available_capacity
            logger.debug(
                "After provisioning, available capacity=%d, current demand=%d",
                available,
                demand,
            )

        if available >= demand:
            logger.debug("Provisioning completed")
            return StrategyDecision.PROVISIONING_COMPLETE
        logger.debug("Provisioning not complete, consulting remaining strategies")
        return StrategyDecision.CONSULT_REMAINING
