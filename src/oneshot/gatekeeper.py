"""Queue-side orchestration of one-shot nodes.

The gatekeeper listens to the host scheduler's queue events. When an item
becomes buildable it asks the provisioners, in order, whether one of them
claims the item; the first claim gets a node prepared, the node name recorded
as the item's assignment, and the node registered. From then on the item can
only be dispatched to that node. At dispatch time it enforces the provisioners'
capacity answer, and when a bound item is cancelled it removes the node.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from oneshot.assignment import Assignment
from oneshot.logsink import LogFilter
from oneshot.models import WAITING_FOR_RESOURCES, CauseOfBlockage, ExecutionRecord, WorkItem
from oneshot.node import EphemeralNode
from oneshot.provisioner import Provisioner
from oneshot.registry import DeregistrationFailure, NodeRegistry, WorkerNode
from oneshot.surface import DeadSurface, ExecutionSurface

logger = logging.getLogger(__name__)


class SchedulerHost(Protocol):
    """The parts of the host scheduler the gatekeeper and strategy call back into."""

    def cancel(self, item: WorkItem) -> bool:
        """Remove ``item`` from the queue as cancelled."""

    def is_quieting_down(self) -> bool:
        """Whether the scheduler is shutting down and should not start new work."""


class AssignmentStore(Protocol):
    """Durable storage of the item -> node binding."""

    def save_assignment(self, item_id: str, node_name: str | None) -> None:
        """Persist (or clear, with ``None``) the node name bound to ``item_id``."""


class QueueGatekeeper:
    """Provisioning on enqueue, admission on dispatch, cleanup on cancellation."""

    def __init__(
        self,
        *,
        registry: NodeRegistry,
        provisioners: Sequence[Provisioner],
        host: SchedulerHost,
        store: AssignmentStore | None = None,
        log_filters: Sequence[LogFilter] = (),
    ) -> None:
        self.registry = registry
        self.provisioners = list(provisioners)
        self.host = host
        self.store = store
        self.log_filters = list(log_filters)

    def on_enter_buildable(self, item: WorkItem) -> EphemeralNode | None:
        """Provision a dedicated node for ``item`` if a provisioner claims it."""

        bound = self.exactly_bound_node(item)
        if bound is not None:
            # Rehydrated after a restart: the item already names a live node.
            logger.debug("Item %s is already bound to node %s", item.item_id, bound.name)
            return None

        for provisioner in self.provisioners:
            if provisioner.uses_one_shot_executor(item):
                return self._provision(provisioner, item)
        return None

    def exactly_bound_node(self, item: WorkItem) -> EphemeralNode | None:
        """Registered one-shot node whose name equals the item's whole assigned label."""

        assigned = item.assigned_label
        if assigned is None or not assigned.strip():
            return None
        node = self.registry.get(assigned.strip())
        if isinstance(node, EphemeralNode):
            return node
        return None

    def can_run(self, item: WorkItem) -> CauseOfBlockage | None:
        """Dispatch-time admission; evaluated every scheduling pass."""

        for provisioner in self.provisioners:
            if provisioner.uses_one_shot_executor(item) and not provisioner.can_run(item):
                return WAITING_FOR_RESOURCES
        return None

    def on_left(self, item: WorkItem, *, cancelled: bool) -> bool:
        """Remove the node bound to a cancelled item; ``True`` if one was removed."""

        if not cancelled:
            return False
        assignment = item.assignment
        if assignment is None:
            return False
        node = assignment.assigned_node(self.registry)
        self._clear_assignment(item)
        if node is None:
            return False
        try:
            return self.registry.remove(node)
        except DeregistrationFailure:
            logger.exception("Failure to remove one-shot node %s", node.name)
            return True

    def on_record_initialized(self, record: ExecutionRecord, node: WorkerNode) -> None:
        """Forward the record-created event to the one-shot node executing it."""

        if isinstance(node, EphemeralNode):
            node.on_record_initialized(record, self.log_filters)

    def rehydrate(
        self,
        item: WorkItem,
        record: ExecutionRecord,
    ) -> ExecutionSurface | DeadSurface | None:
        """Re-attach a resumed execution to the node named by the item's assignment.

        Binding the record triggers the launch (if it has not happened yet) with
        output going to the record's log, so a failure to reconnect is reported
        there. Returns ``None`` when the node no longer exists.
        """

        if item.assignment is None:
            return None
        node = item.assignment.assigned_node(self.registry)
        if node is None:
            logger.info(
                "Node %s for item %s is gone; cannot rehydrate",
                item.assignment.node_name,
                item.item_id,
            )
            return None
        node.on_record_initialized(record, self.log_filters)
        return node.surface

    def _provision(self, provisioner: Provisioner, item: WorkItem) -> EphemeralNode | None:
        try:
            node = provisioner.prepare_executor_for(item)
            item.assignment = Assignment(node.name)
            if self.store is not None:
                self.store.save_assignment(item.item_id, node.name)
            node.mark_assigned()
            self.registry.add(node)
        except Exception:  # noqa: BLE001
            logger.exception("Failure to create one-shot node for item %s", item.item_id)
            self._clear_assignment(item)
            self.host.cancel(item)
            return None
        logger.info("Assigned node %s to item %s (%s)", node.name, item.item_id, item.name)
        return node

    def _clear_assignment(self, item: WorkItem) -> None:
        item.assignment = None
        if self.store is None:
            return
        try:
            self.store.save_assignment(item.item_id, None)
        except Exception:  # noqa: BLE001
            logger.exception("Failure to clear assignment of item %s", item.item_id)
