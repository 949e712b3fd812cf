"""Domain models shared by nodes, gatekeeper and the local host."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from oneshot.assignment import Assignment

_LABEL_SEPARATOR = re.compile(r"\s*&&\s*|\s+")


class NodeState(str, Enum):
    """Lifecycle states of an ephemeral node."""

    CREATED = "created"
    ASSIGNED = "assigned"
    LAUNCHING = "launching"
    RUNNING = "running"
    DEAD = "dead"
    TERMINATED = "terminated"


class RunResult(str, Enum):
    """Terminal outcome of an execution record."""

    SUCCESS = "success"
    FAILURE = "failure"
    NOT_BUILT = "not_built"
    ABORTED = "aborted"


class ItemStatus(str, Enum):
    """Durable work item states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELED = "canceled"


@dataclass(frozen=True, slots=True)
class CauseOfBlockage:
    """Reason an item cannot be dispatched right now."""

    code: str
    short_description: str


DEDICATED = CauseOfBlockage(
    code="dedicated",
    short_description="Node is dedicated to another task",
)
WAITING_FOR_RESOURCES = CauseOfBlockage(
    code="waiting_for_resources",
    short_description="Waiting for available resources",
)
NO_NODE_AVAILABLE = CauseOfBlockage(
    code="no_node_available",
    short_description="Waiting for next available executor",
)


@dataclass(slots=True)
class WorkItem:
    """Queued unit of work as seen by the scheduler."""

    item_id: str
    name: str
    label: str | None = None
    command: tuple[str, ...] = ()
    assignment: Assignment | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def assigned_label(self) -> str | None:
        """Affinity the scheduler uses; an assignment pins it to one node name."""

        if self.assignment is not None:
            return self.assignment.node_name
        return self.label

    def label_atoms(self) -> tuple[str, ...]:
        """Atoms of the submitted label; provisioners claim items by these."""

        return split_label(self.label)


@dataclass(slots=True, eq=False)
class ExecutionRecord:
    """Execution record created by the host once an item is dispatched."""

    item_id: str
    display_name: str
    log_path: Path
    result: RunResult | None = None
    will_continue: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def set_result(self, result: RunResult) -> None:
        with self._lock:
            self.result = result

    def get_result(self) -> RunResult | None:
        with self._lock:
            return self.result

    def read_log(self) -> str:
        if not self.log_path.exists():
            return ""
        return self.log_path.read_text("utf-8", errors="replace")


def split_label(label: str | None) -> tuple[str, ...]:
    """Split a label expression into its atoms, ignoring empty parts."""

    if label is None:
        return ()
    return tuple(atom for atom in _LABEL_SEPARATOR.split(label.strip()) if atom)


@dataclass(slots=True)
class WorkItemCreate:
    """Input payload for enqueuing a work item."""

    name: str
    command: tuple[str, ...]
    item_id: str | None = None
    label: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkItemView:
    """Readable durable record of a work item."""

    item_id: str
    name: str
    label: str | None
    command: tuple[str, ...]
    metadata: dict[str, Any]
    status: ItemStatus
    assignment: str | None
    result: RunResult | None
    log_path: str | None
    error_summary: str | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def to_work_item(self) -> WorkItem:
        """Domain item for the scheduler, with the persisted assignment restored."""

        from oneshot.assignment import Assignment

        return WorkItem(
            item_id=self.item_id,
            name=self.name,
            label=self.label,
            command=self.command,
            assignment=Assignment.deserialize(self.assignment),
            metadata=dict(self.metadata),
        )


@dataclass(slots=True)
class WorkItemEventView:
    """Work item event entry for audit trail."""

    event_id: int
    item_id: str
    event_type: str
    status_from: ItemStatus | None
    status_to: ItemStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkItemDetails:
    """Work item with its event stream."""

    item: WorkItemView
    events: list[WorkItemEventView]
