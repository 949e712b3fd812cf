"""Durable binding between a work item and its one-shot node."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from oneshot.node import EphemeralNode
    from oneshot.registry import NodeRegistry


@dataclass(frozen=True, slots=True)
class Assignment:
    """Pins a work item to exactly one node, by node name.

    The assignment doubles as the item's label: the scheduler will only match
    it against the node whose name equals ``node_name``. It is persisted as the
    bare node name inside the item's durable record.
    """

    node_name: str

    def __post_init__(self) -> None:
        if not self.node_name or not self.node_name.strip():
            raise ValueError("Assignment requires a non-empty node name.")

    def matches(self, node: EphemeralNode) -> bool:
        return self.node_name == node.name

    def assigned_node(self, registry: NodeRegistry) -> EphemeralNode | None:
        """Resolve the bound node, or ``None`` if it is gone or not one-shot."""

        from oneshot.node import EphemeralNode

        node = registry.get(self.node_name)
        if isinstance(node, EphemeralNode):
            return node
        return None

    def serialize(self) -> str:
        return self.node_name

    @classmethod
    def deserialize(cls, value: str | None) -> Assignment | None:
        if value is None or not value.strip():
            return None
        return cls(node_name=value.strip())
