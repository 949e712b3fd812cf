"""Provisioner contract: which items need a one-shot node, and how to build one."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from oneshot.launchers.command import CommandLauncher
from oneshot.models import WorkItem
from oneshot.node import EphemeralNode
from oneshot.registry import NodeRegistry

logger = logging.getLogger(__name__)

ONESHOT_METADATA_FLAG = "oneshot"


class ProvisioningError(RuntimeError):
    """A provisioner could not prepare a node for an item; fatal for that item."""


class Provisioner(ABC):
    """Pluggable policy creating ``EphemeralNode`` instances.

    Implementations must keep ``prepare_executor_for`` cheap: the node is only
    *prepared* so its name can be used as the item's label. The actual bootstrap
    is postponed until the item's execution record exists.
    """

    @abstractmethod
    def uses_one_shot_executor(self, item: WorkItem) -> bool:
        """Whether this provisioner handles ``item``."""

    @abstractmethod
    def can_run(self, item: WorkItem) -> bool:
        """Whether the infrastructure has room for another node right now.

        Static infrastructures use this to cap concurrent nodes; elastic ones to
        wait for new resources.
        """

    @abstractmethod
    def prepare_executor_for(self, item: WorkItem) -> EphemeralNode:
        """Build (not launch) a node bound to ``item``; raise ``ProvisioningError``."""

    @staticmethod
    def count_executors(
        registry: NodeRegistry,
        *exclude: Callable[[EphemeralNode], bool],
        node_type: type[EphemeralNode] = EphemeralNode,
    ) -> int:
        """Count registered nodes of ``node_type`` not matched by any ``exclude`` filter.

        Supports a simple *max number of instances* implementation of ``can_run``.
        """

        return registry.count(
            lambda node: isinstance(node, node_type)
            and not any(predicate(node) for predicate in exclude),
        )


class CommandProvisioner(Provisioner):
    """Provisions nodes bootstrapped by a ``CommandLauncher``.

    Claims items whose label contains ``label`` as an atom, or items flagged
    with ``metadata["oneshot"] = True``. ``instance_cap`` of 0 means unlimited.
    """

    def __init__(
        self,
        *,
        label: str,
        launcher: CommandLauncher,
        registry: NodeRegistry,
        instance_cap: int = 0,
        charset: str = "utf-8",
        description: str = "",
    ) -> None:
        self.label = label
        self.launcher = launcher
        self.registry = registry
        self.instance_cap = instance_cap
        self.charset = charset
        self.description = description

    def uses_one_shot_executor(self, item: WorkItem) -> bool:
        if item.metadata.get(ONESHOT_METADATA_FLAG) is True:
            return True
        return self.label in item.label_atoms()

    def can_run(self, item: WorkItem) -> bool:
        if self.instance_cap <= 0:
            return True
        # Nodes whose item is not dispatched yet are registered but not active.
        active = self.count_executors(self.registry, lambda node: not node.is_active())
        return active < self.instance_cap

    def prepare_executor_for(self, item: WorkItem) -> EphemeralNode:
        try:
            self.launcher.validate()
        except ValueError as error:
            raise ProvisioningError(f"Invalid launcher configuration: {error}") from error
        try:
            node = EphemeralNode(
                item=item,
                launcher=self.launcher,
                description=self.description or f"one-shot executor ({self.label})",
                charset=self.charset,
            )
        except LookupError as error:
            raise ProvisioningError(f"Unknown charset: {self.charset}") from error
        logger.debug("Prepared node %s for item %s", node.name, item.item_id)
        return node
