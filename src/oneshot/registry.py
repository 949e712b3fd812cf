"""Injectable worker registry shared by the gatekeeper, nodes and the host."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Protocol

logger = logging.getLogger(__name__)


class DeregistrationFailure(RuntimeError):
    """A node was removed but cleanup around the removal failed."""


class WorkerNode(Protocol):
    """Capability interface every registered worker implements."""

    name: str

    def on_registered(self, registry: NodeRegistry) -> None:
        """Called once the node is visible in ``registry``."""

    def on_deregistered(self) -> None:
        """Called once the node has been removed from the registry."""


class RegistryListener(Protocol):
    def node_added(self, node: WorkerNode) -> None: ...

    def node_removed(self, node: WorkerNode) -> None: ...


class NodeRegistry:
    """Add/remove/lookup-by-name registry of workers.

    The registry also owns the executor used for asynchronous teardown, so that
    completion callbacks never tear a node down on the notifying thread.
    """

    def __init__(
        self,
        *,
        teardown_executor: Executor | None = None,
        teardown_workers: int = 2,
    ) -> None:
        self._nodes: dict[str, WorkerNode] = {}
        self._lock = threading.Lock()
        self._listeners: list[RegistryListener] = []
        self._owns_executor = teardown_executor is None
        self.teardown_executor: Executor = teardown_executor or ThreadPoolExecutor(
            max_workers=max(1, teardown_workers),
            thread_name_prefix="oneshot-teardown",
        )

    def add_listener(self, listener: RegistryListener) -> None:
        self._listeners.append(listener)

    def add(self, node: WorkerNode) -> None:
        """Register ``node``; names are unique."""

        with self._lock:
            if node.name in self._nodes:
                raise ValueError(f"Node already registered: {node.name}")
            self._nodes[node.name] = node
        try:
            node.on_registered(self)
        except Exception:
            with self._lock:
                if self._nodes.get(node.name) is node:
                    del self._nodes[node.name]
            raise
        logger.info("Registered node %s", node.name)
        for listener in list(self._listeners):
            try:
                listener.node_added(node)
            except Exception:  # noqa: BLE001
                logger.exception("Registry listener %r failed on add of %s", listener, node.name)

    def remove(self, node: WorkerNode) -> bool:
        """Remove ``node`` if it is still registered.

        Returns ``False`` when the node was already gone. Raises
        ``DeregistrationFailure`` if the node was removed but a removal hook failed.
        """

        with self._lock:
            if self._nodes.get(node.name) is not node:
                return False
            del self._nodes[node.name]
        logger.info("Deregistered node %s", node.name)

        errors: list[Exception] = []
        try:
            node.on_deregistered()
        except Exception as error:  # noqa: BLE001
            errors.append(error)
        for listener in list(self._listeners):
            try:
                listener.node_removed(node)
            except Exception as error:  # noqa: BLE001
                errors.append(error)
        if errors:
            raise DeregistrationFailure(
                f"Cleanup failed after removing node {node.name}: {errors[0]}",
            ) from errors[0]
        return True

    def get(self, name: str) -> WorkerNode | None:
        with self._lock:
            return self._nodes.get(name)

    def nodes(self) -> list[WorkerNode]:
        with self._lock:
            return list(self._nodes.values())

    def count(self, predicate: Callable[[WorkerNode], bool] | None = None) -> int:
        nodes = self.nodes()
        if predicate is None:
            return len(nodes)
        return sum(1 for node in nodes if predicate(node))

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._nodes

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def close(self, *, wait: bool = True) -> None:
        """Shut down the teardown executor if the registry created it."""

        if self._owns_executor and isinstance(self.teardown_executor, ThreadPoolExecutor):
            self.teardown_executor.shutdown(wait=wait)
