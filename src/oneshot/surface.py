"""Execution surface: the session facade the scheduler sees for a one-shot node."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import TYPE_CHECKING

from oneshot.launchers.base import Channel, LaunchError
from oneshot.models import ExecutionRecord
from oneshot.registry import DeregistrationFailure, NodeRegistry

if TYPE_CHECKING:
    from oneshot.node import EphemeralNode

logger = logging.getLogger(__name__)


class ExecutionSurface:
    """Connection facade owned by exactly one ephemeral node.

    The surface claims to be online from the moment it exists, so the scheduler
    hands the bound item to the node and an execution record gets created. The
    real connectivity is only visible through ``is_actually_offline``, which the
    node consults once its launch returns.
    """

    def __init__(self, node: EphemeralNode, *, registry: NodeRegistry) -> None:
        self.node = node
        self._registry = registry
        self._lock = threading.Lock()
        self._channel: Channel | None = None
        self._accepting = True
        self._completed = False
        self._released = False
        self._teardown_future: Future[None] | None = None

    @property
    def node_name(self) -> str:
        return self.node.name

    def is_offline(self) -> bool:
        return False

    def is_online(self) -> bool:
        return not self.is_offline()

    def is_actually_offline(self) -> bool:
        with self._lock:
            return self._channel is None

    @property
    def channel(self) -> Channel | None:
        with self._lock:
            return self._channel

    def connect(self, channel: Channel) -> None:
        with self._lock:
            if self._released:
                released = True
            else:
                released = False
                self._channel = channel
        if released:
            channel.close()
            raise LaunchError(f"Node {self.node_name} was released before it connected.")

    def disconnect(self) -> None:
        with self._lock:
            channel = self._channel
            self._channel = None
        if channel is not None:
            channel.close()

    def is_accepting_tasks(self) -> bool:
        with self._lock:
            return self._accepting

    def task_completed(self, record: ExecutionRecord | None = None) -> Future[None] | None:
        return self._done(record, problems=None)

    def task_completed_with_problems(
        self,
        record: ExecutionRecord | None,
        problems: BaseException | None,
    ) -> Future[None] | None:
        return self._done(record, problems=problems)

    def release(self) -> None:
        """Stop accepting work and drop the connection; called on deregistration."""

        with self._lock:
            self._released = True
            self._accepting = False
        self.disconnect()

    def _done(
        self,
        record: ExecutionRecord | None,
        problems: BaseException | None,
    ) -> Future[None] | None:
        if record is not None and record.will_continue:
            # Host is restarting; the execution resumes on this node afterwards.
            logger.info(
                "Keeping node %s: execution %s will continue",
                self.node_name,
                record.display_name,
            )
            return None

        with self._lock:
            if self._completed:
                return self._teardown_future
            self._completed = True
            self._accepting = False

        if problems is not None:
            logger.info("Node %s finished its task with problems: %s", self.node_name, problems)
        future = self._registry.teardown_executor.submit(self._teardown)
        with self._lock:
            self._teardown_future = future
        return future

    def _teardown(self) -> None:
        try:
            self._registry.remove(self.node)
        except DeregistrationFailure:
            logger.exception("Failure to remove one-shot node %s", self.node_name)
        self.node.run_termination_hook()


class DeadSurface:
    """Permanently offline stand-in returned for a node whose launch failed.

    Completion notifications still reach the real surface so the node is torn
    down exactly once.
    """

    def __init__(self, surface: ExecutionSurface) -> None:
        self._surface = surface
        self.node = surface.node

    @property
    def node_name(self) -> str:
        return self.node.name

    def is_offline(self) -> bool:
        return True

    def is_online(self) -> bool:
        return False

    def is_actually_offline(self) -> bool:
        return True

    @property
    def channel(self) -> Channel | None:
        return None

    def connect(self, channel: Channel) -> None:
        channel.close()
        raise LaunchError(f"Node {self.node_name} is dead and cannot be connected.")

    def disconnect(self) -> None:
        return

    def is_accepting_tasks(self) -> bool:
        return False

    def task_completed(self, record: ExecutionRecord | None = None) -> Future[None] | None:
        return self._surface.task_completed(record)

    def task_completed_with_problems(
        self,
        record: ExecutionRecord | None,
        problems: BaseException | None,
    ) -> Future[None] | None:
        return self._surface.task_completed_with_problems(record, problems)

    def release(self) -> None:
        self._surface.release()
