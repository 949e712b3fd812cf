"""Ephemeral node: a worker created for, and bound to, exactly one work item.

Lifecycle::

    CREATED -> ASSIGNED -> LAUNCHING -> RUNNING -> TERMINATED
                  |            |
                  |            +-----> DEAD ----> TERMINATED
                  +------------------------------> TERMINATED  (cancelled)

The node is registered (and looks online) while still ASSIGNED. The launch is
postponed until the first of two signals arrives:

* the bound item's execution record is initialized (``on_record_initialized``);
* something asks for the node's command channel (``command_channel``), which
  covers execution engines that never emit the record-initialized event.

Whichever comes first wins a check-and-set done under a per-node lock; the
loser is a no-op. The launcher runs outside that lock and writes into the
winning signal's log, which is the item's own log.
"""

from __future__ import annotations

import codecs
import logging
import threading
import time
from collections.abc import Sequence

from oneshot.launchers.base import Channel, Launcher, TerminatingLauncher
from oneshot.logsink import NULL_LOG, LogFilter, TaskLog, open_record_log
from oneshot.models import (
    DEDICATED,
    CauseOfBlockage,
    ExecutionRecord,
    NodeState,
    RunResult,
    WorkItem,
)
from oneshot.registry import NodeRegistry
from oneshot.surface import DeadSurface, ExecutionSurface

logger = logging.getLogger(__name__)

_NAME_LOCK = threading.Lock()
_last_name_value = 0


class LaunchFailure(RuntimeError):
    """The worker could not be bootstrapped or never connected."""


def next_node_name() -> str:
    """Unique hex node name derived from a monotonic nanosecond clock."""

    global _last_name_value  # noqa: PLW0603
    with _NAME_LOCK:
        value = max(time.monotonic_ns(), _last_name_value + 1)
        _last_name_value = value
    return f"{value:x}"


class EphemeralNode:
    """Single-use worker bound to one queue item."""

    def __init__(
        self,
        *,
        item: WorkItem,
        launcher: Launcher,
        description: str = "",
        charset: str = "utf-8",
        name: str | None = None,
    ) -> None:
        self.name = name or next_node_name()
        self._queue_item_id = item.item_id
        self.task_name = item.name
        self.description = description
        self.charset = codecs.lookup(charset).name
        self.launcher = launcher

        self._lock = threading.Lock()
        self._launch_done = threading.Event()
        self._state = NodeState.CREATED
        self._executable: ExecutionRecord | None = None
        self._dispatched = False
        self._dead = False
        self._launch_error: BaseException | None = None
        self._registry: NodeRegistry | None = None
        self._surface: ExecutionSurface | None = None
        self._dead_surface: DeadSurface | None = None
        self._log: TaskLog = NULL_LOG
        self._owns_log = False
        self._termination_fired = False

    def __repr__(self) -> str:
        return (
            f"EphemeralNode(name={self.name!r}, item={self._queue_item_id!r}, "
            f"state={self.state.value})"
        )

    @property
    def queue_item_id(self) -> str:
        return self._queue_item_id

    @property
    def state(self) -> NodeState:
        with self._lock:
            return self._state

    @property
    def executable(self) -> ExecutionRecord | None:
        with self._lock:
            return self._executable

    def has_executable(self) -> bool:
        return self.executable is not None

    def is_active(self) -> bool:
        """Dispatched to its item, or already bound to an execution record."""

        with self._lock:
            return self._dispatched or self._executable is not None

    @property
    def is_dead(self) -> bool:
        with self._lock:
            return self._dead

    @property
    def launch_error(self) -> BaseException | None:
        with self._lock:
            return self._launch_error

    @property
    def display_name(self) -> str:
        return f"Executor for {self.task_name}"

    def describe(self) -> str:
        executable = self.executable
        if executable is not None:
            return f"executor for {executable.display_name}"
        return self.description

    @property
    def surface(self) -> ExecutionSurface | DeadSurface | None:
        """Surface visible to the outside; a dead node only ever exposes the offline stand-in."""

        with self._lock:
            if self._dead_surface is not None:
                return self._dead_surface
            return self._surface

    # --- Registration

    def mark_assigned(self) -> None:
        with self._lock:
            if self._state is not NodeState.CREATED:
                raise RuntimeError(
                    f"Node {self.name} cannot be assigned from state {self._state.value}.",
                )
            self._state = NodeState.ASSIGNED

    def mark_dispatched(self) -> None:
        """The bound item was handed to an executor thread; the node counts as active."""

        with self._lock:
            self._dispatched = True

    def on_registered(self, registry: NodeRegistry) -> None:
        with self._lock:
            if self._surface is not None:
                raise RuntimeError(f"Node {self.name} is already registered.")
            self._registry = registry
            self._surface = ExecutionSurface(self, registry=registry)

    def on_deregistered(self) -> None:
        with self._lock:
            previous = self._state
            self._state = NodeState.TERMINATED
            surface = self._surface
        logger.debug("Node %s terminated from state %s", self.name, previous.value)
        if surface is not None:
            surface.release()

    # --- Exclusivity

    def can_take(self, item: WorkItem) -> CauseOfBlockage | None:
        """Admit only the bound item, or an item whose assigned label is exactly this node."""

        if item.item_id == self._queue_item_id:
            return None
        assigned = item.assigned_label
        if assigned is not None and assigned.strip() == self.name:
            return None
        return DEDICATED

    # --- Launch signals

    def on_record_initialized(
        self,
        record: ExecutionRecord,
        log_filters: Sequence[LogFilter] = (),
    ) -> bool:
        """Launch signal fired when the bound item's execution record is created."""

        if self.has_executable():
            return False
        log = open_record_log(record, log_filters, charset=self.charset)
        won = False
        try:
            won = self.set_executable(record, log, owns_log=True)
        finally:
            if not won:
                log.close()
        return won

    def command_channel(self, record: ExecutionRecord, log: TaskLog) -> Channel:
        """Launch signal fired when an engine first asks for the command channel.

        Blocks until the launch started by whichever signal won has finished.
        """

        self.set_executable(record, log)
        if not self.has_executable():
            raise LaunchFailure(
                f"Node {self.name} cannot be launched in state {self.state.value}.",
            )
        self._launch_done.wait()
        with self._lock:
            dead = self._dead
            error = self._launch_error
            surface = self._surface
        if dead:
            raise LaunchFailure(f"Node {self.name} failed to provision.") from error
        channel = surface.channel if surface is not None else None
        if channel is None:
            raise LaunchFailure(f"Node {self.name} is not connected.")
        return channel

    def set_executable(
        self,
        record: ExecutionRecord,
        log: TaskLog,
        *,
        owns_log: bool = False,
    ) -> bool:
        """Bind the execution record and launch; only the first caller wins."""

        with self._lock:
            if self._executable is not None:
                return False
            if self._state is not NodeState.ASSIGNED or self._surface is None:
                logger.warning(
                    "Ignoring launch of node %s in state %s",
                    self.name,
                    self._state.value,
                )
                return False
            self._executable = record
            self._state = NodeState.LAUNCHING
            self._log = log
            self._owns_log = owns_log
            surface = self._surface

        self.task_name = record.display_name
        self._do_actual_launch(record, surface, log)
        return True

    def before_launch(self, record: ExecutionRecord, log: TaskLog) -> None:
        """Hook to customize the launch for the assigned record."""

        log.println(f"Launching a dedicated agent for {record.display_name}")

    def _do_actual_launch(
        self,
        record: ExecutionRecord,
        surface: ExecutionSurface,
        log: TaskLog,
    ) -> None:
        try:
            self.before_launch(record, log)
            self.launcher.launch(surface, log)
            if surface.is_actually_offline():
                raise LaunchFailure(f"Agent {self.name} did not connect after launch.")
        except Exception as error:  # noqa: BLE001
            log.println("Failed to provision agent")
            log.print_exception(error)
            logger.warning(
                "Launch of node %s for %s failed: %s",
                self.name,
                record.display_name,
                error,
            )
            record.set_result(RunResult.NOT_BUILT)
            with self._lock:
                self._dead = True
                self._launch_error = error
                self._dead_surface = DeadSurface(surface)
                if self._state is NodeState.LAUNCHING:
                    self._state = NodeState.DEAD
        else:
            with self._lock:
                if self._state is NodeState.LAUNCHING:
                    self._state = NodeState.RUNNING
            logger.info("Node %s is online for %s", self.name, record.display_name)
        finally:
            self._launch_done.set()

    # --- Termination

    def run_termination_hook(self) -> None:
        """Fire ``terminate`` once, then close the log the node owns."""

        with self._lock:
            if self._termination_fired:
                return
            self._termination_fired = True
            log = self._log
            owns_log = self._owns_log
        try:
            self.terminate(log)
        except Exception:  # noqa: BLE001
            logger.exception("Termination hook failed for node %s", self.name)
        finally:
            if owns_log:
                log.close()

    def terminate(self, log: TaskLog) -> None:
        """Hook to dispose of the worker; by default delegates to the launcher."""

        if isinstance(self.launcher, TerminatingLauncher):
            self.launcher.terminate(self, log)
