"""In-process host scheduler driving the gatekeeper and capacity strategy.

``LocalScheduler`` owns the queue of buildable items. Every pass it reconciles
capacity per label, asks the gatekeeper for admission, hands each admitted item
to the one registered node that accepts it, and runs the item's command on an
executor pool. The execution record is created at dispatch time, which is the
first of the two signals that launch a one-shot node.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from oneshot.gatekeeper import QueueGatekeeper
from oneshot.logsink import LogFilter, open_record_log
from oneshot.models import (
    NO_NODE_AVAILABLE,
    CauseOfBlockage,
    ExecutionRecord,
    ItemStatus,
    NodeState,
    RunResult,
    WorkItem,
)
from oneshot.node import EphemeralNode, LaunchFailure
from oneshot.provisioner import Provisioner
from oneshot.registry import NodeRegistry
from oneshot.strategy import CapacityState, CapacityStrategy, ElasticBackend, PlannedNode

if TYPE_CHECKING:
    from oneshot.repository import WorkItemRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerPassSummary:
    """Aggregate scheduler counters for CLI reporting."""

    dispatched: int = 0
    blocked: int = 0
    pending: int = 0
    planned: int = 0
    completed: int = 0
    blockages: dict[str, CauseOfBlockage] = field(default_factory=dict)


class LocalScheduler:
    """Single-process host implementing the scheduler side of one-shot nodes."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: NodeRegistry,
        provisioners: Sequence[Provisioner],
        log_dir: Path,
        repository: WorkItemRepository | None = None,
        backends: Sequence[ElasticBackend] = (),
        strategy_enabled: bool = True,
        log_filters: Sequence[LogFilter] = (),
        executor_threads: int = 4,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.registry = registry
        self.log_dir = log_dir
        self.repository = repository
        self.poll_interval_seconds = poll_interval_seconds
        self.gatekeeper = QueueGatekeeper(
            registry=registry,
            provisioners=provisioners,
            host=self,
            store=repository,
            log_filters=log_filters,
        )
        self.strategy = CapacityStrategy(
            backends=list(backends),
            host=self,
            enabled=strategy_enabled,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, executor_threads),
            thread_name_prefix="oneshot-exec",
        )
        self._lock = threading.RLock()
        self._pending: dict[str, WorkItem] = {}
        self._running: dict[str, Future[RunResult]] = {}
        self._busy_nodes: set[str] = set()
        self._teardowns: list[Future[None]] = []
        self._planned: dict[str | None, list[PlannedNode]] = {}
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._recovered = False

    # --- Host contract

    def cancel(self, item: WorkItem) -> bool:
        """Drop a pending item as cancelled and release the node bound to it."""

        with self._lock:
            removed = self._pending.pop(item.item_id, None) is not None
        self.gatekeeper.on_left(item, cancelled=True)
        if self.repository is not None:
            try:
                self.repository.cancel_item(item.item_id, reason="canceled by scheduler")
            except RuntimeError as error:
                logger.debug("Item %s not canceled in storage: %s", item.item_id, error)
        if removed:
            logger.info("Canceled item %s (%s)", item.item_id, item.name)
        return removed

    def is_quieting_down(self) -> bool:
        return self._stop_requested

    # --- Queue

    def schedule(self, item: WorkItem) -> EphemeralNode | None:
        """Put ``item`` in the queue and let the gatekeeper provision its node."""

        with self._lock:
            if item.item_id in self._pending or item.item_id in self._running:
                return None
            self._pending[item.item_id] = item
        return self.gatekeeper.on_enter_buildable(item)

    def pending_items(self) -> list[WorkItem]:
        with self._lock:
            return list(self._pending.values())

    def capacity_state(self, label: str | None) -> CapacityState:
        """Capacity snapshot for items submitted with ``label``."""

        pending = [item for item in self.pending_items() if item.label == label]
        state = CapacityState(label=label, queue_length=len(pending))
        bound = {item.assignment.node_name for item in pending if item.assignment is not None}
        for node in self.registry.nodes():
            if not isinstance(node, EphemeralNode) or node.name not in bound:
                continue
            if node.state is NodeState.ASSIGNED:
                state.idle_executors += 1
            elif node.state is NodeState.LAUNCHING:
                state.connecting_executors += 1
        state.planned_capacity = sum(node.executors for node in self._planned.get(label, []))
        return state

    # --- Passes

    def run_once(self) -> SchedulerPassSummary:
        """One scheduling pass: capacity, admission, dispatch."""

        summary = SchedulerPassSummary()
        if self.repository is not None:
            if not self._recovered:
                self._recovered = True
                self._recover_interrupted(self.repository)
            self._sync_from_repository(self.repository)
        self._collect_planned()
        self._reap_finished(summary)
        if self._stop_requested:
            summary.pending = len(self.pending_items())
            return summary

        for label in sorted({item.label for item in self.pending_items()}, key=str):
            state = self.capacity_state(label)
            self.strategy.apply(state)
            if state.pending:
                self._planned.setdefault(label, []).extend(state.pending)
                summary.planned += len(state.pending)

        for item in self.pending_items():
            blockage = self.gatekeeper.can_run(item)
            node: EphemeralNode | None = None
            if blockage is None:
                node = self._find_node(item)
                if node is None:
                    blockage = NO_NODE_AVAILABLE
            if blockage is not None or node is None:
                summary.blocked += 1
                summary.blockages[item.item_id] = blockage or NO_NODE_AVAILABLE
                continue
            self._dispatch(item, node)
            summary.dispatched += 1

        summary.pending = len(self.pending_items())
        return summary

    def run_loop(
        self,
        *,
        max_passes: int | None = None,
        max_idle_passes: int | None = 1,
    ) -> SchedulerPassSummary:
        """Run scheduling passes until the queue is idle, or a stop signal arrives.

        Args:
            max_passes: Stop after this many passes (None = unlimited).
            max_idle_passes: How many consecutive passes without dispatches,
                completions or running items before exiting (None = never).
                Items that stay blocked do not keep the loop alive.
        """

        aggregate = SchedulerPassSummary()
        passes = 0
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    break
                if max_passes is not None and passes >= max_passes:
                    break
                summary = self.run_once()
                passes += 1
                aggregate.dispatched += summary.dispatched
                aggregate.planned += summary.planned
                aggregate.completed += summary.completed
                aggregate.blocked = summary.blocked
                aggregate.blockages = summary.blockages
                aggregate.pending = summary.pending
                idle = (
                    summary.dispatched == 0
                    and summary.completed == 0
                    and summary.planned == 0
                    and not self._has_running()
                )
                consecutive_idle = consecutive_idle + 1 if idle else 0
                if max_idle_passes is not None and consecutive_idle >= max_idle_passes:
                    break
                self._sleep_with_stop(self.poll_interval_seconds)

        if self._stop_requested:
            logger.info(
                "Stop requested (%s); waiting for running items",
                self._stop_signal_name or "stop",
            )
        self.wait_idle()
        final = SchedulerPassSummary()
        self._reap_finished(final)
        aggregate.completed += final.completed
        return aggregate

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for running items and their node teardowns; ``True`` if all finished."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                running = list(self._running.values())
            if not running:
                break
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait(running, timeout=remaining)
            if not_done:
                return False
            with self._lock:
                if all(future.done() for future in self._running.values()):
                    break
        with self._lock:
            teardowns = list(self._teardowns)
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        _, not_done = wait(teardowns, timeout=remaining)
        return not not_done

    def request_stop(self, signal_name: str = "stop") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def close(self) -> None:
        """Release nodes of still queued items, wait for running ones and stop the pools."""

        self.request_stop()
        for item in self.pending_items():
            with self._lock:
                self._pending.pop(item.item_id, None)
            self.gatekeeper.on_left(item, cancelled=True)
        self.wait_idle()
        self._executor.shutdown(wait=True)
        self.registry.close(wait=True)

    # --- Internals

    def _find_node(self, item: WorkItem) -> EphemeralNode | None:
        for node in self.registry.nodes():
            if not isinstance(node, EphemeralNode):
                continue
            with self._lock:
                if node.name in self._busy_nodes:
                    continue
            surface = node.surface
            if surface is None or surface.is_offline() or not surface.is_accepting_tasks():
                continue
            if node.can_take(item) is None:
                return node
        return None

    def _dispatch(self, item: WorkItem, node: EphemeralNode) -> None:
        record = ExecutionRecord(
            item_id=item.item_id,
            display_name=f"{item.name} ({item.item_id})",
            log_path=self.log_dir / f"{item.item_id}.log",
        )
        with self._lock:
            self._pending.pop(item.item_id, None)
            self._busy_nodes.add(node.name)
        node.mark_dispatched()
        if self.repository is not None:
            self.repository.mark_running(item.item_id, log_path=str(record.log_path))
        logger.info("Dispatching item %s to node %s", item.item_id, node.name)
        future = self._executor.submit(self._execute, item, node, record)
        with self._lock:
            self._running[item.item_id] = future

    def _execute(self, item: WorkItem, node: EphemeralNode, record: ExecutionRecord) -> RunResult:
        problems: BaseException | None = None
        log = open_record_log(record, self.gatekeeper.log_filters, charset=node.charset)
        try:
            self.gatekeeper.on_record_initialized(record, node)
            channel = node.command_channel(record, log)
            exit_code = channel.execute(item.command, log)
            result = RunResult.SUCCESS if exit_code == 0 else RunResult.FAILURE
            log.println(f"Finished: {result.value} (exit code {exit_code})")
            record.set_result(result)
        except LaunchFailure as error:
            problems = error
            if record.get_result() is None:
                record.set_result(RunResult.NOT_BUILT)
        except Exception as error:  # noqa: BLE001
            logger.exception("Execution of item %s failed", item.item_id)
            log.print_exception(error)
            problems = error
            record.set_result(RunResult.FAILURE)
        finally:
            log.close()

        surface = node.surface
        if surface is not None:
            teardown = (
                surface.task_completed(record)
                if problems is None
                else surface.task_completed_with_problems(record, problems)
            )
            if teardown is not None:
                with self._lock:
                    self._teardowns.append(teardown)

        result = record.get_result() or RunResult.FAILURE
        if self.repository is not None:
            self.repository.mark_finished(
                item.item_id,
                result=result,
                error_summary=str(problems) if problems is not None else None,
            )
        logger.info("Item %s finished with %s", item.item_id, result.value)
        return result

    def _recover_interrupted(self, repository: WorkItemRepository) -> None:
        """Resume, or close out, items a previous host process left running."""

        for view in repository.list_running_items():
            with self._lock:
                if view.item_id in self._running:
                    continue
            item = view.to_work_item()
            record = ExecutionRecord(
                item_id=item.item_id,
                display_name=f"{item.name} ({item.item_id})",
                log_path=(
                    Path(view.log_path)
                    if view.log_path
                    else self.log_dir / f"{item.item_id}.log"
                ),
            )
            node = self.gatekeeper.exactly_bound_node(item)
            if node is not None:
                with self._lock:
                    self._busy_nodes.add(node.name)
                node.mark_dispatched()
            logger.info("Recovering interrupted item %s", item.item_id)
            future = self._executor.submit(self._recover, repository, item, node, record)
            with self._lock:
                self._running[item.item_id] = future

    def _recover(
        self,
        repository: WorkItemRepository,
        item: WorkItem,
        node: EphemeralNode | None,
        record: ExecutionRecord,
    ) -> RunResult:
        surface = self.gatekeeper.rehydrate(item, record) if node is not None else None
        if node is None or surface is None:
            node_name = item.assignment.node_name if item.assignment is not None else None
            reason = (
                f"Node {node_name} is gone; execution interrupted by a host restart"
                if node_name
                else "No node assigned; execution interrupted by a host restart"
            )
            log = open_record_log(record, self.gatekeeper.log_filters)
            try:
                log.println(reason)
            finally:
                log.close()
            repository.mark_finished(
                item.item_id,
                result=RunResult.NOT_BUILT,
                error_summary=reason,
            )
            logger.warning("Item %s not resumed: %s", item.item_id, reason)
            return RunResult.NOT_BUILT

        repository.add_event(item.item_id, "rehydrated", {"node": node.name})
        return self._execute(item, node, record)

    def _reap_finished(self, summary: SchedulerPassSummary) -> None:
        with self._lock:
            finished = [item_id for item_id, future in self._running.items() if future.done()]
            for item_id in finished:
                self._running.pop(item_id)
            self._teardowns = [future for future in self._teardowns if not future.done()]
            live = {node.name for node in self.registry.nodes()}
            self._busy_nodes &= live
        summary.completed += len(finished)

    def _has_running(self) -> bool:
        with self._lock:
            return bool(self._running)

    def _collect_planned(self) -> None:
        for label, planned in list(self._planned.items()):
            remaining: list[PlannedNode] = []
            for planned_node in planned:
                if not planned_node.future.done():
                    remaining.append(planned_node)
                    continue
                self._register_planned(planned_node)
            self._planned[label] = remaining

    def _register_planned(self, planned_node: PlannedNode) -> None:
        try:
            node = planned_node.future.result()
        except Exception:  # noqa: BLE001
            logger.exception("Planned node %s failed", planned_node.display_name)
            return
        if node is None or self.registry.get(node.name) is node:
            return
        try:
            self.registry.add(node)
        except ValueError:
            logger.warning("Planned node %s is already registered", node.name)

    def _sync_from_repository(self, repository: WorkItemRepository) -> None:
        queued = {item.item_id: item for item in repository.list_queued_items()}
        for item in self.pending_items():
            if item.item_id in queued:
                continue
            view = repository.get_item(item.item_id)
            if view is not None and view.status is ItemStatus.CANCELED:
                logger.info("Item %s was canceled externally", item.item_id)
                self.cancel(item)
        for item_id, item in queued.items():
            with self._lock:
                known = item_id in self._pending or item_id in self._running
            if not known:
                self.schedule(item)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

