from __future__ import annotations

import io
import threading

import allure
import pytest

from oneshot.assignment import Assignment
from oneshot.logsink import TaskLog
from oneshot.models import DEDICATED, NodeState, RunResult
from oneshot.node import EphemeralNode, LaunchFailure, next_node_name
from oneshot.surface import DeadSurface

pytestmark = [
    allure.epic("One-shot Nodes"),
    allure.feature("Node Lifecycle"),
]


def _registered_node(registry, launcher, item) -> EphemeralNode:
    node = EphemeralNode(item=item, launcher=launcher, description="test executor")
    node.mark_assigned()
    registry.add(node)
    return node


def test_node_names_are_unique_hex_tokens() -> None:
    names = [next_node_name() for _ in range(200)]

    assert len(set(names)) == len(names)
    for name in names:
        int(name, 16)


def test_registered_node_looks_online_before_any_launch(registry, launcher, make_item) -> None:
    item = make_item()
    node = _registered_node(registry, launcher, item)

    assert node.state is NodeState.ASSIGNED
    assert node.surface is not None
    assert node.surface.is_offline() is False
    assert node.surface.is_actually_offline() is True
    assert node.surface.is_accepting_tasks() is True
    assert launcher.launches == []


def test_can_take_admits_only_the_bound_item(registry, launcher, make_item) -> None:
    item = make_item()
    node = _registered_node(registry, launcher, item)

    assert node.can_take(item) is None
    assert node.can_take(make_item()) == DEDICATED
    assert node.can_take(make_item(label=None)) == DEDICATED


def test_can_take_admits_item_whose_label_is_the_node(registry, launcher, make_item) -> None:
    node = _registered_node(registry, launcher, make_item())

    exact = make_item(label=node.name)
    padded = make_item(label=f" {node.name} ")
    assigned = make_item(label="oneshot")
    assigned.assignment = Assignment(node.name)
    prefix_only = make_item(label=node.name[:-1])

    assert node.can_take(exact) is None
    assert node.can_take(padded) is None
    assert node.can_take(assigned) is None
    assert node.can_take(prefix_only) == DEDICATED


def test_can_take_rejects_expressions_that_merely_mention_the_node(
    registry,
    launcher,
    make_item,
) -> None:
    node = _registered_node(registry, launcher, make_item())

    assert node.can_take(make_item(label=f"gpu && {node.name}")) == DEDICATED
    assert node.can_take(make_item(label=f"{node.name} linux")) == DEDICATED


def test_queue_item_id_is_read_only(registry, launcher, make_item) -> None:
    node = _registered_node(registry, launcher, make_item(item_id="bound"))

    with pytest.raises(AttributeError):
        node.queue_item_id = "other"  # type: ignore[misc]
    assert node.queue_item_id == "bound"


def test_mark_assigned_is_only_valid_from_created(launcher, make_item) -> None:
    node = EphemeralNode(item=make_item(), launcher=launcher)
    node.mark_assigned()

    with pytest.raises(RuntimeError, match="cannot be assigned"):
        node.mark_assigned()


def test_unknown_charset_is_rejected(launcher, make_item) -> None:
    with pytest.raises(LookupError):
        EphemeralNode(item=make_item(), launcher=launcher, charset="no-such-charset")


def test_record_initialized_launches_into_the_record_log(
    registry,
    launcher,
    make_item,
    make_record,
) -> None:
    item = make_item()
    node = _registered_node(registry, launcher, item)
    record = make_record(item)

    assert node.on_record_initialized(record) is True

    assert node.state is NodeState.RUNNING
    assert launcher.launches == [node.name]
    assert node.executable is record
    assert node.surface.is_actually_offline() is False
    log_text = record.read_log()
    assert f"Launching a dedicated agent for {record.display_name}" in log_text
    assert f"booting {node.name}" in log_text
    assert node.display_name == f"Executor for {record.display_name}"
    assert node.describe() == f"executor for {record.display_name}"


def test_second_signal_is_a_no_op(registry, launcher, make_item, make_record) -> None:
    item = make_item()
    node = _registered_node(registry, launcher, item)
    record = make_record(item)
    node.on_record_initialized(record)

    channel = node.command_channel(record, TaskLog(io.StringIO()))

    assert node.on_record_initialized(record) is False
    assert channel is launcher.channels[0]
    assert launcher.launches == [node.name]


def test_concurrent_launch_signals_launch_exactly_once(
    registry,
    make_launcher,
    make_item,
    make_record,
) -> None:
    launcher = make_launcher(delay_seconds=0.05)
    item = make_item()
    node = _registered_node(registry, launcher, item)
    record = make_record(item)
    barrier = threading.Barrier(8)
    channels: list[object] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _fire(index: int) -> None:
        barrier.wait(timeout=5)
        try:
            if index % 2 == 0:
                node.on_record_initialized(record)
            else:
                channel = node.command_channel(record, TaskLog(io.StringIO()))
                with lock:
                    channels.append(channel)
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)

    threads = [threading.Thread(target=_fire, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert launcher.launches == [node.name]
    assert len(channels) == 4
    assert all(channel is launcher.channels[0] for channel in channels)
    assert node.state is NodeState.RUNNING


def test_launch_failure_marks_node_dead_with_offline_stand_in(
    registry,
    failing_launcher,
    make_item,
    make_record,
) -> None:
    item = make_item()
    node = _registered_node(registry, failing_launcher, item)
    record = make_record(item)

    node.on_record_initialized(record)

    assert node.state is NodeState.DEAD
    assert node.is_dead is True
    assert record.get_result() is RunResult.NOT_BUILT
    assert isinstance(node.surface, DeadSurface)
    assert node.surface.is_offline() is True
    assert node.surface.is_accepting_tasks() is False
    log_text = record.read_log()
    assert "Failed to provision agent" in log_text
    assert "container image not found" in log_text
    with pytest.raises(LaunchFailure, match="failed to provision"):
        node.command_channel(record, TaskLog(io.StringIO()))


def test_launcher_that_never_connects_counts_as_failure(
    registry,
    make_launcher,
    make_item,
    make_record,
) -> None:
    launcher = make_launcher(connect=False)
    item = make_item()
    node = _registered_node(registry, launcher, item)
    record = make_record(item)

    node.on_record_initialized(record)

    assert node.state is NodeState.DEAD
    assert isinstance(node.launch_error, LaunchFailure)
    assert record.get_result() is RunResult.NOT_BUILT


def test_launch_is_ignored_until_node_is_registered(launcher, make_item, make_record) -> None:
    item = make_item()
    node = EphemeralNode(item=item, launcher=launcher)
    record = make_record(item)

    assert node.set_executable(record, TaskLog(io.StringIO())) is False
    with pytest.raises(LaunchFailure, match="cannot be launched"):
        node.command_channel(record, TaskLog(io.StringIO()))
    assert launcher.launches == []
    assert node.state is NodeState.CREATED


def test_termination_hook_fires_once(registry, launcher, make_item, make_record) -> None:
    item = make_item()
    node = _registered_node(registry, launcher, item)
    node.on_record_initialized(make_record(item))

    node.run_termination_hook()
    node.run_termination_hook()

    assert launcher.terminated == [node.name]


def test_description_is_used_until_a_record_is_bound(launcher, make_item) -> None:
    node = EphemeralNode(item=make_item(), launcher=launcher, description="docker agent")

    assert node.describe() == "docker agent"
    assert node.has_executable() is False
