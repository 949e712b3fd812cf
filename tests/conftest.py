"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path

import pytest

from oneshot.launchers.base import LaunchError
from oneshot.logsink import TaskLog
from oneshot.models import ExecutionRecord, WorkItem
from oneshot.registry import NodeRegistry


class RecordingChannel:
    """Channel that records commands instead of running them."""

    def __init__(self, exit_code: int = 0) -> None:
        self.exit_code = exit_code
        self.executed: list[tuple[str, ...]] = []
        self.closed = False

    def execute(self, argv: Sequence[str], log: TaskLog) -> int:
        self.executed.append(tuple(argv))
        log.println(f"ran {' '.join(argv)}")
        return self.exit_code

    def close(self) -> None:
        self.closed = True


class RecordingLauncher:
    """Launcher that counts launches and connects a ``RecordingChannel``."""

    def __init__(
        self,
        *,
        error: Exception | None = None,
        connect: bool = True,
        exit_code: int = 0,
        delay_seconds: float = 0.0,
    ) -> None:
        self.error = error
        self.connect = connect
        self.exit_code = exit_code
        self.delay_seconds = delay_seconds
        self.launches: list[str] = []
        self.terminated: list[str] = []
        self.channels: list[RecordingChannel] = []
        self._lock = threading.Lock()

    def launch(self, surface, log: TaskLog) -> None:
        with self._lock:
            self.launches.append(surface.node_name)
        log.println(f"booting {surface.node_name}")
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error
        if self.connect:
            channel = RecordingChannel(self.exit_code)
            self.channels.append(channel)
            surface.connect(channel)

    def terminate(self, node, log: TaskLog) -> None:
        with self._lock:
            self.terminated.append(node.name)


@pytest.fixture()
def registry() -> Iterator[NodeRegistry]:
    registry = NodeRegistry()
    try:
        yield registry
    finally:
        registry.close(wait=True)


@pytest.fixture()
def launcher() -> RecordingLauncher:
    return RecordingLauncher()


@pytest.fixture()
def make_launcher() -> Callable[..., RecordingLauncher]:
    return RecordingLauncher


@pytest.fixture()
def failing_launcher() -> RecordingLauncher:
    return RecordingLauncher(error=LaunchError("container image not found"))


@pytest.fixture()
def make_item() -> Callable[..., WorkItem]:
    counter = iter(range(1, 10_000))

    def _make(
        label: str | None = "oneshot",
        *,
        item_id: str | None = None,
        command: tuple[str, ...] = ("echo", "hello"),
        metadata: dict[str, object] | None = None,
    ) -> WorkItem:
        index = next(counter)
        return WorkItem(
            item_id=item_id or f"item-{index}",
            name=f"job-{index}",
            label=label,
            command=command,
            metadata=dict(metadata or {}),
        )

    return _make


@pytest.fixture()
def make_record(tmp_path: Path) -> Callable[[WorkItem], ExecutionRecord]:
    def _make(item: WorkItem) -> ExecutionRecord:
        return ExecutionRecord(
            item_id=item.item_id,
            display_name=f"{item.name} #1",
            log_path=tmp_path / "logs" / f"{item.item_id}.log",
        )

    return _make
