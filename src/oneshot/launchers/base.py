"""Launcher and channel interfaces for worker bootstrap."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from oneshot.logsink import TaskLog

if TYPE_CHECKING:
    from oneshot.node import EphemeralNode
    from oneshot.surface import ExecutionSurface


class LaunchError(RuntimeError):
    """Worker bootstrap failed."""


class Channel(Protocol):
    """Command channel to a connected worker."""

    def execute(self, argv: Sequence[str], log: TaskLog) -> int:
        """Run ``argv`` on the worker, streaming output to ``log``; return the exit code."""

    def close(self) -> None:
        """Release the connection."""


class Launcher(Protocol):
    """Bootstraps the worker behind a surface and connects a channel to it."""

    def launch(self, surface: ExecutionSurface, log: TaskLog) -> None:
        """Start the worker; call ``surface.connect`` on success."""


@runtime_checkable
class TerminatingLauncher(Protocol):
    """Launcher that also knows how to dispose of the worker it started."""

    def launch(self, surface: ExecutionSurface, log: TaskLog) -> None: ...

    def terminate(self, node: EphemeralNode, log: TaskLog) -> None: ...
