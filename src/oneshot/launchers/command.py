"""Shell-command launcher for container or process backed workers."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from oneshot.launchers.base import LaunchError
from oneshot.logsink import TaskLog

if TYPE_CHECKING:
    from oneshot.node import EphemeralNode
    from oneshot.surface import ExecutionSurface

logger = logging.getLogger(__name__)


class SubprocessChannel:
    """Runs item commands as local subprocesses, optionally behind an exec prefix.

    With ``prefix=("docker", "exec", "<container>")`` commands run inside the
    worker container; with no prefix they run in the worker's workdir.
    """

    def __init__(
        self,
        *,
        workdir: Path,
        prefix: Sequence[str] = (),
        env: dict[str, str] | None = None,
    ) -> None:
        self.workdir = workdir
        self.prefix = tuple(prefix)
        self.env = env
        self._lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None
        self._closed = False

    def execute(self, argv: Sequence[str], log: TaskLog) -> int:
        if self._closed:
            raise RuntimeError("Channel is closed.")
        run_args = [*self.prefix, *argv]
        if not run_args:
            raise ValueError("Nothing to execute: empty command.")
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=self.workdir,
                env=self.env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except FileNotFoundError:
            log.println(f"Command not found: {run_args[0]}")
            return 127
        if process.stdout is None:
            process.kill()
            raise RuntimeError("Subprocess output is not captured.")
        with self._lock:
            self._process = process
        try:
            for line in process.stdout:
                log.write(line)
            return process.wait()
        finally:
            with self._lock:
                self._process = None

    def close(self) -> None:
        with self._lock:
            self._closed = True
            process = self._process
        if process is not None:
            _terminate_process(process)


class CommandLauncher:
    """Bootstraps a worker with a start command and disposes of it with a stop command.

    Templates accept ``{node}``, ``{workdir}`` and ``{item}`` placeholders, for
    example ``docker run -d --name {node} agent-image`` /
    ``docker rm -f {node}`` with ``exec_prefix="docker exec {node}"``.
    """

    def __init__(
        self,
        *,
        workdir_root: Path,
        start_command: str = "",
        stop_command: str = "",
        exec_prefix: str = "",
    ) -> None:
        self.workdir_root = workdir_root
        self.start_command = start_command
        self.stop_command = stop_command
        self.exec_prefix = exec_prefix

    def validate(self) -> None:
        """Raise ``ValueError`` if a template cannot be rendered."""

        for template in (self.start_command, self.stop_command, self.exec_prefix):
            if template.strip():
                _render_command(template, node="node", workdir=Path("workdir"), item="item")

    def launch(self, surface: ExecutionSurface, log: TaskLog) -> None:
        node = surface.node
        workdir = self.workdir_root / node.name
        workdir.mkdir(parents=True, exist_ok=True)
        env = _worker_env(node)

        if self.start_command.strip():
            start_args = self._render(self.start_command, node=node, workdir=workdir)
            log.println(f"$ {shlex.join(start_args)}")
            exit_code = _run_logged(start_args, cwd=workdir, env=env, log=log)
            if exit_code != 0:
                raise LaunchError(f"Launch command exited with code {exit_code}.")

        prefix: list[str] = []
        if self.exec_prefix.strip():
            prefix = self._render(self.exec_prefix, node=node, workdir=workdir)
        surface.connect(SubprocessChannel(workdir=workdir, prefix=prefix, env=env))

    def terminate(self, node: EphemeralNode, log: TaskLog) -> None:
        if not self.stop_command.strip():
            return
        workdir = self.workdir_root / node.name
        stop_args = self._render(self.stop_command, node=node, workdir=workdir)
        log.println(f"$ {shlex.join(stop_args)}")
        exit_code = _run_logged(
            stop_args,
            cwd=workdir if workdir.exists() else None,
            env=_worker_env(node),
            log=log,
        )
        if exit_code != 0:
            logger.warning("Stop command for node %s exited with code %s", node.name, exit_code)

    def _render(self, template: str, *, node: EphemeralNode, workdir: Path) -> list[str]:
        try:
            return _render_command(
                template,
                node=node.name,
                workdir=workdir,
                item=node.queue_item_id,
            )
        except ValueError as error:
            raise LaunchError(str(error)) from error


def _render_command(template: str, *, node: str, workdir: Path, item: str) -> list[str]:
    stripped = template.strip()
    if not stripped:
        raise ValueError("Command template is empty.")
    try:
        rendered = stripped.format(
            node=shlex.quote(node),
            workdir=shlex.quote(str(workdir)),
            item=shlex.quote(item),
        )
    except (KeyError, IndexError) as error:
        raise ValueError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise ValueError("Command template rendered empty command.")
    return argv


def _worker_env(node: EphemeralNode) -> dict[str, str]:
    env = os.environ.copy()
    env["ONESHOT_NODE_NAME"] = node.name
    env["ONESHOT_QUEUE_ITEM_ID"] = node.queue_item_id
    return env


def _run_logged(
    args: list[str],
    *,
    cwd: Path | None,
    env: dict[str, str],
    log: TaskLog,
) -> int:
    try:
        completed = subprocess.run(  # noqa: S603
            args,
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=False,
        )
    except FileNotFoundError as error:
        raise LaunchError(f"Command not found: {args[0]}") from error
    except OSError as error:
        raise LaunchError(f"Command failed to start: {error}") from error
    log.write(completed.stdout)
    return completed.returncode


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
