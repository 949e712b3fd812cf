"""Launcher implementations that bootstrap one-shot workers."""

from oneshot.launchers.base import Channel, LaunchError, Launcher
from oneshot.launchers.command import CommandLauncher, SubprocessChannel

__all__ = [
    "Channel",
    "CommandLauncher",
    "LaunchError",
    "Launcher",
    "SubprocessChannel",
]
