"""Runtime configuration for the one-shot executor host."""

from __future__ import annotations

import codecs
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class ProvisionerSettings:
    """Command provisioner settings."""

    label: str = "oneshot"
    instance_cap: int = 0
    workdir_root: Path = Path(".oneshot/work")
    start_command: str = ""
    stop_command: str = ""
    exec_prefix: str = ""
    charset: str = "utf-8"


@dataclass(slots=True)
class SchedulerSettings:
    """Local scheduler settings."""

    poll_interval_seconds: float = 1.0
    executor_threads: int = 4
    teardown_workers: int = 2
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class StrategySettings:
    """Capacity strategy settings."""

    enabled: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".oneshot.db")
    log_dir: Path = Path(".oneshot/logs")
    log_level: str = "WARNING"
    provisioner: ProvisionerSettings = field(default_factory=ProvisionerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    strategy: StrategySettings = field(default_factory=StrategySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        return cls(
            db_path=db_path or Path(os.getenv("ONESHOT_DB_PATH", ".oneshot.db")),
            log_dir=Path(os.getenv("ONESHOT_LOG_DIR", ".oneshot/logs")),
            log_level=os.getenv("ONESHOT_LOG_LEVEL", "WARNING").strip().upper(),
            provisioner=ProvisionerSettings(
                label=os.getenv("ONESHOT_LABEL", "oneshot").strip(),
                instance_cap=int(os.getenv("ONESHOT_INSTANCE_CAP", "0")),
                workdir_root=Path(os.getenv("ONESHOT_WORKDIR_ROOT", ".oneshot/work")),
                start_command=os.getenv("ONESHOT_START_COMMAND", ""),
                stop_command=os.getenv("ONESHOT_STOP_COMMAND", ""),
                exec_prefix=os.getenv("ONESHOT_EXEC_PREFIX", ""),
                charset=os.getenv("ONESHOT_CHARSET", "utf-8").strip(),
            ),
            scheduler=SchedulerSettings(
                poll_interval_seconds=float(os.getenv("ONESHOT_POLL_INTERVAL_SECONDS", "1.0")),
                executor_threads=int(os.getenv("ONESHOT_EXECUTOR_THREADS", "4")),
                teardown_workers=int(os.getenv("ONESHOT_TEARDOWN_WORKERS", "2")),
                sqlite_busy_timeout_ms=int(os.getenv("ONESHOT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
            strategy=StrategySettings(
                enabled=_env_bool("ONESHOT_STRATEGY_ENABLED", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the host cannot run with."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"ONESHOT_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}.",
            )
        if not self.provisioner.label or len(self.provisioner.label.split()) != 1:
            raise ValueError("ONESHOT_LABEL must be a single non-empty label atom.")
        if self.provisioner.instance_cap < 0:
            raise ValueError("ONESHOT_INSTANCE_CAP must be >= 0.")
        try:
            codecs.lookup(self.provisioner.charset)
        except LookupError as error:
            raise ValueError(f"ONESHOT_CHARSET is not a known encoding: {error}") from error
        if self.scheduler.poll_interval_seconds < 0:
            raise ValueError("ONESHOT_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.scheduler.executor_threads <= 0:
            raise ValueError("ONESHOT_EXECUTOR_THREADS must be > 0.")
        if self.scheduler.teardown_workers <= 0:
            raise ValueError("ONESHOT_TEARDOWN_WORKERS must be > 0.")
        if self.scheduler.sqlite_busy_timeout_ms <= 0:
            raise ValueError("ONESHOT_SQLITE_BUSY_TIMEOUT_MS must be > 0.")

    @property
    def logging_level(self) -> int:
        level = logging.getLevelName(self.log_level)
        return level if isinstance(level, int) else logging.WARNING


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
