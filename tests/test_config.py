from __future__ import annotations

import logging
from pathlib import Path

import allure
import pytest

from oneshot.config import ProvisionerSettings, SchedulerSettings, Settings

pytestmark = [
    allure.epic("One-shot Nodes"),
    allure.feature("Configuration"),
]

_ENV_NAMES = (
    "ONESHOT_DB_PATH",
    "ONESHOT_LOG_DIR",
    "ONESHOT_LOG_LEVEL",
    "ONESHOT_LABEL",
    "ONESHOT_INSTANCE_CAP",
    "ONESHOT_WORKDIR_ROOT",
    "ONESHOT_START_COMMAND",
    "ONESHOT_STOP_COMMAND",
    "ONESHOT_EXEC_PREFIX",
    "ONESHOT_CHARSET",
    "ONESHOT_POLL_INTERVAL_SECONDS",
    "ONESHOT_EXECUTOR_THREADS",
    "ONESHOT_TEARDOWN_WORKERS",
    "ONESHOT_SQLITE_BUSY_TIMEOUT_MS",
    "ONESHOT_STRATEGY_ENABLED",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_are_valid() -> None:
    settings = Settings.from_env()

    settings.validate()
    assert settings.db_path == Path(".oneshot.db")
    assert settings.provisioner.label == "oneshot"
    assert settings.provisioner.instance_cap == 0
    assert settings.scheduler.executor_threads == 4
    assert settings.strategy.enabled is True
    assert settings.logging_level == logging.WARNING


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ONESHOT_DB_PATH", str(tmp_path / "queue.db"))
    monkeypatch.setenv("ONESHOT_LOG_LEVEL", " debug ")
    monkeypatch.setenv("ONESHOT_LABEL", "docker")
    monkeypatch.setenv("ONESHOT_INSTANCE_CAP", "3")
    monkeypatch.setenv("ONESHOT_START_COMMAND", "docker run -d --name {node} agent")
    monkeypatch.setenv("ONESHOT_EXEC_PREFIX", "docker exec {node}")
    monkeypatch.setenv("ONESHOT_POLL_INTERVAL_SECONDS", "0.25")
    monkeypatch.setenv("ONESHOT_TEARDOWN_WORKERS", "5")
    monkeypatch.setenv("ONESHOT_STRATEGY_ENABLED", "off")

    settings = Settings.from_env()

    settings.validate()
    assert settings.db_path == tmp_path / "queue.db"
    assert settings.log_level == "DEBUG"
    assert settings.logging_level == logging.DEBUG
    assert settings.provisioner.label == "docker"
    assert settings.provisioner.instance_cap == 3
    assert settings.provisioner.start_command == "docker run -d --name {node} agent"
    assert settings.provisioner.exec_prefix == "docker exec {node}"
    assert settings.scheduler.poll_interval_seconds == 0.25
    assert settings.scheduler.teardown_workers == 5
    assert settings.strategy.enabled is False


def test_explicit_db_path_wins_over_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ONESHOT_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("ONESHOT_STRATEGY_ENABLED", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for ONESHOT_STRATEGY_ENABLED"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "variable"),
    [
        (Settings(log_level="CHATTY"), "ONESHOT_LOG_LEVEL"),
        (Settings(provisioner=ProvisionerSettings(label="")), "ONESHOT_LABEL"),
        (Settings(provisioner=ProvisionerSettings(label="a b")), "ONESHOT_LABEL"),
        (Settings(provisioner=ProvisionerSettings(instance_cap=-1)), "ONESHOT_INSTANCE_CAP"),
        (Settings(provisioner=ProvisionerSettings(charset="klingon-8")), "ONESHOT_CHARSET"),
        (
            Settings(scheduler=SchedulerSettings(poll_interval_seconds=-1)),
            "ONESHOT_POLL_INTERVAL_SECONDS",
        ),
        (Settings(scheduler=SchedulerSettings(executor_threads=0)), "ONESHOT_EXECUTOR_THREADS"),
        (Settings(scheduler=SchedulerSettings(teardown_workers=0)), "ONESHOT_TEARDOWN_WORKERS"),
        (
            Settings(scheduler=SchedulerSettings(sqlite_busy_timeout_ms=0)),
            "ONESHOT_SQLITE_BUSY_TIMEOUT_MS",
        ),
    ],
)
def test_validate_names_the_offending_variable(settings: Settings, variable: str) -> None:
    with pytest.raises(ValueError, match=variable):
        settings.validate()


def test_unknown_log_level_falls_back_to_warning() -> None:
    assert Settings(log_level="CHATTY").logging_level == logging.WARNING
