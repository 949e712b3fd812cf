"""Controllers for one-shot executor CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from oneshot.config import Settings
from oneshot.launchers.command import CommandLauncher
from oneshot.models import ItemStatus, WorkItemCreate
from oneshot.provisioner import ONESHOT_METADATA_FLAG, CommandProvisioner
from oneshot.registry import NodeRegistry
from oneshot.repository import WorkItemRepository
from oneshot.scheduler import LocalScheduler


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for work item submission."""

    db_path: Path | None
    name: str
    command: tuple[str, ...]
    label: str | None
    item_id: str | None
    oneshot: bool


@dataclass(slots=True)
class RunCommand:
    """CLI input for the local scheduler."""

    db_path: Path | None
    once: bool
    max_passes: int | None
    max_idle_passes: int


@dataclass(slots=True)
class ListItemsCommand:
    """CLI input for item listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class ItemCommand:
    """CLI input addressing one item."""

    db_path: Path | None
    item_id: str


@dataclass(slots=True)
class OneshotCliController:
    """Coordinates queue, scheduler, and inspection CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        label = command.label if command.label is not None else settings.provisioner.label
        metadata = {ONESHOT_METADATA_FLAG: True} if command.oneshot else {}
        with _repository(settings) as repository:
            item = repository.enqueue_item(
                WorkItemCreate(
                    name=command.name,
                    command=command.command,
                    item_id=command.item_id,
                    label=label or None,
                    metadata=metadata,
                ),
            )
        return [
            f"Item queued: item_id={item.item_id} name={item.name} "
            f"label={item.label or '-'} status={item.status.value}",
        ]

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            scheduler = build_scheduler(settings=settings, repository=repository)
            try:
                if command.once:
                    summary = scheduler.run_once()
                    scheduler.wait_idle()
                else:
                    summary = scheduler.run_loop(
                        max_passes=command.max_passes,
                        max_idle_passes=command.max_idle_passes,
                    )
            finally:
                scheduler.close()

        lines = [
            "Scheduler summary: "
            f"dispatched={summary.dispatched} completed={summary.completed} "
            f"planned={summary.planned} blocked={summary.blocked} pending={summary.pending}",
        ]
        for item_id, blockage in sorted(summary.blockages.items()):
            lines.append(f"  blocked {item_id}: {blockage.short_description}")
        return lines

    def list_items(self, command: ListItemsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            items = repository.list_items(status=status_filter, limit=command.limit)

        lines = [f"Items: {len(items)}"]
        for item in items:
            lines.append(
                f"  {item.item_id} name={item.name} status={item.status.value} "
                f"label={item.label or '-'} node={item.assignment or '-'} "
                f"result={item.result.value if item.result else '-'}",
            )
        return lines

    def inspect_item(self, command: ItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_item_details(command.item_id)
        if details is None:
            return [f"Work item not found: {command.item_id}"]

        item = details.item
        lines = [
            f"Item: {item.item_id}",
            f"Name: {item.name}",
            f"Label: {item.label or '-'}",
            f"Command: {json.dumps(list(item.command), ensure_ascii=False)}",
            f"Status: {item.status.value}",
            f"Node: {item.assignment or '-'}",
            f"Result: {item.result.value if item.result else '-'}",
            f"Error: {item.error_summary or '-'}",
            f"Log: {item.log_path or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            detail_text = json.dumps(event.details, sort_keys=True) if event.details else ""
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'} {detail_text}".rstrip(),
            )
        return lines

    def cancel_item(self, command: ItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.cancel_item(command.item_id, reason="canceled by operator")
        return [f"Item canceled: {command.item_id}"]


def build_scheduler(*, settings: Settings, repository: WorkItemRepository) -> LocalScheduler:
    """Wire registry, command provisioner and local scheduler from settings."""

    registry = NodeRegistry(teardown_workers=settings.scheduler.teardown_workers)
    launcher = CommandLauncher(
        workdir_root=settings.provisioner.workdir_root,
        start_command=settings.provisioner.start_command,
        stop_command=settings.provisioner.stop_command,
        exec_prefix=settings.provisioner.exec_prefix,
    )
    provisioner = CommandProvisioner(
        label=settings.provisioner.label,
        launcher=launcher,
        registry=registry,
        instance_cap=settings.provisioner.instance_cap,
        charset=settings.provisioner.charset,
    )
    return LocalScheduler(
        registry=registry,
        provisioners=[provisioner],
        log_dir=settings.log_dir,
        repository=repository,
        strategy_enabled=settings.strategy.enabled,
        executor_threads=settings.scheduler.executor_threads,
        poll_interval_seconds=settings.scheduler.poll_interval_seconds,
    )


def _parse_status(value: str | None) -> ItemStatus | None:
    if value is None:
        return None
    return ItemStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[WorkItemRepository]:
    repository = WorkItemRepository(
        settings.db_path,
        busy_timeout_ms=settings.scheduler.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
