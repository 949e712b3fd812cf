from __future__ import annotations

from pathlib import Path

import allure
import pytest

from oneshot.assignment import Assignment
from oneshot.models import ItemStatus, RunResult, WorkItemCreate
from oneshot.repository import WorkItemRepository

pytestmark = [
    allure.epic("One-shot Nodes"),
    allure.feature("Work Item Storage"),
]


@pytest.fixture
def repository(tmp_path: Path):
    repository = WorkItemRepository(tmp_path / "oneshot.db")
    repository.init_schema()
    yield repository
    repository.close()


def _enqueue(repository: WorkItemRepository, item_id: str, **kwargs):
    payload = WorkItemCreate(
        name=kwargs.pop("name", f"job-{item_id}"),
        command=kwargs.pop("command", ("echo", item_id)),
        item_id=item_id,
        **kwargs,
    )
    return repository.enqueue_item(payload)


def _event_types(repository: WorkItemRepository, item_id: str) -> list[str]:
    details = repository.get_item_details(item_id)
    assert details is not None
    return [event.event_type for event in details.events]


def test_enqueue_persists_a_queued_item(repository: WorkItemRepository) -> None:
    view = _enqueue(
        repository,
        "item-1",
        name="nightly",
        command=("make", "test"),
        label="linux && oneshot",
        metadata={"oneshot": True},
    )

    assert view.status is ItemStatus.QUEUED
    assert view.command == ("make", "test")
    assert view.metadata == {"oneshot": True}
    assert view.assignment is None

    stored = repository.get_item("item-1")
    assert stored is not None
    assert stored.name == "nightly"
    assert stored.label == "linux && oneshot"
    assert _event_types(repository, "item-1") == ["enqueued"]


def test_enqueue_generates_an_id_when_missing(repository: WorkItemRepository) -> None:
    view = repository.enqueue_item(WorkItemCreate(name="adhoc", command=("true",)))

    assert view.item_id
    assert repository.get_item(view.item_id) is not None


def test_enqueue_rejects_an_empty_command(repository: WorkItemRepository) -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        repository.enqueue_item(WorkItemCreate(name="nothing", command=()))


def test_unknown_item_reads_as_none(repository: WorkItemRepository) -> None:
    assert repository.get_item("missing") is None
    assert repository.get_item_details("missing") is None


def test_assignment_is_saved_cleared_and_restored(repository: WorkItemRepository) -> None:
    _enqueue(repository, "item-1", label="oneshot")

    repository.save_assignment("item-1", "18f0a3c2")
    repository.save_assignment("item-1", "18f0a3c2")

    [queued] = repository.list_queued_items()
    assert queued.item_id == "item-1"
    assert queued.assignment == Assignment("18f0a3c2")
    assert queued.assigned_label == "18f0a3c2"

    repository.save_assignment("item-1", None)

    [queued] = repository.list_queued_items()
    assert queued.assignment is None
    assert queued.assigned_label == "oneshot"

    details = repository.get_item_details("item-1")
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "assigned",
        "assignment_cleared",
    ]
    assert details.events[1].details == {"node": "18f0a3c2"}
    assert details.events[2].details == {"node": "18f0a3c2"}


def test_assignment_of_unknown_item_fails(repository: WorkItemRepository) -> None:
    with pytest.raises(RuntimeError, match="Work item not found: ghost"):
        repository.save_assignment("ghost", "18f0a3c2")


def test_running_and_finished_transitions(repository: WorkItemRepository) -> None:
    _enqueue(repository, "item-1")

    assert repository.mark_running("item-1", log_path="/tmp/item-1.log") is True
    assert repository.mark_running("item-1", log_path="/tmp/item-1.log") is False
    assert repository.list_queued_items() == []

    assert repository.mark_finished("item-1", result=RunResult.NOT_BUILT, error_summary="boom")
    assert repository.mark_finished("item-1", result=RunResult.SUCCESS) is False

    view = repository.get_item("item-1")
    assert view is not None
    assert view.status is ItemStatus.COMPLETED
    assert view.result is RunResult.NOT_BUILT
    assert view.error_summary == "boom"
    assert view.log_path == "/tmp/item-1.log"
    assert view.started_at is not None
    assert view.finished_at is not None

    details = repository.get_item_details("item-1")
    assert details is not None
    finished = details.events[-1]
    assert finished.event_type == "finished"
    assert finished.status_from is ItemStatus.RUNNING
    assert finished.status_to is ItemStatus.COMPLETED
    assert finished.details == {"result": "not_built", "error": "boom"}


def test_cancel_only_from_queued(repository: WorkItemRepository) -> None:
    _enqueue(repository, "queued")
    _enqueue(repository, "running")
    repository.mark_running("running", log_path="/tmp/running.log")

    assert repository.cancel_item("queued", reason="operator") is ItemStatus.QUEUED
    view = repository.get_item("queued")
    assert view is not None
    assert view.status is ItemStatus.CANCELED
    assert view.error_summary == "operator"

    with pytest.raises(RuntimeError, match="cannot be canceled from status=running"):
        repository.cancel_item("running")
    with pytest.raises(RuntimeError, match="cannot be canceled from status=canceled"):
        repository.cancel_item("queued")
    with pytest.raises(RuntimeError, match="Work item not found"):
        repository.cancel_item("ghost")


def test_add_event_keeps_status(repository: WorkItemRepository) -> None:
    _enqueue(repository, "item-1")

    repository.add_event("item-1", "note", {"by": "operator"})

    details = repository.get_item_details("item-1")
    assert details is not None
    note = details.events[-1]
    assert note.event_type == "note"
    assert note.status_from is ItemStatus.QUEUED
    assert note.status_to is ItemStatus.QUEUED
    assert note.details == {"by": "operator"}


def test_list_items_filters_by_status(repository: WorkItemRepository) -> None:
    for item_id in ("a", "b", "c"):
        _enqueue(repository, item_id)
    repository.cancel_item("b")

    assert {view.item_id for view in repository.list_items()} == {"a", "b", "c"}
    assert [view.item_id for view in repository.list_items(status=ItemStatus.CANCELED)] == ["b"]
    assert len(repository.list_items(limit=2)) == 2
    assert {item.item_id for item in repository.list_queued_items()} == {"a", "c"}


def test_list_running_items_returns_interrupted_work(repository: WorkItemRepository) -> None:
    _enqueue(repository, "waiting")
    _enqueue(repository, "first")
    _enqueue(repository, "second")
    _enqueue(repository, "done")
    repository.save_assignment("first", "0abc")
    repository.mark_running("first", log_path="/tmp/first.log")
    repository.mark_running("second", log_path="/tmp/second.log")
    repository.mark_running("done", log_path="/tmp/done.log")
    repository.mark_finished("done", result=RunResult.SUCCESS)

    running = repository.list_running_items()

    assert [view.item_id for view in running] == ["first", "second"]
    assert running[0].log_path == "/tmp/first.log"
    assert running[0].to_work_item().assignment == Assignment("0abc")
