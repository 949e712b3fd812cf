from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import TextIO

import allure
import pytest

from oneshot.logsink import NULL_LOG, TaskLog, open_record_log
from oneshot.models import ExecutionRecord

pytestmark = [
    allure.epic("One-shot Nodes"),
    allure.feature("Task Logs"),
]


class _BannerFilter:
    def decorate(self, record: ExecutionRecord, stream: TextIO) -> TextIO:
        stream.write(f"[{record.item_id}] log opened\n")
        return stream


class _BrokenFilter:
    def decorate(self, record: ExecutionRecord, stream: TextIO) -> TextIO:
        raise OSError("filter backend unavailable")


def _record(tmp_path: Path) -> ExecutionRecord:
    return ExecutionRecord(
        item_id="item-7",
        display_name="nightly #7",
        log_path=tmp_path / "nested" / "item-7.log",
    )


def test_record_log_appends_through_filters(tmp_path: Path) -> None:
    record = _record(tmp_path)
    record.log_path.parent.mkdir(parents=True)
    record.log_path.write_text("earlier output\n", encoding="utf-8")

    log = open_record_log(record, [_BannerFilter()])
    log.println("Launching")
    log.close()

    assert record.read_log() == "earlier output\n[item-7] log opened\nLaunching\n"


def test_failing_filter_is_skipped(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    record = _record(tmp_path)

    with caplog.at_level(logging.WARNING, logger="oneshot.logsink"):
        log = open_record_log(record, [_BrokenFilter(), _BannerFilter()])
    log.println("still usable")
    log.close()

    assert "Failed to filter log" in caplog.text
    assert record.read_log() == "[item-7] log opened\nstill usable\n"


def test_print_exception_writes_the_traceback() -> None:
    buffer = io.StringIO()
    log = TaskLog(buffer)

    try:
        raise RuntimeError("boom")
    except RuntimeError as error:
        log.print_exception(error)

    assert "Traceback" in buffer.getvalue()
    assert "RuntimeError: boom" in buffer.getvalue()


def test_borrowed_stream_is_not_closed() -> None:
    buffer = io.StringIO()
    log = TaskLog(buffer)

    log.close()

    assert buffer.closed is False


def test_null_log_discards_output() -> None:
    NULL_LOG.println("ignored")
    NULL_LOG.write("ignored")
    NULL_LOG.close()


def test_missing_log_reads_as_empty(tmp_path: Path) -> None:
    assert _record(tmp_path).read_log() == ""
