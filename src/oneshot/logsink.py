"""Task log sinks and the per-record log-filter chain."""

from __future__ import annotations

import io
import logging
import threading
import traceback
from collections.abc import Sequence
from typing import Protocol, TextIO

from oneshot.models import ExecutionRecord

logger = logging.getLogger(__name__)


class LogFilter(Protocol):
    """Decorates the output stream of an execution record's log."""

    def decorate(self, record: ExecutionRecord, stream: TextIO) -> TextIO:
        """Return the stream to write to, possibly wrapping ``stream``."""


class TaskLog:
    """Line-oriented writer on top of a text stream, safe to share across threads."""

    def __init__(self, stream: TextIO, *, owns_stream: bool = False) -> None:
        self._stream = stream
        self._owns_stream = owns_stream
        self._lock = threading.Lock()

    def println(self, message: str) -> None:
        with self._lock:
            self._stream.write(f"{message}\n")
            self._stream.flush()

    def write(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._stream.write(text)
            self._stream.flush()

    def print_exception(self, error: BaseException) -> None:
        formatted = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        self.write(formatted)

    def close(self) -> None:
        if not self._owns_stream:
            return
        with self._lock:
            if not self._stream.closed:
                self._stream.close()


class NullTaskLog(TaskLog):
    """Sink that discards everything."""

    def __init__(self) -> None:
        super().__init__(io.StringIO())

    def println(self, message: str) -> None:
        return

    def write(self, text: str) -> None:
        return


NULL_LOG = NullTaskLog()


def open_record_log(
    record: ExecutionRecord,
    filters: Sequence[LogFilter] = (),
    *,
    charset: str = "utf-8",
) -> TaskLog:
    """Open the record's log for appending and run it through the filter chain.

    A filter that fails is skipped with a warning; the log stays usable.
    """

    record.log_path.parent.mkdir(parents=True, exist_ok=True)
    stream: TextIO = record.log_path.open("a", encoding=charset, errors="replace")
    for log_filter in filters:
        try:
            stream = log_filter.decorate(record, stream)
        except (OSError, ValueError):
            logger.warning("Failed to filter log with %r", log_filter, exc_info=True)
    return TaskLog(stream, owns_stream=True)
