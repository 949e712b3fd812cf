"""Persistent work item repository for the local host."""

from __future__ import annotations

import json
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from oneshot.models import (
    ItemStatus,
    RunResult,
    WorkItem,
    WorkItemCreate,
    WorkItemDetails,
    WorkItemEventView,
    WorkItemView,
)
from oneshot.storage.alembic_runner import upgrade_head
from oneshot.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from oneshot.storage.sqlmodel_models import WorkItemEvent, WorkItemRow


class WorkItemRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Also the durable ``AssignmentStore`` of the gatekeeper: the node name bound to
    an item lives in ``work_items.assignment`` so a restarted host can rehydrate it.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue_item(self, payload: WorkItemCreate) -> WorkItemView:
        """Create a queued work item."""

        if not payload.command:
            raise ValueError("Work item command must not be empty.")
        now = utc_now()
        item_id = payload.item_id or str(uuid4())
        with Session(self.engine) as session:
            row = WorkItemRow(
                item_id=item_id,
                name=payload.name,
                label=payload.label,
                command_json=json.dumps(list(payload.command), ensure_ascii=False),
                metadata_json=(
                    json.dumps(payload.metadata, ensure_ascii=False, sort_keys=True)
                    if payload.metadata
                    else None
                ),
                status=ItemStatus.QUEUED.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="enqueued",
                status_from=None,
                status_to=ItemStatus.QUEUED,
                details={"label": payload.label} if payload.label else {},
            )
            session.commit()
            session.refresh(row)
            return _to_item_view(row)

    def get_item(self, item_id: str) -> WorkItemView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkItemRow).where(WorkItemRow.item_id == item_id),
            ).one_or_none()
        return _to_item_view(row) if row is not None else None

    def list_items(
        self,
        *,
        status: ItemStatus | None = None,
        limit: int = 50,
    ) -> list[WorkItemView]:
        """List recent items, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(WorkItemRow).order_by(col(WorkItemRow.created_at).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(WorkItemRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_item_view(row) for row in rows]

    def list_queued_items(self) -> list[WorkItem]:
        """Queued items in submission order, with persisted assignments restored."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkItemRow)
                .where(WorkItemRow.status == ItemStatus.QUEUED.value)
                .order_by(col(WorkItemRow.created_at).asc()),
            ).all()
        return [_to_item_view(row).to_work_item() for row in rows]

    def list_running_items(self) -> list[WorkItemView]:
        """Items left running by a previous host process, oldest start first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkItemRow)
                .where(WorkItemRow.status == ItemStatus.RUNNING.value)
                .order_by(col(WorkItemRow.started_at).asc(), col(WorkItemRow.created_at).asc()),
            ).all()
        return [_to_item_view(row) for row in rows]

    def get_item_details(self, item_id: str) -> WorkItemDetails | None:
        """Return item details with event stream."""

        with Session(self.engine) as session:
            row = session.exec(
                select(WorkItemRow).where(WorkItemRow.item_id == item_id),
            ).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(WorkItemEvent)
                .where(WorkItemEvent.item_id == item_id)
                .order_by(col(WorkItemEvent.created_at).asc(), col(WorkItemEvent.id).asc()),
            ).all()

        events: list[WorkItemEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                WorkItemEventView(
                    event_id=event_row.id or 0,
                    item_id=event_row.item_id,
                    event_type=event_row.event_type,
                    status_from=(
                        ItemStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        ItemStatus(event_row.status_to) if event_row.status_to is not None else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return WorkItemDetails(item=_to_item_view(row), events=events)

    def save_assignment(self, item_id: str, node_name: str | None) -> None:
        """Persist (or clear) the one-shot node name bound to an item."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_item_row(session=session, item_id=item_id)
            if row.assignment == node_name:
                return
            previous = row.assignment
            row.assignment = node_name
            row.updated_at = to_db_datetime(now)
            session.add(row)
            status = ItemStatus(row.status)
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="assigned" if node_name is not None else "assignment_cleared",
                status_from=status,
                status_to=status,
                details={"node": node_name} if node_name is not None else {"node": previous},
            )
            session.commit()

    def mark_running(self, item_id: str, *, log_path: str) -> bool:
        """Move a queued item to running once its execution record exists."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkItemRow)
                .where(
                    col(WorkItemRow.item_id) == item_id,
                    col(WorkItemRow.status) == ItemStatus.QUEUED.value,
                )
                .values(
                    status=ItemStatus.RUNNING.value,
                    log_path=log_path,
                    started_at=to_db_datetime(now),
                    finished_at=None,
                    result=None,
                    error_summary=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="started",
                status_from=ItemStatus.QUEUED,
                status_to=ItemStatus.RUNNING,
                details={"log_path": log_path},
            )
            session.commit()
            return True

    def mark_finished(
        self,
        item_id: str,
        *,
        result: RunResult,
        error_summary: str | None = None,
    ) -> bool:
        """Record the terminal result of a running item."""

        now = utc_now()
        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(WorkItemRow)
                .where(
                    col(WorkItemRow.item_id) == item_id,
                    col(WorkItemRow.status) == ItemStatus.RUNNING.value,
                )
                .values(
                    status=ItemStatus.COMPLETED.value,
                    result=result.value,
                    error_summary=error_summary,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            details: dict[str, object] = {"result": result.value}
            if error_summary:
                details["error"] = error_summary
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="finished",
                status_from=ItemStatus.RUNNING,
                status_to=ItemStatus.COMPLETED,
                details=details,
            )
            session.commit()
            return True

    def cancel_item(self, item_id: str, *, reason: str | None = None) -> ItemStatus:
        """Cancel a queued item; returns the status it was canceled from."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_item_row(session=session, item_id=item_id)
            previous = ItemStatus(row.status)
            if previous is not ItemStatus.QUEUED:
                raise RuntimeError(f"Work item cannot be canceled from status={row.status}")

            result = session.exec(
                sa_update(WorkItemRow)
                .where(
                    col(WorkItemRow.item_id) == item_id,
                    col(WorkItemRow.status) == previous.value,
                )
                .values(
                    status=ItemStatus.CANCELED.value,
                    error_summary=reason,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Work item state changed concurrently while canceling; "
                    f"please retry command (item_id={item_id}).",
                )

            self._add_event(
                session=session,
                item_id=item_id,
                event_type="canceled",
                status_from=previous,
                status_to=ItemStatus.CANCELED,
                details={"reason": reason} if reason else {},
            )
            session.commit()
        return previous

    def add_event(
        self,
        item_id: str,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append an audit event without changing the item status."""

        with Session(self.engine) as session:
            row = self._get_item_row(session=session, item_id=item_id)
            status = ItemStatus(row.status)
            self._add_event(
                session=session,
                item_id=item_id,
                event_type=event_type,
                status_from=status,
                status_to=status,
                details=details or {},
            )
            session.commit()

    def _get_item_row(self, *, session: Session, item_id: str) -> WorkItemRow:
        row = session.exec(
            select(WorkItemRow).where(WorkItemRow.item_id == item_id),
        ).one_or_none()
        if row is None:
            raise RuntimeError(f"Work item not found: {item_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        item_id: str,
        event_type: str,
        status_from: ItemStatus | None,
        status_to: ItemStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            WorkItemEvent(
                item_id=item_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _to_item_view(row: WorkItemRow) -> WorkItemView:
    command = json.loads(row.command_json) if row.command_json else []
    metadata = json.loads(row.metadata_json) if row.metadata_json else {}
    return WorkItemView(
        item_id=row.item_id,
        name=row.name,
        label=row.label,
        command=tuple(str(part) for part in command),
        metadata=metadata if isinstance(metadata, dict) else {},
        status=ItemStatus(row.status),
        assignment=row.assignment,
        result=RunResult(row.result) if row.result is not None else None,
        log_path=row.log_path,
        error_summary=row.error_summary,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
