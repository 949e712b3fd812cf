"""SQLModel ORM tables for work item storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class WorkItemRow(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_items_queue", "status", "created_at"),)

    item_id: str = Field(primary_key=True)
    name: str
    label: str | None = Field(default=None, index=True)
    command_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    # Node name of the one-shot assignment; the only persisted part of the binding.
    assignment: str | None = Field(default=None, index=True)
    result: str | None = None
    log_path: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemEvent(SQLModel, table=True):
    __tablename__ = "work_item_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_item_events_item_time", "item_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    item_id: str = Field(
        sa_column=Column(
            ForeignKey("work_items.item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
