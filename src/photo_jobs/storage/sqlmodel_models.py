"""SQLModel ORM tables for the job queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text
from sqlmodel import Field, SQLModel

DEFAULT_TENANT_ID = "user_0"


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_claim", "status", "priority", "created_at"),
        Index("idx_jobs_project", "project_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(default=DEFAULT_TENANT_ID, index=True)
    project_id: int | None = Field(default=None)
    type: str = Field(index=True)
    status: str = Field(index=True)
    priority: int = Field(default=0)
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    attempts: int = Field(default=0)
    max_attempts: int | None = None
    claimed_by: str | None = Field(default=None, index=True)
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    progress_done: int | None = None
    progress_total: int | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_error_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobItem(SQLModel, table=True):
    __tablename__ = "job_items"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_items_job_status", "job_id", "status"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tenant_id: str = Field(default=DEFAULT_TENANT_ID)
    photo_id: int | None = None
    filename: str | None = None
    status: str = Field(default="pending")
    message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
