"""SQLModel ORM tables for orchestrator storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel

DEFAULT_TRANSCRIPT_RETENTION_DAYS = 90
DEFAULT_REPOSITORY_RETENTION_DAYS = 180
DEFAULT_JOB_RETENTION_DAYS = 30


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    name: str
    # NULL flags predate feature gating; see `TenantStore.backfill_feature_flags`.
    has_meet: bool | None = True
    has_doc: bool | None = False
    has_code: bool | None = False
    # NULL means unlimited retention for the entity class.
    transcript_retention_days: int | None = Field(default=DEFAULT_TRANSCRIPT_RETENTION_DAYS)
    repository_retention_days: int | None = Field(default=DEFAULT_REPOSITORY_RETENTION_DAYS)
    job_retention_days: int | None = Field(default=DEFAULT_JOB_RETENTION_DAYS)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Meeting(SQLModel, table=True):
    __tablename__ = "meetings"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    tenant_id: str = Field(
        sa_column=Column(
            ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    project_id: str | None = Field(default=None, index=True)
    title: str = ""
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    deleted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TranscriptSegment(SQLModel, table=True):
    __tablename__ = "transcript_segments"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    meeting_id: str = Field(
        sa_column=Column(
            ForeignKey("meetings.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tenant_id: str = Field(index=True)
    speaker: str | None = None
    text: str = Field(sa_column=Column(Text, nullable=False))
    start_seconds: float = 0.0
    end_seconds: float = 0.0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    deleted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class CodeRepository(SQLModel, table=True):
    __tablename__ = "repositories"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    tenant_id: str = Field(
        sa_column=Column(
            ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    project_id: str | None = Field(default=None, index=True)
    stack: str | None = None
    is_pinned: bool = False
    last_accessed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    deleted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class MasterJob(SQLModel, table=True):
    __tablename__ = "master_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_master_jobs_tenant_status", "tenant_id", "status"),)

    id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    project_id: str = Field(index=True)
    job_type: str
    status: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    deleted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskJob(SQLModel, table=True):
    __tablename__ = "task_jobs"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    master_job_id: str = Field(
        sa_column=Column(
            ForeignKey("master_jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tenant_id: str = Field(index=True)
    worker: str = Field(index=True)
    position: int = 0
    status: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    depends_on_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    attempts: int = 0
    max_attempts: int = 3
    failure_class: str | None = None
    error_summary: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    deleted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    master_job_id: str = Field(
        sa_column=Column(
            ForeignKey("master_jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_job_id: str | None = Field(default=None, index=True)
    tenant_id: str = Field(index=True)
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueMessage(SQLModel, table=True):
    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_queue_messages_live_job",
            "queue",
            "job_id",
            unique=True,
            sqlite_where=text("state IN ('queued', 'in_flight')"),
        ),
        Index("ix_queue_messages_claim", "queue", "state", "run_after"),
    )

    id: str = Field(primary_key=True)
    queue: str
    job_id: str = Field(index=True)
    tenant_id: str = Field(index=True)
    state: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    attempt: int = 0
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    consumer_id: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
