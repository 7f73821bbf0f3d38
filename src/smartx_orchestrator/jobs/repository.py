"""Tenant-scoped persistence for master jobs, task jobs and their events."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, func, select

from smartx_orchestrator.errors import InvalidTransition, JobNotFound
from smartx_orchestrator.jobs.models import (
    FailureClass,
    JobEventView,
    JobStatus,
    MasterJobDetails,
    MasterJobType,
    MasterJobView,
    TaskJobCreate,
    TaskJobView,
    job_type_value,
    parse_job_type,
)
from smartx_orchestrator.storage.alembic_runner import upgrade_head
from smartx_orchestrator.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    dump_json,
    load_json_dict,
    load_json_list,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from smartx_orchestrator.storage.sqlmodel_models import JobEvent, MasterJob, TaskJob

_OPEN_TASK_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)
_TERMINAL_STATUSES = (JobStatus.SUCCESS.value, JobStatus.FAILED.value)


class JobStore:
    """Master/task job persistence backed by SQLModel + SQLite.

    Every query filters by tenant id; a row owned by another tenant reads as missing.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_master_job(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        project_id: str,
        job_type: MasterJobType | str,
        payload: dict[str, Any],
        tasks: Sequence[TaskJobCreate] = (),
        master_job_id: str | None = None,
    ) -> MasterJobView:
        """Create a PENDING master job, optionally with its tasks in the same transaction."""

        now = to_db_datetime(utc_now())
        job_id = master_job_id or str(uuid4())
        with Session(self.engine) as session:
            row = MasterJob(
                id=job_id,
                tenant_id=tenant_id,
                project_id=project_id,
                job_type=job_type_value(job_type),
                status=JobStatus.PENDING.value,
                payload_json=dump_json(payload),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # Parent row must exist before task rows reference it.
            session.flush()
            self._add_event(
                session=session,
                tenant_id=tenant_id,
                master_job_id=job_id,
                task_job_id=None,
                event_type="master_created",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={"job_type": job_type_value(job_type), "project_id": project_id},
            )
            for task in tasks:
                self._insert_task(
                    session=session,
                    tenant_id=tenant_id,
                    master_job_id=job_id,
                    task=task,
                    now=now,
                )
            session.commit()
            session.refresh(row)
            return _to_master_view(row)

    def create_task_job(  # noqa: PLR0913
        self,
        *,
        master_job_id: str,
        tenant_id: str,
        worker: str,
        payload: dict[str, Any],
        depends_on: Sequence[str] = (),
        max_attempts: int = 3,
        task_id: str | None = None,
    ) -> TaskJobView:
        """Append one PENDING task to an existing master job."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            master = self._get_master_row(
                session=session,
                tenant_id=tenant_id,
                master_job_id=master_job_id,
            )
            if master.deleted_at is not None:
                raise InvalidTransition(f"Master job is deleted: {master_job_id}")
            position = session.exec(
                select(func.count())
                .select_from(TaskJob)
                .where(TaskJob.master_job_id == master_job_id),
            ).one()
            row = self._insert_task(
                session=session,
                tenant_id=tenant_id,
                master_job_id=master_job_id,
                task=TaskJobCreate(
                    task_id=task_id or str(uuid4()),
                    worker=worker,
                    payload=payload,
                    depends_on=list(depends_on),
                    position=int(position),
                    max_attempts=max_attempts,
                ),
                now=now,
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_master_job(
        self,
        *,
        tenant_id: str,
        master_job_id: str,
        include_deleted: bool = False,
    ) -> MasterJobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(MasterJob).where(
                    MasterJob.id == master_job_id,
                    MasterJob.tenant_id == tenant_id,
                ),
            ).one_or_none()
        if row is None or (row.deleted_at is not None and not include_deleted):
            return None
        return _to_master_view(row)

    def get_task_job(
        self,
        *,
        tenant_id: str,
        task_id: str,
        include_deleted: bool = False,
    ) -> TaskJobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskJob).where(
                    TaskJob.id == task_id,
                    TaskJob.tenant_id == tenant_id,
                ),
            ).one_or_none()
        if row is None or (row.deleted_at is not None and not include_deleted):
            return None
        return _to_task_view(row)

    def list_tasks_by_master(
        self,
        *,
        tenant_id: str,
        master_job_id: str,
        include_deleted: bool = False,
    ) -> list[TaskJobView]:
        """Tasks of one master job in pipeline definition order."""

        with Session(self.engine) as session:
            statement = (
                select(TaskJob)
                .where(
                    TaskJob.master_job_id == master_job_id,
                    TaskJob.tenant_id == tenant_id,
                )
                .order_by(col(TaskJob.position).asc(), col(TaskJob.created_at).asc())
            )
            if not include_deleted:
                statement = statement.where(col(TaskJob.deleted_at).is_(None))
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_master_jobs(
        self,
        *,
        tenant_id: str,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[MasterJobView]:
        """List recent master jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(MasterJob)
                .where(
                    MasterJob.tenant_id == tenant_id,
                    col(MasterJob.deleted_at).is_(None),
                )
                .order_by(col(MasterJob.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(MasterJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_master_view(row) for row in rows]

    def get_master_job_details(
        self,
        *,
        tenant_id: str,
        master_job_id: str,
    ) -> MasterJobDetails | None:
        """Return master job with tasks and event stream, including soft-deleted ones."""

        master = self.get_master_job(
            tenant_id=tenant_id,
            master_job_id=master_job_id,
            include_deleted=True,
        )
        if master is None:
            return None
        tasks = self.list_tasks_by_master(
            tenant_id=tenant_id,
            master_job_id=master_job_id,
            include_deleted=True,
        )
        return MasterJobDetails(
            master=master,
            tasks=tasks,
            events=self.list_events(tenant_id=tenant_id, master_job_id=master_job_id),
        )

    def list_events(self, *, tenant_id: str, master_job_id: str) -> list[JobEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobEvent)
                .where(
                    JobEvent.master_job_id == master_job_id,
                    JobEvent.tenant_id == tenant_id,
                )
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
        return [
            JobEventView(
                event_id=row.id or 0,
                master_job_id=row.master_job_id,
                task_job_id=row.task_job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_dict(row.details_json),
            )
            for row in rows
        ]

    def mark_task_dispatched(
        self,
        *,
        tenant_id: str,
        task_id: str,
        resolved_payload: dict[str, Any],
        queue: str,
    ) -> bool:
        """Move a PENDING task to RUNNING after its message was enqueued."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, tenant_id=tenant_id, task_id=task_id)
            result = session.exec(
                sa_update(TaskJob)
                .where(
                    col(TaskJob.id) == task_id,
                    col(TaskJob.tenant_id) == tenant_id,
                    col(TaskJob.status) == JobStatus.PENDING.value,
                    col(TaskJob.deleted_at).is_(None),
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    payload_json=dump_json(resolved_payload),
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                tenant_id=tenant_id,
                master_job_id=row.master_job_id,
                task_job_id=task_id,
                event_type="task_dispatched",
                status_from=JobStatus.PENDING,
                status_to=JobStatus.RUNNING,
                details={"queue": queue},
            )
            session.commit()
            return True

    def record_task_attempt(self, *, tenant_id: str, task_id: str, consumer_id: str) -> int | None:
        """Count one execution attempt; returns the new attempt number."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, tenant_id=tenant_id, task_id=task_id)
            result = session.exec(
                sa_update(TaskJob)
                .where(
                    col(TaskJob.id) == task_id,
                    col(TaskJob.tenant_id) == tenant_id,
                    col(TaskJob.status).in_(_OPEN_TASK_STATUSES),
                    col(TaskJob.deleted_at).is_(None),
                )
                .values(attempts=col(TaskJob.attempts) + 1, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            attempts = row.attempts + 1
            self._add_event(
                session=session,
                tenant_id=tenant_id,
                master_job_id=row.master_job_id,
                task_job_id=task_id,
                event_type="attempt_started",
                status_from=None,
                status_to=None,
                details={"attempt": attempts, "consumer_id": consumer_id},
            )
            session.commit()
            return attempts

    def update_task_status(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        task_id: str,
        status: JobStatus,
        result: dict[str, Any] | None = None,
        failure_class: FailureClass | None = None,
        error_summary: str | None = None,
        event_details: dict[str, object] | None = None,
    ) -> TaskJobView:
        """Apply a terminal transition to an open task.

        The result is written once: a task already SUCCESS or FAILED raises
        `InvalidTransition` and keeps its stored result. `event_details` are
        merged into the transition event.
        """

        if status not in {JobStatus.SUCCESS, JobStatus.FAILED}:
            raise ValueError(f"Unsupported terminal status: {status}")
        if status == JobStatus.FAILED and failure_class is None:
            failure_class = FailureClass.WORKER_NON_RETRYABLE

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, tenant_id=tenant_id, task_id=task_id)
            previous = JobStatus(row.status)
            values: dict[str, Any] = {"status": status.value, "updated_at": now}
            if status == JobStatus.SUCCESS:
                values.update(
                    result_json=dump_json(result or {}),
                    failure_class=None,
                    error_summary=None,
                )
            else:
                values.update(
                    failure_class=failure_class.value if failure_class is not None else None,
                    error_summary=error_summary,
                )
            updated = session.exec(
                sa_update(TaskJob)
                .where(
                    col(TaskJob.id) == task_id,
                    col(TaskJob.tenant_id) == tenant_id,
                    col(TaskJob.status).in_(_OPEN_TASK_STATUSES),
                )
                .values(**values),
            )
            if updated.rowcount != 1:
                session.rollback()
                raise InvalidTransition(
                    f"Task {task_id} is already {previous.value}; cannot move to {status.value}.",
                )
            details: dict[str, object] = dict(event_details or {})
            if status == JobStatus.SUCCESS:
                details["result_key"] = (result or {}).get("result_key")
            else:
                details["failure_class"] = values["failure_class"]
                details["error_summary"] = error_summary
            self._add_event(
                session=session,
                tenant_id=tenant_id,
                master_job_id=row.master_job_id,
                task_job_id=task_id,
                event_type="task_succeeded" if status == JobStatus.SUCCESS else "task_failed",
                status_from=previous,
                status_to=status,
                details=details,
            )
            session.commit()
            refreshed = self._get_task_row(session=session, tenant_id=tenant_id, task_id=task_id)
            return _to_task_view(refreshed)

    def reset_task_for_retry(self, *, tenant_id: str, task_id: str) -> bool:
        """Compensating path: FAILED task back to PENDING with a fresh attempt budget."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, tenant_id=tenant_id, task_id=task_id)
            values: dict[str, Any] = {
                "status": JobStatus.PENDING.value,
                "attempts": 0,
                "result_json": None,
                "failure_class": None,
                "error_summary": None,
                "updated_at": now,
            }
            result = session.exec(
                sa_update(TaskJob)
                .where(
                    col(TaskJob.id) == task_id,
                    col(TaskJob.tenant_id) == tenant_id,
                    col(TaskJob.status) == JobStatus.FAILED.value,
                    col(TaskJob.deleted_at).is_(None),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                tenant_id=tenant_id,
                master_job_id=row.master_job_id,
                task_job_id=task_id,
                event_type="manual_retry",
                status_from=JobStatus.FAILED,
                status_to=JobStatus.PENDING,
                details={"previous_failure_class": row.failure_class},
            )
            session.commit()
            return True

    def update_master_status(
        self,
        *,
        tenant_id: str,
        master_job_id: str,
        status: JobStatus,
        result: dict[str, Any] | None = None,
    ) -> MasterJobView:
        """Store a recomputed master status; result is kept only for SUCCESS."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_master_row(
                session=session,
                tenant_id=tenant_id,
                master_job_id=master_job_id,
            )
            previous = JobStatus(row.status)
            result_json = dump_json(result or {}) if status == JobStatus.SUCCESS else None
            if previous == status and row.result_json == result_json:
                return _to_master_view(row)
            row.status = status.value
            row.result_json = result_json
            row.updated_at = now
            session.add(row)
            if previous != status:
                self._add_event(
                    session=session,
                    tenant_id=tenant_id,
                    master_job_id=master_job_id,
                    task_job_id=None,
                    event_type="master_status_changed",
                    status_from=previous,
                    status_to=status,
                    details={},
                )
            session.commit()
            session.refresh(row)
            return _to_master_view(row)

    def soft_delete_master_job(
        self,
        *,
        tenant_id: str,
        master_job_id: str,
        terminal_only: bool = True,
        deleted_at: datetime | None = None,
    ) -> bool:
        """Soft-delete a master job and all its tasks in one transaction."""

        stamp = to_db_datetime(deleted_at or utc_now())
        with Session(self.engine) as session:
            statement = sa_update(MasterJob).where(
                col(MasterJob.id) == master_job_id,
                col(MasterJob.tenant_id) == tenant_id,
                col(MasterJob.deleted_at).is_(None),
            )
            if terminal_only:
                statement = statement.where(col(MasterJob.status).in_(_TERMINAL_STATUSES))
            result = session.exec(statement.values(deleted_at=stamp))
            if result.rowcount != 1:
                session.rollback()
                return False
            tasks = session.exec(
                sa_update(TaskJob)
                .where(
                    col(TaskJob.master_job_id) == master_job_id,
                    col(TaskJob.tenant_id) == tenant_id,
                    col(TaskJob.deleted_at).is_(None),
                )
                .values(deleted_at=stamp),
            )
            self._add_event(
                session=session,
                tenant_id=tenant_id,
                master_job_id=master_job_id,
                task_job_id=None,
                event_type="master_soft_deleted",
                status_from=None,
                status_to=None,
                details={"tasks_deleted": tasks.rowcount},
            )
            session.commit()
            return True

    def add_event(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        master_job_id: str,
        task_job_id: str | None,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append a free-form audit event."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                tenant_id=tenant_id,
                master_job_id=master_job_id,
                task_job_id=task_job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def _insert_task(
        self,
        *,
        session: Session,
        tenant_id: str,
        master_job_id: str,
        task: TaskJobCreate,
        now: datetime,
    ) -> TaskJob:
        row = TaskJob(
            id=task.task_id,
            master_job_id=master_job_id,
            tenant_id=tenant_id,
            worker=task.worker,
            position=task.position,
            status=JobStatus.PENDING.value,
            payload_json=dump_json(task.payload),
            depends_on_json=dump_json(list(task.depends_on)),
            attempts=0,
            max_attempts=task.max_attempts,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        self._add_event(
            session=session,
            tenant_id=tenant_id,
            master_job_id=master_job_id,
            task_job_id=task.task_id,
            event_type="task_created",
            status_from=None,
            status_to=JobStatus.PENDING,
            details={"worker": task.worker, "depends_on": list(task.depends_on)},
        )
        return row

    def _get_master_row(
        self,
        *,
        session: Session,
        tenant_id: str,
        master_job_id: str,
    ) -> MasterJob:
        row = session.exec(
            select(MasterJob).where(
                MasterJob.id == master_job_id,
                MasterJob.tenant_id == tenant_id,
            ),
        ).one_or_none()
        if row is None:
            raise JobNotFound(master_job_id)
        return row

    def _get_task_row(self, *, session: Session, tenant_id: str, task_id: str) -> TaskJob:
        row = session.exec(
            select(TaskJob).where(
                TaskJob.id == task_id,
                TaskJob.tenant_id == tenant_id,
            ),
        ).one_or_none()
        if row is None:
            raise JobNotFound(task_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        tenant_id: str,
        master_job_id: str,
        task_job_id: str | None,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                master_job_id=master_job_id,
                task_job_id=task_job_id,
                tenant_id=tenant_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_master_view(row: MasterJob) -> MasterJobView:
    return MasterJobView(
        id=row.id,
        tenant_id=row.tenant_id,
        project_id=row.project_id,
        job_type=parse_job_type(row.job_type),
        status=JobStatus(row.status),
        payload=load_json_dict(row.payload_json),
        result=load_json_dict(row.result_json) if row.result_json is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        deleted_at=optional_utc(row.deleted_at),
    )


def _to_task_view(row: TaskJob) -> TaskJobView:
    return TaskJobView(
        id=row.id,
        master_job_id=row.master_job_id,
        tenant_id=row.tenant_id,
        worker=row.worker,
        position=row.position,
        status=JobStatus(row.status),
        payload=load_json_dict(row.payload_json),
        result=load_json_dict(row.result_json) if row.result_json is not None else None,
        depends_on=[str(item) for item in load_json_list(row.depends_on_json)],
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        deleted_at=optional_utc(row.deleted_at),
    )
