"""Domain models for master/task jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class MasterJobType(str, Enum):
    """Pipeline kinds a tenant can submit."""

    MEETING_PIPELINE = "MEETING_PIPELINE"
    DOCUMENT_PIPELINE = "DOCUMENT_PIPELINE"
    CODE_PIPELINE = "CODE_PIPELINE"


def parse_job_type(value: MasterJobType | str) -> MasterJobType | str:
    """Built-in types map to the enum; registered extensions stay plain strings."""

    try:
        return MasterJobType(value)
    except ValueError:
        return str(value)


def job_type_value(job_type: MasterJobType | str) -> str:
    return job_type.value if isinstance(job_type, MasterJobType) else job_type


class JobStatus(str, Enum):
    """Lifecycle states shared by master and task jobs."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.SUCCESS, JobStatus.FAILED}


class WorkerKind(str, Enum):
    """Worker transforms known to the runtime."""

    TRANSCRIBE = "TRANSCRIBE"
    MEANING = "MEANING"
    DOCUMENT = "DOCUMENT"
    CODEGEN = "CODEGEN"


class FailureClass(str, Enum):
    """Why a task ended FAILED."""

    WORKER_NON_RETRYABLE = "worker_non_retryable"
    DELIVERY_EXHAUSTED = "delivery_exhausted"
    DEPENDENCY_FAILED = "dependency_failed"
    DEPENDENCY_UNRESOLVED = "dependency_unresolved"
    CANCELED = "canceled"


NON_RETRYABLE_FAILURE_CLASSES = frozenset(FailureClass)

MASTER_FAILURE_SUMMARY = "one or more tasks failed"

# Stored form of a symbolic reference to a sibling task's output key.
TASK_OUTPUT_REF_KEY = "$task_output"


@dataclass(slots=True)
class TaskJobCreate:
    """Input for persisting one task of a pipeline."""

    task_id: str
    worker: str
    payload: dict[str, Any]
    depends_on: list[str] = field(default_factory=list)
    position: int = 0
    max_attempts: int = 3


@dataclass(slots=True)
class MasterJobView:
    """Readable master job view."""

    id: str
    tenant_id: str
    project_id: str
    job_type: MasterJobType | str
    status: JobStatus
    payload: dict[str, Any]
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


@dataclass(slots=True)
class TaskJobView:
    """Readable task job view for dispatcher and worker logic."""

    id: str
    master_job_id: str
    tenant_id: str
    worker: str
    position: int
    status: JobStatus
    payload: dict[str, Any]
    result: dict[str, Any] | None
    depends_on: list[str]
    attempts: int
    max_attempts: int
    failure_class: FailureClass | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None

    @property
    def result_key(self) -> str | None:
        if not self.result:
            return None
        value = self.result.get("result_key")
        return value if isinstance(value, str) and value else None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    master_job_id: str
    task_job_id: str | None
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MasterJobDetails:
    """Master job with its tasks and event stream."""

    master: MasterJobView
    tasks: list[TaskJobView]
    events: list[JobEventView]
