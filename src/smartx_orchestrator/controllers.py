"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from smartx_orchestrator.access import Role
from smartx_orchestrator.config import Settings
from smartx_orchestrator.dispatcher import AdvanceResult, Dispatcher, SubmitRequest
from smartx_orchestrator.jobs.models import (
    MASTER_FAILURE_SUMMARY,
    JobStatus,
    MasterJobView,
    TaskJobView,
    job_type_value,
)
from smartx_orchestrator.jobs.repository import JobStore
from smartx_orchestrator.queue.broker import QueueBroker, queue_name_for
from smartx_orchestrator.queue.models import BackoffPolicy
from smartx_orchestrator.retention.manager import RetentionManager
from smartx_orchestrator.retention.policies import RetentionPolicy
from smartx_orchestrator.services.blob_store import LocalBlobStore
from smartx_orchestrator.services.completion import (
    CompletionService,
    EchoCompletionService,
    HttpCompletionService,
)
from smartx_orchestrator.tenants.repository import TenantStore
from smartx_orchestrator.workers.runtime import QueueWorker, WorkerRuntime, default_workers


@dataclass(slots=True)
class JobSubmitCommand:
    db_path: Path | None
    tenant_id: str
    project_id: str
    job_type: str
    payload_json: str


@dataclass(slots=True)
class JobRefCommand:
    """CLI input addressing one master job."""

    db_path: Path | None
    tenant_id: str
    master_job_id: str


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    tenant_id: str
    status: str | None
    limit: int


@dataclass(slots=True)
class JobCancelCommand:
    db_path: Path | None
    tenant_id: str
    master_job_id: str
    reason: str
    actor_role: str | None


@dataclass(slots=True)
class TaskRetryCommand:
    db_path: Path | None
    tenant_id: str
    task_id: str
    actor_role: str | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for the queue worker loop."""

    db_path: Path | None
    queues: tuple[str, ...]
    once: bool
    max_tasks: int | None
    max_idle_polls: int


@dataclass(slots=True)
class DbCommand:
    db_path: Path | None


@dataclass(slots=True)
class RetentionSweepCommand:
    db_path: Path | None
    dry_run: bool


@dataclass(slots=True)
class TenantCommand:
    db_path: Path | None
    tenant_id: str


@dataclass(slots=True)
class TenantUpsertCommand:
    db_path: Path | None
    tenant_id: str
    name: str
    has_meet: bool
    has_doc: bool
    has_code: bool


@dataclass(slots=True)
class TenantTierCommand:
    db_path: Path | None
    tenant_id: str
    tier: str


@dataclass(slots=True)
class OrchestratorServices:
    """Opened service handles for one CLI invocation."""

    settings: Settings
    job_store: JobStore
    broker: QueueBroker
    tenants: TenantStore
    dispatcher: Dispatcher


class OrchestratorCliController:
    """Coordinates job, worker, queue, retention and tenant CLI operations."""

    def submit(self, command: JobSubmitCommand) -> list[str]:
        payload = _parse_payload(command.payload_json)
        settings = _settings(command.db_path)
        with _services(settings) as services:
            master = services.dispatcher.submit(
                SubmitRequest(
                    tenant_id=command.tenant_id,
                    project_id=command.project_id,
                    job_type=command.job_type.strip().upper(),
                    payload=payload,
                ),
            )
            tasks = services.job_store.list_tasks_by_master(
                tenant_id=command.tenant_id,
                master_job_id=master.id,
            )
        return [
            f"Master job submitted: id={master.id} type={job_type_value(master.job_type)} "
            f"status={master.status.value}",
            *(_task_line(task) for task in tasks),
        ]

    def advance(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            result = services.dispatcher.advance(
                tenant_id=command.tenant_id,
                master_job_id=command.master_job_id,
            )
        return _advance_lines(result)

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = JobStatus(command.status.strip().upper()) if command.status else None
        with _services(settings) as services:
            masters = services.job_store.list_master_jobs(
                tenant_id=command.tenant_id,
                status=status,
                limit=command.limit,
            )
        lines = [f"Master jobs: {len(masters)}"]
        lines.extend(f"  {_master_line(master)}" for master in masters)
        return lines

    def inspect(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            details = services.job_store.get_master_job_details(
                tenant_id=command.tenant_id,
                master_job_id=command.master_job_id,
            )
        if details is None:
            return [f"Master job not found: {command.master_job_id}"]

        master = details.master
        lines = [
            f"Master job: {master.id}",
            f"Type: {job_type_value(master.job_type)}",
            f"Project: {master.project_id}",
            f"Status: {master.status.value}",
            f"Error: {MASTER_FAILURE_SUMMARY if master.status == JobStatus.FAILED else '-'}",
            f"Deleted: {master.deleted_at.isoformat() if master.deleted_at else '-'}",
            f"Result: {json.dumps(master.result, sort_keys=True) if master.result else '-'}",
            f"Tasks: {len(details.tasks)}",
        ]
        lines.extend(_task_line(task) for task in details.tasks)
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}"
                f"{' task=' + event.task_job_id if event.task_job_id else ''}",
            )
        return lines

    def cancel(self, command: JobCancelCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            master = services.dispatcher.cancel(
                tenant_id=command.tenant_id,
                master_job_id=command.master_job_id,
                reason=command.reason,
                actor_role=_role(command.actor_role),
            )
        return [f"Master job canceled: {_master_line(master)}"]

    def retry_task(self, command: TaskRetryCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            result = services.dispatcher.retry_task(
                tenant_id=command.tenant_id,
                task_id=command.task_id,
                actor_role=_role(command.actor_role),
            )
        return [f"Task reset for retry: {command.task_id}", *_advance_lines(result)]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        settings.validate_for_completion()
        queues = list(command.queues) or [
            queue_name_for(kind, prefix=settings.queue.prefix) for kind in default_workers()
        ]
        with _services(settings) as services, _completion(settings) as completion:
            runtime = WorkerRuntime(
                job_store=services.job_store,
                dispatcher=services.dispatcher,
                blob_store=LocalBlobStore(settings.blob_root),
                completion=completion,
                consumer_id=settings.worker.worker_id,
            )
            worker = QueueWorker(
                broker=services.broker,
                runtime=runtime,
                queues=queues,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                visibility_timeout_seconds=settings.queue.visibility_timeout_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            f"Worker {settings.worker.worker_id} on {', '.join(queues)}",
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"skipped={summary.skipped} idle_polls={summary.idle_polls}",
        ]

    def queue_stats(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            stats = services.broker.queue_stats()
        if not stats:
            return ["Queues: empty"]
        lines = ["Queues:"]
        for item in stats:
            oldest = item.oldest_created_at.isoformat() if item.oldest_created_at else "-"
            lines.append(
                f"  {item.queue} state={item.state.value} count={item.count} oldest={oldest}",
            )
        return lines

    def retention_sweep(self, command: RetentionSweepCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            manager = RetentionManager(job_store=services.job_store, tenants=services.tenants)
            result = manager.sweep(dry_run=command.dry_run)

        mode = " (dry run)" if result.dry_run else ""
        removed = (
            f"would_delete={result.candidates}" if result.dry_run else f"deleted={result.deleted}"
        )
        lines = [
            f"Retention sweep{mode} at {result.now.isoformat()}: "
            f"candidates={result.candidates} {removed} failed={result.failed}",
        ]
        for item in result.sweeps:
            lines.append(
                f"  tenant={item.tenant_id} {item.entity.value} window={item.window_days}d "
                f"candidates={item.candidates} deleted={item.deleted} failed={item.failed}",
            )
        for skipped in result.skipped:
            lines.append(
                f"  tenant={skipped.tenant_id} {skipped.entity.value} skipped ({skipped.reason})",
            )
        return lines

    def retention_stats(self, command: TenantCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            manager = RetentionManager(job_store=services.job_store, tenants=services.tenants)
            stats = manager.statistics(command.tenant_id)
        jobs = " ".join(
            f"{status}={count}" for status, count in sorted(stats.jobs_by_status.items())
        )
        return [
            f"Tenant: {stats.tenant_id}",
            f"Policy: {_policy_text(stats.policy)}",
            f"Meetings: active={stats.meetings_active} deleted={stats.meetings_deleted}",
            f"Transcript segments: active={stats.segments_active} "
            f"deleted={stats.segments_deleted}",
            f"Repositories: pinned={stats.repositories_pinned} "
            f"unpinned={stats.repositories_unpinned} deleted={stats.repositories_deleted}",
            f"Jobs: {jobs or '-'} deleted={stats.jobs_deleted}",
        ]

    def upsert_tenant(self, command: TenantUpsertCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            tenant = services.tenants.upsert_tenant(
                tenant_id=command.tenant_id,
                name=command.name,
                has_meet=command.has_meet,
                has_doc=command.has_doc,
                has_code=command.has_code,
            )
        return [
            f"Tenant saved: id={tenant.id} name={tenant.name} meet={tenant.has_meet} "
            f"doc={tenant.has_doc} code={tenant.has_code}",
            f"Policy: {_policy_text(tenant.retention)}",
        ]

    def list_tenants(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            tenants = services.tenants.list_tenants()
        lines = [f"Tenants: {len(tenants)}"]
        lines.extend(
            f"  {tenant.id} name={tenant.name} meet={tenant.has_meet} doc={tenant.has_doc} "
            f"code={tenant.has_code} {_policy_text(tenant.retention)}"
            for tenant in tenants
        )
        return lines

    def apply_tier(self, command: TenantTierCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            tenant = services.tenants.apply_retention_tier(
                tenant_id=command.tenant_id,
                tier=command.tier.strip().lower(),
            )
        return [f"Tenant {tenant.id} retention: {_policy_text(tenant.retention)}"]

    def backfill_features(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            updated = services.tenants.backfill_feature_flags()
        lines = [f"Tenants backfilled: {len(updated)}"]
        lines.extend(f"  {tenant_id}" for tenant_id in updated)
        return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_payload(raw: str) -> dict[str, object]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"--payload is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError("--payload must be a JSON object.")
    return payload


def _role(value: str | None) -> Role | None:
    if value is None:
        return None
    return Role(value.strip().lower())


def _master_line(master: MasterJobView) -> str:
    return (
        f"{master.id} type={job_type_value(master.job_type)} status={master.status.value} "
        f"project={master.project_id} updated_at={master.updated_at.isoformat()}"
    )


def _task_line(task: TaskJobView) -> str:
    failure = (
        f" failure={task.failure_class.value}: {task.error_summary or '-'}"
        if task.failure_class is not None
        else ""
    )
    result_key = f" result_key={task.result_key}" if task.result_key else ""
    return (
        f"  task {task.id} [{task.position}] {task.worker} status={task.status.value} "
        f"attempts={task.attempts}/{task.max_attempts}{result_key}{failure}"
    )


def _advance_lines(result: AdvanceResult) -> list[str]:
    return [
        f"Master {result.master.id}: status={result.master.status.value}",
        f"  enqueued={len(result.enqueued)} short_circuited={len(result.short_circuited)} "
        f"unresolved={len(result.unresolved)} deferred={len(result.deferred)}",
    ]


def _policy_text(policy: RetentionPolicy) -> str:
    def _days(value: int | None) -> str:
        return "unlimited" if value is None else f"{value}d"

    return (
        f"transcripts={_days(policy.transcript_days)} "
        f"repositories={_days(policy.repository_days)} jobs={_days(policy.job_days)}"
    )


@contextmanager
def _services(settings: Settings) -> Iterator[OrchestratorServices]:
    job_store = JobStore(settings.db_path)
    job_store.init_schema()
    broker = QueueBroker(settings.db_path)
    tenants = TenantStore(settings.db_path, default_policy=settings.default_retention)
    try:
        yield OrchestratorServices(
            settings=settings,
            job_store=job_store,
            broker=broker,
            tenants=tenants,
            dispatcher=Dispatcher(
                job_store=job_store,
                broker=broker,
                tenants=tenants,
                queue_prefix=settings.queue.prefix,
                backoff=BackoffPolicy(
                    base_seconds=settings.queue.backoff_base_seconds,
                    max_seconds=settings.queue.backoff_max_seconds,
                ),
                task_max_attempts=settings.queue.task_max_attempts,
            ),
        )
    finally:
        tenants.close()
        broker.close()
        job_store.close()


@contextmanager
def _completion(settings: Settings) -> Iterator[CompletionService]:
    if settings.completion.provider == "echo":
        yield EchoCompletionService()
        return
    service = HttpCompletionService(
        api_key=settings.completion.api_key,
        base_url=settings.completion.base_url,
        model=settings.completion.model,
        temperature=settings.completion.temperature,
        max_tokens=settings.completion.max_tokens,
        timeout_seconds=settings.completion.timeout_seconds,
        max_retries=settings.completion.max_retries,
    )
    try:
        yield service
    finally:
        service.close()
