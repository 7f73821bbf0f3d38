"""CLI entrypoint for smartx orchestrator."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from smartx_orchestrator import __version__
from smartx_orchestrator.access import Role
from smartx_orchestrator.config import LOG_LEVELS
from smartx_orchestrator.controllers import (
    DbCommand,
    JobCancelCommand,
    JobListCommand,
    JobRefCommand,
    JobSubmitCommand,
    OrchestratorCliController,
    RetentionSweepCommand,
    TaskRetryCommand,
    TenantCommand,
    TenantTierCommand,
    TenantUpsertCommand,
    WorkerRunCommand,
)
from smartx_orchestrator.errors import SmartxError
from smartx_orchestrator.jobs.models import JobStatus, MasterJobType
from smartx_orchestrator.retention.policies import RetentionTier

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestratorCliController()

_ROLE_CHOICE = click.Choice([role.value for role in Role], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="smartx")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Log level; defaults to SMARTX_LOG_LEVEL or INFO.",
)
def smartx(log_level: str | None) -> None:
    """Multi-tenant AI pipeline orchestrator CLI."""

    level = (log_level or os.getenv("SMARTX_LOG_LEVEL", "INFO")).strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@smartx.group()
def jobs() -> None:
    """Master job commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant that owns the job.")
@click.option("--project-id", required=True, help="Project the job belongs to.")
@click.option(
    "--type",
    "job_type",
    type=click.Choice([item.value for item in MasterJobType], case_sensitive=False),
    required=True,
    help="Pipeline type.",
)
@click.option(
    "--payload",
    "payload_json",
    default="{}",
    show_default=True,
    help="Pipeline payload as a JSON object.",
)
def jobs_submit(
    db_path: Path | None,
    tenant_id: str,
    project_id: str,
    job_type: str,
    payload_json: str,
) -> None:
    """Submit a pipeline and enqueue its first eligible tasks.

    Example `MEETING_PIPELINE` payload:
    `{"meeting_id": "m1", "audio_file_key": "audio/m1.wav"}`.
    """

    _run(
        CONTROLLER.submit,
        JobSubmitCommand(
            db_path=db_path,
            tenant_id=tenant_id,
            project_id=project_id,
            job_type=job_type,
            payload_json=payload_json,
        ),
    )


@jobs.command("advance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant that owns the job.")
@click.option("--master-job-id", required=True, help="Master job id.")
def jobs_advance(db_path: Path | None, tenant_id: str, master_job_id: str) -> None:
    """Re-run dispatch for a master job, for example after a broker outage."""

    _run(
        CONTROLLER.advance,
        JobRefCommand(db_path=db_path, tenant_id=tenant_id, master_job_id=master_job_id),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant to list jobs for.")
@click.option(
    "--status",
    type=click.Choice([item.value for item in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum number of jobs to show.",
)
def jobs_list(db_path: Path | None, tenant_id: str, status: str | None, limit: int) -> None:
    """List master jobs of a tenant, newest first."""

    _run(
        CONTROLLER.list_jobs,
        JobListCommand(db_path=db_path, tenant_id=tenant_id, status=status, limit=limit),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant that owns the job.")
@click.option("--master-job-id", required=True, help="Master job id.")
def jobs_inspect(db_path: Path | None, tenant_id: str, master_job_id: str) -> None:
    """Show a master job with its tasks and event history."""

    _run(
        CONTROLLER.inspect,
        JobRefCommand(db_path=db_path, tenant_id=tenant_id, master_job_id=master_job_id),
    )


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant that owns the job.")
@click.option("--master-job-id", required=True, help="Master job id.")
@click.option(
    "--reason",
    default="canceled by operator",
    show_default=True,
    help="Reason recorded on canceled tasks.",
)
@click.option("--role", "actor_role", type=_ROLE_CHOICE, default=None, help="Caller role.")
def jobs_cancel(
    db_path: Path | None,
    tenant_id: str,
    master_job_id: str,
    reason: str,
    actor_role: str | None,
) -> None:
    """Fail all PENDING tasks of a master job."""

    _run(
        CONTROLLER.cancel,
        JobCancelCommand(
            db_path=db_path,
            tenant_id=tenant_id,
            master_job_id=master_job_id,
            reason=reason,
            actor_role=actor_role,
        ),
    )


@jobs.command("retry-task")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant that owns the task.")
@click.option("--task-id", required=True, help="FAILED task id to retry.")
@click.option("--role", "actor_role", type=_ROLE_CHOICE, default=None, help="Caller role.")
def jobs_retry_task(
    db_path: Path | None,
    tenant_id: str,
    task_id: str,
    actor_role: str | None,
) -> None:
    """Reset a FAILED task and its short-circuited dependents, then dispatch."""

    _run(
        CONTROLLER.retry_task,
        TaskRetryCommand(
            db_path=db_path,
            tenant_id=tenant_id,
            task_id=task_id,
            actor_role=actor_role,
        ),
    )


@smartx.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--queue",
    "queues",
    multiple=True,
    help="Queue to consume, for example smartx:meaning. Can be repeated. Defaults to all.",
)
@click.option("--once", is_flag=True, default=False, help="Process at most one message.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many messages.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls.",
)
def worker_run(
    db_path: Path | None,
    queues: tuple[str, ...],
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
) -> None:
    """Consume worker queues and execute tasks."""

    _run(
        CONTROLLER.run_worker,
        WorkerRunCommand(
            db_path=db_path,
            queues=queues,
            once=once,
            max_tasks=max_tasks,
            max_idle_polls=max_idle_polls,
        ),
    )


@smartx.group()
def queue() -> None:
    """Queue broker commands."""


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_stats(db_path: Path | None) -> None:
    """Show message counts per queue and state."""

    _run(CONTROLLER.queue_stats, DbCommand(db_path=db_path))


@smartx.group()
def retention() -> None:
    """Retention commands."""


@retention.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Report what would be deleted without deleting.",
)
def retention_sweep(db_path: Path | None, dry_run: bool) -> None:
    """Soft-delete content past each tenant's retention window."""

    _run(CONTROLLER.retention_sweep, RetentionSweepCommand(db_path=db_path, dry_run=dry_run))


@retention.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant to report on.")
def retention_stats(db_path: Path | None, tenant_id: str) -> None:
    """Show active and soft-deleted counts for a tenant."""

    _run(CONTROLLER.retention_stats, TenantCommand(db_path=db_path, tenant_id=tenant_id))


@smartx.group()
def tenants() -> None:
    """Tenant commands."""


@tenants.command("upsert")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant id.")
@click.option("--name", required=True, help="Display name.")
@click.option("--meet/--no-meet", default=True, show_default=True, help="Meeting pipelines.")
@click.option("--doc/--no-doc", default=False, show_default=True, help="Document pipelines.")
@click.option("--code/--no-code", default=False, show_default=True, help="Code pipelines.")
def tenants_upsert(  # noqa: PLR0913
    db_path: Path | None,
    tenant_id: str,
    name: str,
    meet: bool,
    doc: bool,
    code: bool,
) -> None:
    """Create or update a tenant and its feature flags."""

    _run(
        CONTROLLER.upsert_tenant,
        TenantUpsertCommand(
            db_path=db_path,
            tenant_id=tenant_id,
            name=name,
            has_meet=meet,
            has_doc=doc,
            has_code=code,
        ),
    )


@tenants.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tenants_list(db_path: Path | None) -> None:
    """List tenants with feature flags and retention windows."""

    _run(CONTROLLER.list_tenants, DbCommand(db_path=db_path))


@tenants.command("apply-tier")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant id.")
@click.option(
    "--tier",
    type=click.Choice([item.value for item in RetentionTier], case_sensitive=False),
    required=True,
    help="Retention tier preset.",
)
def tenants_apply_tier(db_path: Path | None, tenant_id: str, tier: str) -> None:
    """Apply a retention tier preset to a tenant."""

    _run(
        CONTROLLER.apply_tier,
        TenantTierCommand(db_path=db_path, tenant_id=tenant_id, tier=tier),
    )


@tenants.command("backfill-features")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tenants_backfill_features(db_path: Path | None) -> None:
    """Fill unset feature flags with defaults."""

    _run(CONTROLLER.backfill_features, DbCommand(db_path=db_path))


def _run(handler: Callable[[Any], list[str]], command: object) -> None:
    try:
        lines = handler(command)
    except (SmartxError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    smartx()
