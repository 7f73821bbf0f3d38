"""Dependency-aware dispatch of pipeline tasks onto worker queues.

`advance` is idempotent and commutative: enqueue is keyed by task id, every
status change is a conditional update, and the master status is recomputed
from task rows. Any number of workers may call it concurrently for one master.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from smartx_orchestrator.access import Capability, Role, require_capability
from smartx_orchestrator.errors import (
    DependencyResolutionError,
    FeatureNotEnabled,
    InvalidTransition,
    JobNotFound,
    QueueBrokerError,
    QueueDeliveryExhausted,
)
from smartx_orchestrator.jobs.models import (
    MASTER_FAILURE_SUMMARY,
    TASK_OUTPUT_REF_KEY,
    FailureClass,
    JobStatus,
    MasterJobType,
    MasterJobView,
    TaskJobCreate,
    TaskJobView,
    job_type_value,
    parse_job_type,
)
from smartx_orchestrator.jobs.repository import JobStore
from smartx_orchestrator.jobs.state import (
    blocked_by_failure,
    build_master_result,
    dependencies_satisfied,
    derive_master_status,
    transitive_dependents,
)
from smartx_orchestrator.pipelines.registry import (
    PipelineRegistry,
    default_registry,
    replace_output_refs,
)
from smartx_orchestrator.queue.broker import DEFAULT_QUEUE_PREFIX, QueueBroker, queue_name_for
from smartx_orchestrator.queue.models import BackoffPolicy, EnqueueOptions
from smartx_orchestrator.tenants.repository import FEATURE_BY_JOB_TYPE, TenantStore

logger = logging.getLogger(__name__)

_RETRY_RESETTABLE = frozenset({FailureClass.DEPENDENCY_FAILED, FailureClass.DEPENDENCY_UNRESOLVED})


@dataclass(slots=True)
class SubmitRequest:
    tenant_id: str
    project_id: str
    job_type: MasterJobType | str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AdvanceResult:
    """What one `advance` call changed."""

    master: MasterJobView
    enqueued: list[str] = field(default_factory=list)
    short_circuited: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)


class Dispatcher:
    """Creates pipelines, releases eligible tasks and folds task outcomes into masters."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        job_store: JobStore,
        broker: QueueBroker,
        tenants: TenantStore,
        registry: PipelineRegistry | None = None,
        queue_prefix: str = DEFAULT_QUEUE_PREFIX,
        backoff: BackoffPolicy | None = None,
        task_max_attempts: int | None = None,
    ) -> None:
        self.job_store = job_store
        self.broker = broker
        self.tenants = tenants
        self.registry = registry or default_registry()
        self.queue_prefix = queue_prefix
        self.backoff = backoff or BackoffPolicy()
        self.task_max_attempts = task_max_attempts
        broker.add_dead_letter_handler(self.on_delivery_exhausted)

    def submit(self, request: SubmitRequest) -> MasterJobView:
        """Validate, persist the master with all tasks PENDING, then advance."""

        definition = self.registry.definition_for(request.job_type)
        templates = definition.build(request.payload)
        job_type = parse_job_type(definition.job_type)

        tenant = self.tenants.require_tenant(request.tenant_id)
        feature = FEATURE_BY_JOB_TYPE.get(job_type_value(job_type))
        if feature is not None and not tenant.feature_enabled(feature):
            raise FeatureNotEnabled(request.tenant_id, feature)

        task_ids = [str(uuid4()) for _ in templates]
        tasks = [
            TaskJobCreate(
                task_id=task_ids[index],
                worker=template.worker,
                payload=replace_output_refs(template.payload, task_ids),
                depends_on=[task_ids[dependency] for dependency in template.depends_on],
                position=index,
                max_attempts=self.task_max_attempts or template.max_attempts,
            )
            for index, template in enumerate(templates)
        ]
        master = self.job_store.create_master_job(
            tenant_id=request.tenant_id,
            project_id=request.project_id,
            job_type=job_type,
            payload=dict(request.payload),
            tasks=tasks,
        )
        logger.info(
            "Submitted %s master %s for tenant %s with %d tasks",
            job_type_value(job_type),
            master.id,
            request.tenant_id,
            len(tasks),
        )
        return self.advance(tenant_id=request.tenant_id, master_job_id=master.id).master

    def advance(self, *, tenant_id: str, master_job_id: str) -> AdvanceResult:
        master = self.job_store.get_master_job(tenant_id=tenant_id, master_job_id=master_job_id)
        if master is None:
            raise JobNotFound(master_job_id)
        result = AdvanceResult(master=master)

        result.short_circuited.extend(
            self._short_circuit(tenant_id=tenant_id, master_job_id=master_job_id),
        )

        tasks = self.job_store.list_tasks_by_master(
            tenant_id=tenant_id,
            master_job_id=master_job_id,
        )
        tasks_by_id = {task.id: task for task in tasks}
        # A finished master releases nothing further; RUNNING tasks complete on their own.
        eligible = [] if derive_master_status(tasks).is_terminal else tasks
        for task in eligible:
            if task.status != JobStatus.PENDING or not dependencies_satisfied(task, tasks_by_id):
                continue
            try:
                resolved = resolve_payload(task, tasks_by_id)
            except DependencyResolutionError as error:
                logger.warning("Task %s has unresolved input: %s", task.id, error)
                if self._fail_open_task(
                    tenant_id=tenant_id,
                    task_id=task.id,
                    failure_class=FailureClass.DEPENDENCY_UNRESOLVED,
                    error_summary=str(error),
                ):
                    result.unresolved.append(task.id)
                continue
            if self._enqueue(task, resolved):
                result.enqueued.append(task.id)
            else:
                result.deferred.append(task.id)

        result.short_circuited.extend(
            self._short_circuit(tenant_id=tenant_id, master_job_id=master_job_id),
        )
        result.master = self._refresh_master(tenant_id=tenant_id, master_job_id=master_job_id)
        return result

    def on_task_terminal(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        task_id: str,
        status: JobStatus,
        result: dict[str, Any] | None = None,
        error_summary: str | None = None,
        failure_class: FailureClass | None = None,
        event_details: dict[str, object] | None = None,
    ) -> MasterJobView:
        """Record a task outcome once, then re-evaluate its master."""

        try:
            task = self.job_store.update_task_status(
                tenant_id=tenant_id,
                task_id=task_id,
                status=status,
                result=result,
                failure_class=failure_class,
                error_summary=error_summary,
                event_details=event_details,
            )
        except InvalidTransition as error:
            logger.info("Ignoring duplicate outcome for task %s: %s", task_id, error)
            existing = self.job_store.get_task_job(
                tenant_id=tenant_id,
                task_id=task_id,
                include_deleted=True,
            )
            if existing is None:
                raise JobNotFound(task_id) from error
            task = existing

        master = self.job_store.get_master_job(
            tenant_id=tenant_id,
            master_job_id=task.master_job_id,
            include_deleted=True,
        )
        if master is None:
            raise JobNotFound(task.master_job_id)
        if master.deleted_at is not None:
            return master
        return self.advance(tenant_id=tenant_id, master_job_id=master.id).master

    def on_delivery_exhausted(self, exhausted: QueueDeliveryExhausted) -> None:
        """Dead-letter hook: the task ran out of deliveries."""

        try:
            self.on_task_terminal(
                tenant_id=exhausted.tenant_id,
                task_id=exhausted.job_id,
                status=JobStatus.FAILED,
                failure_class=FailureClass.DELIVERY_EXHAUSTED,
                error_summary=exhausted.last_error or str(exhausted),
            )
        except JobNotFound:
            logger.warning("Dead letter for unknown task %s ignored", exhausted.job_id)

    def cancel(
        self,
        *,
        tenant_id: str,
        master_job_id: str,
        reason: str = "canceled by operator",
        actor_role: Role | str | None = None,
    ) -> MasterJobView:
        """Fail every PENDING task; RUNNING tasks are left to finish."""

        require_capability(actor_role, Capability.UPDATE_JOBS)
        master = self.job_store.get_master_job(tenant_id=tenant_id, master_job_id=master_job_id)
        if master is None:
            raise JobNotFound(master_job_id)
        if master.status.is_terminal:
            return master

        canceled: list[str] = []
        for task in self.job_store.list_tasks_by_master(
            tenant_id=tenant_id,
            master_job_id=master_job_id,
        ):
            if task.status != JobStatus.PENDING:
                continue
            if self._fail_open_task(
                tenant_id=tenant_id,
                task_id=task.id,
                failure_class=FailureClass.CANCELED,
                error_summary=reason,
            ):
                canceled.append(task.id)
        self.job_store.add_event(
            tenant_id=tenant_id,
            master_job_id=master_job_id,
            task_job_id=None,
            event_type="master_canceled",
            details={"reason": reason, "tasks_canceled": canceled},
        )
        logger.info("Canceled %d tasks of master %s: %s", len(canceled), master_job_id, reason)
        return self.advance(tenant_id=tenant_id, master_job_id=master_job_id).master

    def retry_task(
        self,
        *,
        tenant_id: str,
        task_id: str,
        actor_role: Role | str | None = None,
    ) -> AdvanceResult:
        """Reset a FAILED task and the dependents it took down, then advance."""

        require_capability(actor_role, Capability.UPDATE_JOBS)
        task = self.job_store.get_task_job(
            tenant_id=tenant_id,
            task_id=task_id,
            include_deleted=True,
        )
        if task is None:
            raise JobNotFound(task_id)
        master = self.job_store.get_master_job(
            tenant_id=tenant_id,
            master_job_id=task.master_job_id,
            include_deleted=True,
        )
        if master is None:
            raise JobNotFound(task.master_job_id)
        if master.deleted_at is not None or task.deleted_at is not None:
            raise InvalidTransition(f"Master job {master.id} is deleted; retry refused.")
        if not self.job_store.reset_task_for_retry(tenant_id=tenant_id, task_id=task_id):
            raise InvalidTransition(f"Task {task_id} is {task.status.value}; only FAILED retries.")

        siblings = self.job_store.list_tasks_by_master(
            tenant_id=tenant_id,
            master_job_id=master.id,
        )
        for dependent in transitive_dependents(task_id, siblings):
            if (
                dependent.status == JobStatus.FAILED
                and dependent.failure_class in _RETRY_RESETTABLE
            ):
                self.job_store.reset_task_for_retry(tenant_id=tenant_id, task_id=dependent.id)
        logger.info("Retrying task %s of master %s", task_id, master.id)
        return self.advance(tenant_id=tenant_id, master_job_id=master.id)

    def _enqueue(self, task: TaskJobView, resolved: dict[str, Any]) -> bool:
        queue = queue_name_for(task.worker, prefix=self.queue_prefix)
        message = {
            "task_id": task.id,
            "master_job_id": task.master_job_id,
            "worker": task.worker,
            "payload": resolved,
        }
        try:
            self.broker.enqueue(
                queue,
                message,
                EnqueueOptions(
                    job_id=task.id,
                    tenant_id=task.tenant_id,
                    max_attempts=task.max_attempts,
                    backoff=self.backoff,
                ),
            )
        except QueueBrokerError as error:
            logger.warning(
                "Enqueue failed for task %s on %s; will retry: %s",
                task.id,
                queue,
                error,
            )
            return False
        if self.job_store.mark_task_dispatched(
            tenant_id=task.tenant_id,
            task_id=task.id,
            resolved_payload=resolved,
            queue=queue,
        ):
            logger.info("Dispatched task %s (%s) to %s", task.id, task.worker, queue)
        return True

    def _short_circuit(self, *, tenant_id: str, master_job_id: str) -> list[str]:
        """Fail PENDING tasks behind a terminally failed dependency, to a fixpoint."""

        failed: list[str] = []
        tasks = self.job_store.list_tasks_by_master(
            tenant_id=tenant_id,
            master_job_id=master_job_id,
        )
        tasks_by_id = {task.id: task for task in tasks}
        changed = True
        while changed:
            changed = False
            for task in tasks:
                current = tasks_by_id[task.id]
                if current.status != JobStatus.PENDING:
                    continue
                blocker = blocked_by_failure(current, tasks_by_id)
                if blocker is None:
                    continue
                try:
                    tasks_by_id[task.id] = self.job_store.update_task_status(
                        tenant_id=tenant_id,
                        task_id=task.id,
                        status=JobStatus.FAILED,
                        failure_class=FailureClass.DEPENDENCY_FAILED,
                        error_summary=f"dependency {blocker} failed",
                    )
                except InvalidTransition:
                    continue
                failed.append(task.id)
                changed = True
        return failed

    def _fail_open_task(
        self,
        *,
        tenant_id: str,
        task_id: str,
        failure_class: FailureClass,
        error_summary: str,
    ) -> bool:
        try:
            self.job_store.update_task_status(
                tenant_id=tenant_id,
                task_id=task_id,
                status=JobStatus.FAILED,
                failure_class=failure_class,
                error_summary=error_summary,
            )
        except InvalidTransition:
            return False
        return True

    def _refresh_master(self, *, tenant_id: str, master_job_id: str) -> MasterJobView:
        tasks = self.job_store.list_tasks_by_master(
            tenant_id=tenant_id,
            master_job_id=master_job_id,
        )
        status = derive_master_status(tasks)
        previous = self.job_store.get_master_job(tenant_id=tenant_id, master_job_id=master_job_id)
        master = self.job_store.update_master_status(
            tenant_id=tenant_id,
            master_job_id=master_job_id,
            status=status,
            result=build_master_result(tasks) if status == JobStatus.SUCCESS else None,
        )
        if previous is not None and previous.status != status and status.is_terminal:
            if status == JobStatus.FAILED:
                logger.warning("Master %s failed: %s", master_job_id, MASTER_FAILURE_SUMMARY)
            else:
                logger.info("Master %s succeeded", master_job_id)
        return master


def resolve_payload(task: TaskJobView, tasks_by_id: Mapping[str, TaskJobView]) -> dict[str, Any]:
    """Replace `{"$task_output": id}` markers with the dependency's result key."""

    resolved = _resolve_value(task, task.payload, tasks_by_id)
    if not isinstance(resolved, dict):
        raise DependencyResolutionError(task.id, "payload", "payload is not an object")
    return resolved


def _resolve_value(task: TaskJobView, value: Any, tasks_by_id: Mapping[str, TaskJobView]) -> Any:
    if isinstance(value, dict):
        if set(value) == {TASK_OUTPUT_REF_KEY}:
            return _resolve_reference(task, str(value[TASK_OUTPUT_REF_KEY]), tasks_by_id)
        return {key: _resolve_value(task, item, tasks_by_id) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_value(task, item, tasks_by_id) for item in value]
    return value


def _resolve_reference(
    task: TaskJobView,
    reference: str,
    tasks_by_id: Mapping[str, TaskJobView],
) -> str:
    if reference not in task.depends_on:
        raise DependencyResolutionError(task.id, reference, "not a declared dependency")
    upstream = tasks_by_id.get(reference)
    if upstream is None:
        raise DependencyResolutionError(task.id, reference, "dependency task is missing")
    if upstream.status != JobStatus.SUCCESS:
        raise DependencyResolutionError(
            task.id,
            reference,
            f"dependency is {upstream.status.value}",
        )
    key = upstream.result_key
    if key is None:
        raise DependencyResolutionError(task.id, reference, "dependency result has no result_key")
    return key
