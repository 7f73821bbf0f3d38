"""Pure status derivation for master jobs and their task graph."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from smartx_orchestrator.jobs.models import (
    NON_RETRYABLE_FAILURE_CLASSES,
    JobStatus,
    TaskJobView,
)


def is_terminal_failure(task: TaskJobView) -> bool:
    """FAILED with no retry budget left or with a non-retryable cause."""

    if task.status != JobStatus.FAILED:
        return False
    if task.attempts >= task.max_attempts:
        return True
    return task.failure_class in NON_RETRYABLE_FAILURE_CLASSES


def derive_master_status(tasks: Sequence[TaskJobView]) -> JobStatus:
    if not tasks:
        return JobStatus.PENDING
    if all(task.status == JobStatus.SUCCESS for task in tasks):
        return JobStatus.SUCCESS
    if any(is_terminal_failure(task) for task in tasks):
        return JobStatus.FAILED
    if any(task.status in {JobStatus.RUNNING, JobStatus.SUCCESS} for task in tasks):
        return JobStatus.RUNNING
    return JobStatus.PENDING


def build_master_result(tasks: Iterable[TaskJobView]) -> dict[str, object]:
    """Artifact map of worker kind to result blob key."""

    artifacts: dict[str, str] = {}
    for task in sorted(tasks, key=lambda item: item.position):
        key = task.result_key
        if key is not None:
            artifacts[task.worker] = key
    return {"artifacts": artifacts}


def blocked_by_failure(task: TaskJobView, tasks_by_id: dict[str, TaskJobView]) -> str | None:
    """Return the id of a terminally failed dependency, if any."""

    for dependency_id in task.depends_on:
        dependency = tasks_by_id.get(dependency_id)
        if dependency is not None and is_terminal_failure(dependency):
            return dependency_id
    return None


def dependencies_satisfied(task: TaskJobView, tasks_by_id: dict[str, TaskJobView]) -> bool:
    for dependency_id in task.depends_on:
        dependency = tasks_by_id.get(dependency_id)
        if dependency is None or dependency.status != JobStatus.SUCCESS:
            return False
    return True


def transitive_dependents(task_id: str, tasks: Sequence[TaskJobView]) -> list[TaskJobView]:
    """All tasks that depend on `task_id` directly or through other tasks."""

    found: dict[str, TaskJobView] = {}
    frontier = [task_id]
    while frontier:
        current = frontier.pop()
        for task in tasks:
            if current in task.depends_on and task.id not in found:
                found[task.id] = task
                frontier.append(task.id)
    return sorted(found.values(), key=lambda item: item.position)
