from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from smartx_orchestrator.errors import InvalidTransition, JobNotFound
from smartx_orchestrator.jobs.models import (
    FailureClass,
    JobStatus,
    MasterJobType,
    TaskJobCreate,
)
from smartx_orchestrator.jobs.repository import JobStore

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Job Store"),
]


def _create_pipeline(job_store: JobStore, *, tenant_id: str = "acme") -> tuple[str, str, str]:
    master = job_store.create_master_job(
        tenant_id=tenant_id,
        project_id="proj-1",
        job_type=MasterJobType.MEETING_PIPELINE,
        payload={"meeting_id": "m-1", "audio_file_key": "audio/m-1.wav"},
        tasks=[
            TaskJobCreate(task_id=f"{tenant_id}-t0", worker="TRANSCRIBE", payload={}, position=0),
            TaskJobCreate(
                task_id=f"{tenant_id}-t1",
                worker="MEANING",
                payload={"transcript_key": {"$task_output": f"{tenant_id}-t0"}},
                depends_on=[f"{tenant_id}-t0"],
                position=1,
            ),
        ],
    )
    return master.id, f"{tenant_id}-t0", f"{tenant_id}-t1"


def test_create_master_job_persists_tasks_in_pipeline_order(job_store: JobStore) -> None:
    master_id, first_id, second_id = _create_pipeline(job_store)

    master = job_store.get_master_job(tenant_id="acme", master_job_id=master_id)
    assert master is not None
    assert master.status == JobStatus.PENDING
    assert master.job_type == MasterJobType.MEETING_PIPELINE
    assert master.result is None
    assert master.created_at.tzinfo is not None

    tasks = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master_id)
    assert [task.id for task in tasks] == [first_id, second_id]
    assert tasks[1].depends_on == [first_id]
    assert tasks[1].payload == {"transcript_key": {"$task_output": first_id}}
    assert all(task.status == JobStatus.PENDING for task in tasks)
    assert all(task.attempts == 0 and task.max_attempts == 3 for task in tasks)


def test_reads_are_tenant_scoped(job_store: JobStore) -> None:
    master_id, first_id, _ = _create_pipeline(job_store)

    assert job_store.get_master_job(tenant_id="other", master_job_id=master_id) is None
    assert job_store.get_task_job(tenant_id="other", task_id=first_id) is None
    assert job_store.list_tasks_by_master(tenant_id="other", master_job_id=master_id) == []
    assert job_store.list_master_jobs(tenant_id="other") == []
    with pytest.raises(JobNotFound):
        job_store.update_task_status(
            tenant_id="other",
            task_id=first_id,
            status=JobStatus.SUCCESS,
        )


def test_task_result_is_written_once(job_store: JobStore) -> None:
    _, first_id, _ = _create_pipeline(job_store)

    task = job_store.update_task_status(
        tenant_id="acme",
        task_id=first_id,
        status=JobStatus.SUCCESS,
        result={"result_key": "transcriptions/acme/one.json"},
    )
    assert task.status == JobStatus.SUCCESS
    assert task.result_key == "transcriptions/acme/one.json"

    with pytest.raises(InvalidTransition):
        job_store.update_task_status(
            tenant_id="acme",
            task_id=first_id,
            status=JobStatus.SUCCESS,
            result={"result_key": "transcriptions/acme/two.json"},
        )
    with pytest.raises(InvalidTransition):
        job_store.update_task_status(
            tenant_id="acme",
            task_id=first_id,
            status=JobStatus.FAILED,
            error_summary="late failure",
        )

    stored = job_store.get_task_job(tenant_id="acme", task_id=first_id)
    assert stored is not None
    assert stored.status == JobStatus.SUCCESS
    assert stored.result_key == "transcriptions/acme/one.json"


def test_update_task_status_rejects_non_terminal_target(job_store: JobStore) -> None:
    _, first_id, _ = _create_pipeline(job_store)

    with pytest.raises(ValueError, match="Unsupported terminal status"):
        job_store.update_task_status(tenant_id="acme", task_id=first_id, status=JobStatus.RUNNING)


def test_failed_task_defaults_to_worker_non_retryable(job_store: JobStore) -> None:
    _, first_id, _ = _create_pipeline(job_store)

    task = job_store.update_task_status(
        tenant_id="acme",
        task_id=first_id,
        status=JobStatus.FAILED,
        error_summary="boom",
    )

    assert task.failure_class == FailureClass.WORKER_NON_RETRYABLE
    assert task.error_summary == "boom"
    assert task.result is None


def test_mark_task_dispatched_only_moves_pending_tasks(job_store: JobStore) -> None:
    _, first_id, _ = _create_pipeline(job_store)

    assert job_store.mark_task_dispatched(
        tenant_id="acme",
        task_id=first_id,
        resolved_payload={"file_key": "audio/m-1.wav"},
        queue="smartx:transcribe",
    )
    assert not job_store.mark_task_dispatched(
        tenant_id="acme",
        task_id=first_id,
        resolved_payload={"file_key": "other"},
        queue="smartx:transcribe",
    )

    task = job_store.get_task_job(tenant_id="acme", task_id=first_id)
    assert task is not None
    assert task.status == JobStatus.RUNNING
    assert task.payload == {"file_key": "audio/m-1.wav"}


def test_record_task_attempt_counts_open_tasks_only(job_store: JobStore) -> None:
    _, first_id, _ = _create_pipeline(job_store)

    assert job_store.record_task_attempt(tenant_id="acme", task_id=first_id, consumer_id="w1") == 1
    assert job_store.record_task_attempt(tenant_id="acme", task_id=first_id, consumer_id="w1") == 2

    job_store.update_task_status(tenant_id="acme", task_id=first_id, status=JobStatus.SUCCESS)
    attempt = job_store.record_task_attempt(tenant_id="acme", task_id=first_id, consumer_id="w1")
    assert attempt is None


def test_reset_task_for_retry_requires_failed_task(job_store: JobStore) -> None:
    _, first_id, _ = _create_pipeline(job_store)

    assert not job_store.reset_task_for_retry(tenant_id="acme", task_id=first_id)

    job_store.record_task_attempt(tenant_id="acme", task_id=first_id, consumer_id="w1")
    job_store.update_task_status(
        tenant_id="acme",
        task_id=first_id,
        status=JobStatus.FAILED,
        failure_class=FailureClass.DELIVERY_EXHAUSTED,
        error_summary="lease expired",
    )
    assert job_store.reset_task_for_retry(tenant_id="acme", task_id=first_id)

    task = job_store.get_task_job(tenant_id="acme", task_id=first_id)
    assert task is not None
    assert task.status == JobStatus.PENDING
    assert task.attempts == 0
    assert task.failure_class is None
    assert task.error_summary is None


def test_update_master_status_keeps_result_only_on_success(job_store: JobStore) -> None:
    master_id, _, _ = _create_pipeline(job_store)

    running = job_store.update_master_status(
        tenant_id="acme",
        master_job_id=master_id,
        status=JobStatus.RUNNING,
        result={"artifacts": {"TRANSCRIBE": "ignored"}},
    )
    assert running.status == JobStatus.RUNNING
    assert running.result is None

    done = job_store.update_master_status(
        tenant_id="acme",
        master_job_id=master_id,
        status=JobStatus.SUCCESS,
        result={"artifacts": {"TRANSCRIBE": "transcriptions/acme/x.json"}},
    )
    assert done.result == {"artifacts": {"TRANSCRIBE": "transcriptions/acme/x.json"}}


def test_soft_delete_cascades_to_tasks_and_hides_job(job_store: JobStore) -> None:
    master_id, first_id, second_id = _create_pipeline(job_store)

    assert not job_store.soft_delete_master_job(tenant_id="acme", master_job_id=master_id)

    job_store.update_master_status(
        tenant_id="acme",
        master_job_id=master_id,
        status=JobStatus.FAILED,
    )
    stamp = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)
    assert job_store.soft_delete_master_job(
        tenant_id="acme",
        master_job_id=master_id,
        deleted_at=stamp,
    )
    assert not job_store.soft_delete_master_job(tenant_id="acme", master_job_id=master_id)

    assert job_store.get_master_job(tenant_id="acme", master_job_id=master_id) is None
    deleted = job_store.get_master_job(
        tenant_id="acme",
        master_job_id=master_id,
        include_deleted=True,
    )
    assert deleted is not None
    assert deleted.deleted_at == stamp
    for task_id in (first_id, second_id):
        task = job_store.get_task_job(tenant_id="acme", task_id=task_id, include_deleted=True)
        assert task is not None
        assert task.deleted_at == stamp
    assert job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master_id) == []


def test_master_details_include_event_trail(job_store: JobStore) -> None:
    master_id, first_id, _ = _create_pipeline(job_store)
    job_store.mark_task_dispatched(
        tenant_id="acme",
        task_id=first_id,
        resolved_payload={},
        queue="smartx:transcribe",
    )
    job_store.add_event(
        tenant_id="acme",
        master_job_id=master_id,
        task_job_id=None,
        event_type="note",
        details={"by": "test"},
    )

    details = job_store.get_master_job_details(tenant_id="acme", master_job_id=master_id)

    assert details is not None
    assert len(details.tasks) == 2
    event_types = [event.event_type for event in details.events]
    assert event_types[:3] == ["master_created", "task_created", "task_created"]
    assert "task_dispatched" in event_types
    assert details.events[-1].details == {"by": "test"}
    dispatched = next(event for event in details.events if event.event_type == "task_dispatched")
    assert dispatched.status_from == JobStatus.PENDING
    assert dispatched.status_to == JobStatus.RUNNING
    assert job_store.get_master_job_details(tenant_id="other", master_job_id=master_id) is None


def test_list_master_jobs_filters_by_status(job_store: JobStore) -> None:
    first_master, _, _ = _create_pipeline(job_store)
    second = job_store.create_master_job(
        tenant_id="acme",
        project_id="proj-2",
        job_type=MasterJobType.CODE_PIPELINE,
        payload={},
    )
    job_store.update_master_status(
        tenant_id="acme",
        master_job_id=second.id,
        status=JobStatus.RUNNING,
    )

    running = job_store.list_master_jobs(tenant_id="acme", status=JobStatus.RUNNING)
    everything = job_store.list_master_jobs(tenant_id="acme")

    assert [item.id for item in running] == [second.id]
    assert {item.id for item in everything} == {first_master, second.id}


def test_create_task_job_appends_to_existing_master(job_store: JobStore) -> None:
    master_id, first_id, second_id = _create_pipeline(job_store)

    task = job_store.create_task_job(
        master_job_id=master_id,
        tenant_id="acme",
        worker="DOCUMENT",
        payload={"meaning_key": {"$task_output": second_id}},
        depends_on=[second_id],
        max_attempts=5,
        task_id="acme-t2",
    )

    assert task.id == "acme-t2"
    assert task.position == 2
    assert task.status == JobStatus.PENDING
    assert task.depends_on == [second_id]
    assert task.max_attempts == 5
    tasks = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master_id)
    assert [item.id for item in tasks] == [first_id, second_id, "acme-t2"]
    with pytest.raises(JobNotFound):
        job_store.create_task_job(
            master_job_id=master_id,
            tenant_id="other",
            worker="DOCUMENT",
            payload={},
        )


def test_create_task_job_refuses_deleted_master(job_store: JobStore) -> None:
    master_id, _, _ = _create_pipeline(job_store)
    job_store.soft_delete_master_job(
        tenant_id="acme",
        master_job_id=master_id,
        terminal_only=False,
    )

    with pytest.raises(InvalidTransition, match="deleted"):
        job_store.create_task_job(
            master_job_id=master_id,
            tenant_id="acme",
            worker="CODEGEN",
            payload={},
        )
