from __future__ import annotations

import json

import allure
import pytest

from smartx_orchestrator.dispatcher import Dispatcher, SubmitRequest
from smartx_orchestrator.errors import (
    CompletionRejectedError,
    CompletionTransientError,
    WorkerExecutionError,
)
from smartx_orchestrator.jobs.models import FailureClass, JobStatus, MasterJobView
from smartx_orchestrator.jobs.repository import JobStore
from smartx_orchestrator.pipelines.registry import (
    PipelineDefinition,
    TaskTemplate,
    default_registry,
)
from smartx_orchestrator.queue.broker import QueueBroker
from smartx_orchestrator.queue.models import BackoffPolicy, EnqueueOptions
from smartx_orchestrator.services.blob_store import LocalBlobStore
from smartx_orchestrator.tenants.repository import TenantStore
from smartx_orchestrator.workers.runtime import (
    QueueWorker,
    TaskOutcome,
    WorkerRuntime,
    classify_unexpected,
    result_key_for,
)
from smartx_orchestrator.workers.transcribe import TranscribeWorker

pytestmark = [
    allure.epic("Workers"),
    allure.feature("Idempotent Execution"),
]

_MEETING_QUEUES = ["smartx:transcribe", "smartx:meaning"]
_TRANSCRIPT = {
    "text": "Alice: we ship Friday",
    "segments": [],
    "language": "en",
    "confidence": 0.9,
}
_MEANING = {
    "goals": ["Ship"],
    "requirements": [],
    "action_items": ["Alice ships"],
    "decisions": ["Friday"],
    "key_points": [],
    "confidence": 0.85,
    "summary": "Ship on Friday.",
}


def _worker(
    *,
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion: object,
    queues: list[str] | None = None,
) -> QueueWorker:
    runtime = WorkerRuntime(
        job_store=job_store,
        dispatcher=dispatcher,
        blob_store=blob_store,
        completion=completion,  # type: ignore[arg-type]
        consumer_id="worker-test",
    )
    return QueueWorker(
        broker=broker,
        runtime=runtime,
        queues=_MEETING_QUEUES if queues is None else queues,
        poll_interval_seconds=0.0,
    )


def _submit_meeting(dispatcher: Dispatcher, blob_store: LocalBlobStore) -> MasterJobView:
    blob_store.put("audio/m-1.wav", b"RIFF-audio")
    return dispatcher.submit(
        SubmitRequest(
            tenant_id="acme",
            project_id="proj-1",
            job_type="MEETING_PIPELINE",
            payload={"meeting_id": "m-1", "audio_file_key": "audio/m-1.wav"},
        ),
    )


def test_meeting_pipeline_runs_to_success(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    master = _submit_meeting(dispatcher, blob_store)
    completion.replies.extend([json.dumps(_TRANSCRIPT), json.dumps(_MEANING)])
    worker = _worker(
        job_store=job_store,
        dispatcher=dispatcher,
        broker=broker,
        blob_store=blob_store,
        completion=completion,
    )

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.processed == 2
    assert summary.succeeded == 2
    assert summary.failed == 0
    done = job_store.get_master_job(tenant_id="acme", master_job_id=master.id)
    assert done is not None
    assert done.status == JobStatus.SUCCESS
    artifacts = done.result["artifacts"] if done.result else {}
    assert artifacts == {
        "TRANSCRIBE": f"transcriptions/acme/{master.id}.json",
        "MEANING": f"meaning/acme/{master.id}.json",
    }
    meaning_blob = json.loads(blob_store.get(artifacts["MEANING"]))
    assert meaning_blob["summary"] == "Ship on Friday."
    assert meaning_blob["transcript_key"] == artifacts["TRANSCRIBE"]
    assert meaning_blob["prompt_version"] == "meaning@v1"
    assert "Alice: we ship Friday" in completion.prompts[1]

    tasks = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master.id)
    assert [task.attempts for task in tasks] == [1, 1]
    assert tasks[1].result is not None
    assert tasks[1].result["confidence"] == 0.85
    assert tasks[1].result["parser"] == "json_direct"


def test_non_json_output_completes_with_low_confidence_and_warnings(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    master = _submit_meeting(dispatcher, blob_store)
    completion.replies.extend(["Alice: we ship Friday", "They decided to ship on Friday."])
    worker = _worker(
        job_store=job_store,
        dispatcher=dispatcher,
        broker=broker,
        blob_store=blob_store,
        completion=completion,
    )

    worker.run_loop(max_idle_polls=1)

    done = job_store.get_master_job(tenant_id="acme", master_job_id=master.id)
    assert done is not None
    assert done.status == JobStatus.SUCCESS
    _, meaning = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master.id)
    assert meaning.result is not None
    assert meaning.result["confidence"] < 0.8
    assert meaning.result["parser"] == "fallback"
    assert "Fallback meaning extracted - may need manual review" in meaning.result["warnings"]


def test_duplicate_delivery_is_skipped_without_rewriting_result(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    master = _submit_meeting(dispatcher, blob_store)
    completion.replies.append(json.dumps(_TRANSCRIPT))
    worker = _worker(
        job_store=job_store,
        dispatcher=dispatcher,
        broker=broker,
        blob_store=blob_store,
        completion=completion,
        queues=["smartx:transcribe"],
    )
    assert worker.run_once().succeeded == 1
    transcribe, _ = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master.id)
    result_key = f"transcriptions/acme/{master.id}.json"
    first_blob = blob_store.get(result_key)

    broker.enqueue(
        "smartx:transcribe",
        {"task_id": transcribe.id, "payload": transcribe.payload},
        EnqueueOptions(job_id=transcribe.id, tenant_id="acme"),
    )
    summary = worker.run_once()

    assert summary.processed == 1
    assert summary.skipped == 1
    assert blob_store.get(result_key) == first_blob
    assert len(completion.prompts) == 1
    stored = job_store.get_task_job(tenant_id="acme", task_id=transcribe.id)
    assert stored is not None
    assert stored.attempts == 1


def test_redelivery_after_crash_reuses_existing_result_blob(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    master = _submit_meeting(dispatcher, blob_store)
    transcribe, _ = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master.id)
    result_key = result_key_for(TranscribeWorker(), transcribe)
    blob_store.put(result_key, b'{"text": "written before the crash"}')
    completion.replies.append(json.dumps(_TRANSCRIPT))
    worker = _worker(
        job_store=job_store,
        dispatcher=dispatcher,
        broker=broker,
        blob_store=blob_store,
        completion=completion,
        queues=["smartx:transcribe"],
    )

    assert worker.run_once().succeeded == 1

    assert blob_store.get(result_key) == b'{"text": "written before the crash"}'
    stored = job_store.get_task_job(tenant_id="acme", task_id=transcribe.id)
    assert stored is not None
    assert stored.status == JobStatus.SUCCESS
    assert stored.result_key == result_key


def test_retryable_failure_is_redelivered(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    master = _submit_meeting(dispatcher, blob_store)
    completion.replies.extend(
        [CompletionTransientError("HTTP 503"), json.dumps(_TRANSCRIPT)],
    )
    worker = _worker(
        job_store=job_store,
        dispatcher=dispatcher,
        broker=broker,
        blob_store=blob_store,
        completion=completion,
        queues=["smartx:transcribe"],
    )

    first = worker.run_once()
    transcribe, _ = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master.id)
    assert first.retried == 1
    assert transcribe.status == JobStatus.RUNNING

    second = worker.run_once()

    assert second.succeeded == 1
    stored = job_store.get_task_job(tenant_id="acme", task_id=transcribe.id)
    assert stored is not None
    assert stored.status == JobStatus.SUCCESS
    assert stored.attempts == 2


def test_exhausted_deliveries_fail_task_and_master(
    job_store: JobStore,
    broker: QueueBroker,
    tenants: TenantStore,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    dispatcher = Dispatcher(
        job_store=job_store,
        broker=broker,
        tenants=tenants,
        backoff=BackoffPolicy(base_seconds=0.0, max_seconds=0.0),
        task_max_attempts=2,
    )
    master = _submit_meeting(dispatcher, blob_store)
    completion.replies.extend([CompletionTransientError("timeout")] * 2)
    worker = _worker(
        job_store=job_store,
        dispatcher=dispatcher,
        broker=broker,
        blob_store=blob_store,
        completion=completion,
    )

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.processed == 2
    assert summary.retried == 1
    assert summary.failed == 1
    transcribe, meaning = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master.id)
    assert transcribe.status == JobStatus.FAILED
    assert transcribe.failure_class == FailureClass.DELIVERY_EXHAUSTED
    assert "timeout" in (transcribe.error_summary or "")
    assert meaning.failure_class == FailureClass.DEPENDENCY_FAILED
    failed = job_store.get_master_job(tenant_id="acme", master_job_id=master.id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED


def test_non_retryable_failure_fails_without_redelivery(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    master = dispatcher.submit(
        SubmitRequest(
            tenant_id="acme",
            project_id="proj-1",
            job_type="MEETING_PIPELINE",
            payload={"meeting_id": "m-1", "audio_file_key": "audio/missing.wav"},
        ),
    )
    worker = _worker(
        job_store=job_store,
        dispatcher=dispatcher,
        broker=broker,
        blob_store=blob_store,
        completion=completion,
    )

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.processed == 1
    assert summary.failed == 1
    transcribe, meaning = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master.id)
    assert transcribe.failure_class == FailureClass.WORKER_NON_RETRYABLE
    assert (transcribe.error_summary or "").startswith("input_blob_missing:")
    assert meaning.status == JobStatus.FAILED
    assert completion.prompts == []


def test_unregistered_worker_kind_fails_task(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    master = _submit_meeting(dispatcher, blob_store)
    runtime = WorkerRuntime(
        job_store=job_store,
        dispatcher=dispatcher,
        blob_store=blob_store,
        completion=completion,
        consumer_id="worker-test",
        workers={},
    )
    worker = QueueWorker(broker=broker, runtime=runtime, queues=["smartx:transcribe"])

    assert worker.run_once().failed == 1

    transcribe, _ = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master.id)
    assert (transcribe.error_summary or "").startswith("unsupported_worker:")


def test_document_pipeline_end_to_end(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    blob_store.put("meaning/acme/prev.json", json.dumps(_MEANING).encode())
    master = dispatcher.submit(
        SubmitRequest(
            tenant_id="acme",
            project_id="proj-1",
            job_type="DOCUMENT_PIPELINE",
            payload={"meaning_key": "meaning/acme/prev.json", "document_type": "Report"},
        ),
    )
    completion.replies.append(json.dumps({"content": "# Report", "confidence": 0.9}))
    worker = _worker(
        job_store=job_store,
        dispatcher=dispatcher,
        broker=broker,
        blob_store=blob_store,
        completion=completion,
        queues=["smartx:document"],
    )

    assert worker.run_loop(max_idle_polls=1).succeeded == 1

    done = job_store.get_master_job(tenant_id="acme", master_job_id=master.id)
    assert done is not None
    assert done.status == JobStatus.SUCCESS
    assert done.result == {"artifacts": {"DOCUMENT": f"documents/acme/{master.id}.json"}}


def test_run_loop_stops_on_request(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    _submit_meeting(dispatcher, blob_store)
    worker = _worker(
        job_store=job_store,
        dispatcher=dispatcher,
        broker=broker,
        blob_store=blob_store,
        completion=completion,
    )
    worker.request_stop(signal_name="SIGTERM")

    summary = worker.run_loop(max_idle_polls=5)

    assert summary.processed == 0


def test_queue_worker_requires_queues(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    with pytest.raises(ValueError, match="at least one queue"):
        _worker(
            job_store=job_store,
            dispatcher=dispatcher,
            broker=broker,
            blob_store=blob_store,
            completion=completion,
            queues=[],
        )


@pytest.mark.parametrize(
    ("error", "retryable", "reason_code"),
    [
        (TimeoutError("slow"), True, "transient_io"),
        (ConnectionResetError("reset"), True, "transient_io"),
        (PermissionError("denied"), True, "io_error"),
        (WorkerExecutionError("x", retryable=False), False, "worker_contract"),
        (KeyError("field"), False, "unexpected_error"),
    ],
)
def test_classify_unexpected(error: Exception, retryable: bool, reason_code: str) -> None:
    classified = classify_unexpected(error)

    assert classified.retryable is retryable
    assert classified.reason_code == reason_code


def test_delivery_of_soft_deleted_task_is_acked_without_execution(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    master = _submit_meeting(dispatcher, blob_store)
    assert job_store.soft_delete_master_job(
        tenant_id="acme",
        master_job_id=master.id,
        terminal_only=False,
    )
    runtime = WorkerRuntime(
        job_store=job_store,
        dispatcher=dispatcher,
        blob_store=blob_store,
        completion=completion,
        consumer_id="worker-test",
    )

    handled = broker.on_message("smartx:transcribe", runtime.handle, consumer_id="worker-test")

    assert handled is not None
    assert handled.acked
    assert handled.value == TaskOutcome.SKIPPED
    assert completion.prompts == []
    assert broker.claim("smartx:transcribe", consumer_id="worker-test") is None
    transcribe, _ = job_store.list_tasks_by_master(
        tenant_id="acme",
        master_job_id=master.id,
        include_deleted=True,
    )
    assert transcribe.attempts == 0


def test_same_kind_tasks_in_one_master_get_separate_results(
    job_store: JobStore,
    broker: QueueBroker,
    tenants: TenantStore,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    registry = default_registry()
    registry.register(
        PipelineDefinition(
            job_type="TWO_DOCUMENTS",
            builder=lambda payload: [
                TaskTemplate(
                    worker="DOCUMENT",
                    payload={"meaning_key": payload["meaning_key"], "document_type": kind},
                )
                for kind in ("PRD", "Report")
            ],
        ),
    )
    dispatcher = Dispatcher(
        job_store=job_store,
        broker=broker,
        tenants=tenants,
        registry=registry,
        backoff=BackoffPolicy(base_seconds=0.0, max_seconds=0.0),
    )
    blob_store.put("meaning/acme/prev.json", json.dumps(_MEANING).encode())
    master = dispatcher.submit(
        SubmitRequest(
            tenant_id="acme",
            project_id="proj-1",
            job_type="TWO_DOCUMENTS",
            payload={"meaning_key": "meaning/acme/prev.json"},
        ),
    )
    completion.replies.extend(
        [
            json.dumps({"content": "# first", "confidence": 0.9}),
            json.dumps({"content": "# second", "confidence": 0.9}),
        ],
    )
    worker = _worker(
        job_store=job_store,
        dispatcher=dispatcher,
        broker=broker,
        blob_store=blob_store,
        completion=completion,
        queues=["smartx:document"],
    )

    assert worker.run_loop(max_idle_polls=1).succeeded == 2

    first, second = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master.id)
    assert first.result_key == f"documents/acme/{master.id}/{first.id}.json"
    assert second.result_key == f"documents/acme/{master.id}/{second.id}.json"
    contents = {
        json.loads(blob_store.get(task.result_key or ""))["content"] for task in (first, second)
    }
    assert contents == {"# first", "# second"}


def test_rejected_completion_records_classifier_details(
    job_store: JobStore,
    dispatcher: Dispatcher,
    broker: QueueBroker,
    blob_store: LocalBlobStore,
    completion,
) -> None:
    master = _submit_meeting(dispatcher, blob_store)
    completion.replies.append(
        CompletionRejectedError(
            "HTTP 401: nope",
            details={"classifier_version": 1, "matched_rule": "auth_status_code"},
        ),
    )
    worker = _worker(
        job_store=job_store,
        dispatcher=dispatcher,
        broker=broker,
        blob_store=blob_store,
        completion=completion,
        queues=["smartx:transcribe"],
    )

    assert worker.run_once().failed == 1

    transcribe, _ = job_store.list_tasks_by_master(tenant_id="acme", master_job_id=master.id)
    failed = next(
        event
        for event in job_store.list_events(tenant_id="acme", master_job_id=master.id)
        if event.event_type == "task_failed" and event.task_job_id == transcribe.id
    )
    assert failed.details["reason_code"] == "completion_rejected"
    assert failed.details["matched_rule"] == "auth_status_code"
    assert failed.details["classifier_version"] == 1
    assert failed.details["failure_class"] == FailureClass.WORKER_NON_RETRYABLE.value
