"""Worker runtime: idempotent execution of queued tasks and the polling loop."""

from __future__ import annotations

import json
import logging
import signal
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from smartx_orchestrator.dispatcher import Dispatcher
from smartx_orchestrator.errors import (
    BlobAlreadyExistsError,
    SmartxError,
    WorkerExecutionError,
)
from smartx_orchestrator.jobs.models import FailureClass, JobStatus, TaskJobView
from smartx_orchestrator.jobs.repository import JobStore
from smartx_orchestrator.queue.broker import (
    DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
    QueueBroker,
)
from smartx_orchestrator.queue.models import Delivery, HandledMessage, NackOutcome
from smartx_orchestrator.services.blob_store import BlobStore
from smartx_orchestrator.services.completion import CompletionService
from smartx_orchestrator.workers.base import Worker, WorkerContext, WorkerOutput
from smartx_orchestrator.workers.codegen import CodegenWorker
from smartx_orchestrator.workers.document import DocumentWorker
from smartx_orchestrator.workers.meaning import MeaningWorker
from smartx_orchestrator.workers.transcribe import TranscribeWorker

logger = logging.getLogger(__name__)

RESULT_CONTENT_TYPE = "application/json"


class TaskOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.skipped += other.skipped
        self.idle_polls += other.idle_polls


def default_workers() -> dict[str, Worker]:
    workers: list[Worker] = [
        TranscribeWorker(),
        MeaningWorker(),
        DocumentWorker(),
        CodegenWorker(),
    ]
    return {worker.kind: worker for worker in workers}


def result_key_for(
    worker: Worker,
    task: TaskJobView,
    siblings: Sequence[TaskJobView] = (),
) -> str:
    """Deterministic result location: one blob per worker kind and master job.

    When several tasks of the same kind share a master, each gets its own blob
    under the master directory, named by task id.
    """

    base = f"{worker.result_prefix}/{task.tenant_id}/{task.master_job_id}"
    if any(other.id != task.id and other.worker == task.worker for other in siblings):
        return f"{base}/{task.id}.json"
    return f"{base}.json"


class WorkerRuntime:
    """Executes one delivery; returns to ack, raises to nack."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        job_store: JobStore,
        dispatcher: Dispatcher,
        blob_store: BlobStore,
        completion: CompletionService,
        consumer_id: str,
        workers: Mapping[str, Worker] | None = None,
    ) -> None:
        self.job_store = job_store
        self.dispatcher = dispatcher
        self.blob_store = blob_store
        self.completion = completion
        self.consumer_id = consumer_id
        self.workers = dict(workers) if workers is not None else default_workers()

    def register(self, worker: Worker) -> None:
        self.workers[worker.kind] = worker

    def handle(self, delivery: Delivery) -> TaskOutcome:
        task = self.job_store.get_task_job(
            tenant_id=delivery.tenant_id,
            task_id=delivery.task_id,
            include_deleted=True,
        )
        if task is None or task.deleted_at is not None or task.status.is_terminal:
            if task is None:
                reason = "missing"
            else:
                reason = "deleted" if task.deleted_at else task.status.value
            logger.info("Skipping delivery of task %s: %s", delivery.task_id, reason)
            return TaskOutcome.SKIPPED

        if delivery.is_redelivery:
            logger.warning(
                "Redelivery of task %s (attempt %d/%d)",
                task.id,
                delivery.attempt,
                delivery.max_attempts,
            )
        attempt = self.job_store.record_task_attempt(
            tenant_id=task.tenant_id,
            task_id=task.id,
            consumer_id=self.consumer_id,
        )
        if attempt is None:
            return TaskOutcome.SKIPPED

        worker = self.workers.get(task.worker)
        if worker is None:
            return self._fail(
                task,
                reason_code="unsupported_worker",
                summary=f"No worker registered for kind {task.worker}",
            )

        context = WorkerContext(
            task_id=task.id,
            master_job_id=task.master_job_id,
            tenant_id=task.tenant_id,
            attempt=attempt,
            blob_store=self.blob_store,
            completion=self.completion,
        )
        try:
            output = worker.execute(_delivery_payload(delivery, task), context)
        except WorkerExecutionError as error:
            return self._handle_worker_error(task, delivery, error)
        except Exception as error:  # noqa: BLE001
            return self._handle_worker_error(task, delivery, classify_unexpected(error))

        result_key = self._materialize(worker, task, output)
        if output.used_fallback:
            logger.warning(
                "Task %s (%s) completed with fallback output: %s",
                task.id,
                task.worker,
                "; ".join(output.warnings),
            )
        self.dispatcher.on_task_terminal(
            tenant_id=task.tenant_id,
            task_id=task.id,
            status=JobStatus.SUCCESS,
            result={
                "result_key": result_key,
                "confidence": output.confidence,
                "warnings": list(output.warnings),
                "prompt_version": output.prompt_version,
                "parser": output.parser,
            },
        )
        return TaskOutcome.SUCCEEDED

    def _handle_worker_error(
        self,
        task: TaskJobView,
        delivery: Delivery,
        error: WorkerExecutionError,
    ) -> TaskOutcome:
        if error.retryable:
            logger.warning(
                "Task %s attempt %d/%d failed (%s), leaving for redelivery: %s",
                task.id,
                delivery.attempt,
                delivery.max_attempts,
                error.reason_code,
                error,
            )
            raise error
        return self._fail(
            task,
            reason_code=error.reason_code,
            summary=str(error),
            details=error.details,
        )

    def _fail(
        self,
        task: TaskJobView,
        *,
        reason_code: str,
        summary: str,
        details: dict[str, object] | None = None,
    ) -> TaskOutcome:
        logger.error("Task %s (%s) failed [%s]: %s", task.id, task.worker, reason_code, summary)
        self.dispatcher.on_task_terminal(
            tenant_id=task.tenant_id,
            task_id=task.id,
            status=JobStatus.FAILED,
            failure_class=FailureClass.WORKER_NON_RETRYABLE,
            error_summary=f"{reason_code}: {summary}",
            event_details={"reason_code": reason_code, **(details or {})},
        )
        return TaskOutcome.FAILED

    def _materialize(self, worker: Worker, task: TaskJobView, output: WorkerOutput) -> str:
        siblings = self.job_store.list_tasks_by_master(
            tenant_id=task.tenant_id,
            master_job_id=task.master_job_id,
        )
        key = result_key_for(worker, task, siblings)
        body = {
            **output.document,
            "confidence": output.confidence,
            "warnings": list(output.warnings),
            "prompt_version": output.prompt_version,
            "parser": output.parser,
        }
        data = json.dumps(body, ensure_ascii=False, indent=2, sort_keys=True).encode("utf-8")
        try:
            self.blob_store.put(key, data, content_type=RESULT_CONTENT_TYPE)
        except BlobAlreadyExistsError:
            logger.info("Result %s already written by an earlier attempt; reusing it", key)
        return key


def classify_unexpected(error: Exception) -> WorkerExecutionError:
    """Map an exception a worker did not classify itself."""

    if isinstance(error, TimeoutError | ConnectionError):
        return WorkerExecutionError(str(error), retryable=True, reason_code="transient_io")
    if isinstance(error, OSError):
        return WorkerExecutionError(str(error), retryable=True, reason_code="io_error")
    if isinstance(error, SmartxError):
        return WorkerExecutionError(str(error), retryable=False, reason_code="worker_contract")
    return WorkerExecutionError(
        f"{type(error).__name__}: {error}",
        retryable=False,
        reason_code="unexpected_error",
    )


def _delivery_payload(delivery: Delivery, task: TaskJobView) -> dict[str, Any]:
    payload = delivery.payload.get("payload")
    if isinstance(payload, dict):
        return payload
    return task.payload


class QueueWorker:
    """Polls worker queues round-robin and runs deliveries through the runtime."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: QueueBroker,
        runtime: WorkerRuntime,
        queues: Sequence[str],
        poll_interval_seconds: float = 2.0,
        visibility_timeout_seconds: float = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
    ) -> None:
        if not queues:
            raise ValueError("QueueWorker needs at least one queue.")
        self.broker = broker
        self.runtime = runtime
        self.queues = list(queues)
        self.poll_interval_seconds = poll_interval_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self._next_queue = 0
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def worker_id(self) -> str:
        return self.runtime.consumer_id

    def run_once(self) -> WorkerRunSummary:
        """Process at most one message, trying each queue once starting after the last hit."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        for offset in range(len(self.queues)):
            index = (self._next_queue + offset) % len(self.queues)
            handled = self.broker.on_message(
                self.queues[index],
                self.runtime.handle,
                consumer_id=self.worker_id,
                visibility_timeout_seconds=self.visibility_timeout_seconds,
            )
            if handled is None:
                continue
            self._next_queue = (index + 1) % len(self.queues)
            _count(summary, handled)
            return summary

        summary.idle_polls = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queues stay idle, `max_tasks` is reached or a stop signal arrives.

        Args:
            max_tasks: Stop after processing this many messages (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Worker %s stopping after current message (%s)", self.worker_id, signal_name)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass


def _count(summary: WorkerRunSummary, handled: HandledMessage) -> None:
    summary.processed = 1
    if not handled.acked:
        if handled.nack_outcome == NackOutcome.RETRY_SCHEDULED:
            summary.retried = 1
        elif handled.nack_outcome == NackOutcome.DEAD_LETTERED:
            summary.failed = 1
        return
    if handled.value == TaskOutcome.SUCCEEDED:
        summary.succeeded = 1
    elif handled.value == TaskOutcome.FAILED:
        summary.failed = 1
    else:
        summary.skipped = 1
