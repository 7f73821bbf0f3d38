"""Worker contract and shared helpers for completion-backed transforms."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol

from smartx_orchestrator.errors import (
    BlobNotFoundError,
    CompletionRejectedError,
    CompletionTransientError,
    MalformedGenerationResponse,
    WorkerExecutionError,
)
from smartx_orchestrator.services.blob_store import BlobStore
from smartx_orchestrator.services.completion import CompletionOptions, CompletionService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerContext:
    """What a worker may touch while executing one task."""

    task_id: str
    master_job_id: str
    tenant_id: str
    attempt: int
    blob_store: BlobStore
    completion: CompletionService


@dataclass(slots=True)
class WorkerOutput:
    """Typed worker result before it is materialized as a blob."""

    document: dict[str, Any]
    confidence: float
    prompt_version: str
    parser: str
    used_fallback: bool = False
    warnings: list[str] = field(default_factory=list)


class Worker(Protocol):
    kind: str
    result_prefix: str

    def execute(self, payload: Mapping[str, Any], context: WorkerContext) -> WorkerOutput: ...


class CompletionWorker:
    """Base for workers that read blobs, prompt the completion service and parse JSON."""

    kind: ClassVar[str]
    result_prefix: ClassVar[str]
    options: ClassVar[CompletionOptions] = CompletionOptions()
    fallback_confidence: ClassVar[float]

    def read_blob(self, context: WorkerContext, key: str) -> bytes:
        try:
            return context.blob_store.get(key)
        except BlobNotFoundError as error:
            raise WorkerExecutionError(
                f"Input blob not found: {key}",
                retryable=False,
                reason_code="input_blob_missing",
            ) from error
        except OSError as error:
            raise WorkerExecutionError(
                f"Blob read failed for {key}: {error}",
                retryable=True,
                reason_code="blob_store_transient",
            ) from error

    def read_json_blob(self, context: WorkerContext, key: str) -> dict[str, Any]:
        raw = self.read_blob(context, key)
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as error:
            raise WorkerExecutionError(
                f"Input blob is not valid JSON: {key}",
                retryable=False,
                reason_code="input_contract_error",
            ) from error
        if not isinstance(parsed, dict):
            raise WorkerExecutionError(
                f"Input blob is not a JSON object: {key}",
                retryable=False,
                reason_code="input_contract_error",
            )
        return parsed

    def complete(self, context: WorkerContext, prompt: str) -> str | None:
        """Call the completion service; `None` signals a malformed response."""

        try:
            return context.completion.complete(prompt, self.options)
        except MalformedGenerationResponse as error:
            logger.warning(
                "Malformed completion for task %s (%s); using fallback: %s",
                context.task_id,
                self.kind,
                error,
            )
            return None
        except CompletionTransientError as error:
            raise WorkerExecutionError(
                str(error),
                retryable=True,
                reason_code="completion_transient",
                details=error.details,
            ) from error
        except CompletionRejectedError as error:
            raise WorkerExecutionError(
                str(error),
                retryable=False,
                reason_code="completion_rejected",
                details=error.details,
            ) from error


def required_str(payload: Mapping[str, Any], name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value.strip():
        raise WorkerExecutionError(
            f"Task payload requires non-empty {name!r}",
            retryable=False,
            reason_code="input_contract_error",
        )
    return value


def optional_str(payload: Mapping[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if isinstance(value, str) and value.strip():
        return value
    return None
