"""Audio transcription worker."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from typing import Any

from smartx_orchestrator.errors import WorkerExecutionError
from smartx_orchestrator.jobs.models import WorkerKind
from smartx_orchestrator.services.completion import CompletionOptions
from smartx_orchestrator.workers.base import (
    CompletionWorker,
    WorkerContext,
    WorkerOutput,
    optional_str,
    required_str,
)
from smartx_orchestrator.workers.parsing import coerce_confidence, parse_or_fallback
from smartx_orchestrator.workers.prompts import TRANSCRIBE_PROMPT

FALLBACK_WARNING = "Plain-text transcript used - segment timing unavailable"


class TranscribeWorker(CompletionWorker):
    kind = WorkerKind.TRANSCRIBE.value
    result_prefix = "transcriptions"
    options = CompletionOptions(temperature=0.2, max_tokens=500)
    fallback_confidence = 0.5

    def execute(self, payload: Mapping[str, Any], context: WorkerContext) -> WorkerOutput:
        file_key = required_str(payload, "file_key")
        language = optional_str(payload, "language") or "en"
        audio = self.read_blob(context, file_key)
        if not audio:
            raise WorkerExecutionError(
                f"Audio blob is empty: {file_key}",
                retryable=False,
                reason_code="input_contract_error",
            )

        prompt = TRANSCRIBE_PROMPT.render(
            file_key=file_key,
            size_bytes=len(audio),
            sha256=hashlib.sha256(audio).hexdigest(),
            language=language,
        )
        parsed = parse_or_fallback(
            self.complete(context, prompt),
            required_keys=("text",),
            fallback=lambda raw: {"text": raw.strip(), "segments": [], "language": language},
            fallback_warning=FALLBACK_WARNING,
        )
        document = parsed.document
        confidence = (
            self.fallback_confidence
            if parsed.used_fallback
            else coerce_confidence(document.get("confidence"), default=0.9)
        )
        return WorkerOutput(
            document={
                "meeting_id": payload.get("meeting_id"),
                "text": str(document.get("text") or ""),
                "segments": _normalize_segments(document.get("segments")),
                "language": str(document.get("language") or language),
                "source_key": file_key,
            },
            confidence=confidence,
            prompt_version=TRANSCRIBE_PROMPT.ref,
            parser=parsed.parser,
            used_fallback=parsed.used_fallback,
            warnings=parsed.warnings,
        )


def _normalize_segments(value: object) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    segments: list[dict[str, Any]] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        text = str(item.get("text") or "").strip()
        if not text:
            continue
        segments.append(
            {
                "speaker": item.get("speaker"),
                "start": _as_seconds(item.get("start")),
                "end": _as_seconds(item.get("end")),
                "text": text,
            },
        )
    return segments


def _as_seconds(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0.0
    return max(0.0, float(value))
