"""Meaning extraction from a meeting transcript."""

from __future__ import annotations

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
from smartx_orchestrator.workers.parsing import (
    coerce_confidence,
    coerce_str_list,
    parse_or_fallback,
)
from smartx_orchestrator.workers.prompts import MEANING_PROMPT

FALLBACK_WARNING = "Fallback meaning extracted - may need manual review"
SUMMARY_PREVIEW_CHARS = 280
_LIST_FIELDS = ("goals", "requirements", "action_items", "decisions", "key_points")


class MeaningWorker(CompletionWorker):
    kind = WorkerKind.MEANING.value
    result_prefix = "meaning"
    options = CompletionOptions(temperature=0.3, max_tokens=1500)
    fallback_confidence = 0.7

    def execute(self, payload: Mapping[str, Any], context: WorkerContext) -> WorkerOutput:
        transcript_key = required_str(payload, "transcript_key")
        transcript = self.read_json_blob(context, transcript_key)
        text = transcript.get("text")
        if not isinstance(text, str):
            raise WorkerExecutionError(
                f"Transcript blob has no text: {transcript_key}",
                retryable=False,
                reason_code="input_contract_error",
            )

        custom_template = optional_str(payload, "prompt_template")
        if custom_template is not None:
            prompt_version = "custom"
            prompt = (
                custom_template.replace("{transcript}", text)
                if "{transcript}" in custom_template
                else f"{custom_template}\n\nTranscription:\n{text}\n"
            )
        else:
            prompt_version = MEANING_PROMPT.ref
            prompt = MEANING_PROMPT.render(transcript=text)

        parsed = parse_or_fallback(
            self.complete(context, prompt),
            required_keys=("summary",),
            fallback=lambda _raw: _fallback_meaning(text),
            fallback_warning=FALLBACK_WARNING,
        )
        document = parsed.document
        confidence = (
            self.fallback_confidence
            if parsed.used_fallback
            else coerce_confidence(document.get("confidence"), default=0.8)
        )
        meaning: dict[str, Any] = {
            field_name: coerce_str_list(document.get(field_name)) for field_name in _LIST_FIELDS
        }
        meaning["summary"] = str(document.get("summary") or "")
        meaning["meeting_id"] = payload.get("meeting_id")
        meaning["transcript_key"] = transcript_key
        return WorkerOutput(
            document=meaning,
            confidence=confidence,
            prompt_version=prompt_version,
            parser=parsed.parser,
            used_fallback=parsed.used_fallback,
            warnings=parsed.warnings,
        )


def _fallback_meaning(transcript: str) -> dict[str, Any]:
    preview = " ".join(transcript.split())[:SUMMARY_PREVIEW_CHARS]
    return {
        "goals": [],
        "requirements": [],
        "action_items": [],
        "decisions": [],
        "key_points": [],
        "summary": preview,
    }
