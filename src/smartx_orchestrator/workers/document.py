"""Document generation from extracted meeting meaning."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

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
from smartx_orchestrator.workers.prompts import (
    DOCUMENT_PROMPT,
    DOCUMENT_SCHEMAS,
    DOCUMENT_TEMPLATES,
)

FALLBACK_WARNING = "Fallback document generated - may need manual review"


class DocumentWorker(CompletionWorker):
    kind = WorkerKind.DOCUMENT.value
    result_prefix = "documents"
    options = CompletionOptions(temperature=0.2, max_tokens=2500)
    fallback_confidence = 0.5

    def execute(self, payload: Mapping[str, Any], context: WorkerContext) -> WorkerOutput:
        meaning_key = required_str(payload, "meaning_key")
        meaning = self.read_json_blob(context, meaning_key)
        document_type = optional_str(payload, "document_type") or "PRD"
        template = optional_str(payload, "template") or DOCUMENT_TEMPLATES.get(
            document_type,
            DOCUMENT_TEMPLATES["Custom"],
        )
        custom_schema = payload.get("custom_schema")
        schema = (
            custom_schema
            if isinstance(custom_schema, dict)
            else DOCUMENT_SCHEMAS.get(document_type, DOCUMENT_SCHEMAS["Custom"])
        )

        prompt = DOCUMENT_PROMPT.render(
            document_type=document_type,
            meaning=json.dumps(meaning, indent=2, ensure_ascii=False, sort_keys=True),
            template=template,
            schema=json.dumps(schema, indent=2, ensure_ascii=False, sort_keys=True),
        )
        parsed = parse_or_fallback(
            self.complete(context, prompt),
            required_keys=("content",),
            fallback=lambda _raw: _fallback_document(document_type, schema),
            fallback_warning=FALLBACK_WARNING,
        )
        document = parsed.document
        confidence = (
            self.fallback_confidence
            if parsed.used_fallback
            else coerce_confidence(document.get("confidence"), default=0.8)
        )
        metadata = document.get("metadata") if isinstance(document.get("metadata"), dict) else {}
        return WorkerOutput(
            document={
                "document_type": document_type,
                "content": str(document.get("content") or ""),
                "metadata": {**metadata, "document_type": document_type},
                "sections": _normalize_sections(document.get("sections")),
                "meaning_key": meaning_key,
            },
            confidence=confidence,
            prompt_version=DOCUMENT_PROMPT.ref,
            parser=parsed.parser,
            used_fallback=parsed.used_fallback,
            warnings=[*parsed.warnings, *coerce_str_list(document.get("warnings"))],
        )


def _fallback_document(document_type: str, schema: Mapping[str, Any]) -> dict[str, Any]:
    titles = coerce_str_list(schema.get("sections")) or ["Introduction"]
    return {
        "content": f"# {document_type} Document\n\nThis is a fallback document structure.",
        "metadata": {"title": f"{document_type} Document", "version": "1.0"},
        "sections": [{"title": title, "content": "", "level": 1} for title in titles],
        "warnings": [],
    }


def _normalize_sections(value: object) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    sections: list[dict[str, Any]] = []
    for item in value:
        if not isinstance(item, dict) or not item.get("title"):
            continue
        level = item.get("level")
        sections.append(
            {
                "title": str(item["title"]),
                "content": str(item.get("content") or ""),
                "level": level if isinstance(level, int) and level > 0 else 1,
            },
        )
    return sections
