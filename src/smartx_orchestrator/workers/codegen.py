"""Code generation from a generated document."""

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
from smartx_orchestrator.workers.prompts import CODEGEN_PROMPT

FALLBACK_WARNING = "Fallback implementation used - may need manual review"

_EXTENSIONS = {
    "python": "py",
    "typescript": "ts",
    "javascript": "js",
    "go": "go",
    "java": "java",
    "rust": "rs",
}


class CodegenWorker(CompletionWorker):
    kind = WorkerKind.CODEGEN.value
    result_prefix = "codegen"
    options = CompletionOptions(temperature=0.3, max_tokens=3000)
    fallback_confidence = 0.6

    def execute(self, payload: Mapping[str, Any], context: WorkerContext) -> WorkerOutput:
        document_key = required_str(payload, "document_key")
        target_language = required_str(payload, "target_language")
        framework = optional_str(payload, "framework")
        raw_document = self.read_blob(context, document_key)
        try:
            document_text = raw_document.decode("utf-8")
        except UnicodeDecodeError as error:
            raise WorkerExecutionError(
                f"Document blob is not UTF-8 text: {document_key}",
                retryable=False,
                reason_code="input_contract_error",
            ) from error

        requirements = coerce_str_list(payload.get("requirements"))
        prompt = CODEGEN_PROMPT.render(
            target_language=target_language,
            framework_clause=f" using {framework}" if framework else "",
            document=document_text,
            requirements="\n".join(f"- {item}" for item in requirements)
            or "No specific requirements",
        )
        parsed = parse_or_fallback(
            self.complete(context, prompt),
            required_keys=("files",),
            fallback=lambda _raw: _fallback_codegen(target_language),
            fallback_warning=FALLBACK_WARNING,
        )
        document = parsed.document
        confidence = (
            self.fallback_confidence
            if parsed.used_fallback
            else coerce_confidence(document.get("confidence"), default=0.8)
        )
        return WorkerOutput(
            document={
                "target_language": target_language,
                "framework": framework,
                "files": _normalize_files(document.get("files"), default_language=target_language),
                "structure": str(document.get("structure") or ""),
                "summary": str(document.get("summary") or ""),
                "document_key": document_key,
            },
            confidence=confidence,
            prompt_version=CODEGEN_PROMPT.ref,
            parser=parsed.parser,
            used_fallback=parsed.used_fallback,
            warnings=[*parsed.warnings, *coerce_str_list(document.get("warnings"))],
        )


def _fallback_codegen(target_language: str) -> dict[str, Any]:
    extension = _EXTENSIONS.get(target_language.lower(), "txt")
    return {
        "files": [
            {
                "path": f"src/main.{extension}",
                "content": f"// {target_language} implementation placeholder\n",
                "language": target_language,
            },
        ],
        "structure": "src/",
        "summary": "Basic code generation completed",
        "warnings": [],
    }


def _normalize_files(value: object, *, default_language: str) -> list[dict[str, str]]:
    if not isinstance(value, list):
        return []
    files: list[dict[str, str]] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        path = item.get("path")
        content = item.get("content")
        if not isinstance(path, str) or not path.strip() or not isinstance(content, str):
            continue
        files.append(
            {
                "path": path.strip(),
                "content": content,
                "language": str(item.get("language") or default_language),
            },
        )
    return files
