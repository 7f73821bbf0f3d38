"""Static pipeline definitions keyed by master job type."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from smartx_orchestrator.errors import InvalidPipelinePayload, UnknownPipelineType
from smartx_orchestrator.jobs.models import TASK_OUTPUT_REF_KEY, MasterJobType, WorkerKind

DEFAULT_TASK_MAX_ATTEMPTS = 3


@dataclass(frozen=True, slots=True)
class TaskOutputRef:
    """Symbolic reference to the output key of the task at `index` in the same pipeline."""

    index: int


@dataclass(frozen=True, slots=True)
class TaskTemplate:
    """One task to materialize: worker kind, payload and dependency indices."""

    worker: str
    payload: dict[str, Any]
    depends_on: tuple[int, ...] = ()
    max_attempts: int = DEFAULT_TASK_MAX_ATTEMPTS


PayloadBuilder = Callable[[Mapping[str, Any]], list[TaskTemplate]]


@dataclass(frozen=True, slots=True)
class PipelineDefinition:
    """Pure mapping from a master job payload to its ordered task templates."""

    job_type: str
    builder: PayloadBuilder
    description: str = ""

    def build(self, payload: Mapping[str, Any]) -> list[TaskTemplate]:
        templates = self.builder(payload)
        _validate_templates(self.job_type, templates)
        return templates


@dataclass(slots=True)
class PipelineRegistry:
    """Lookup table of pipeline definitions; extensible at runtime."""

    definitions: dict[str, PipelineDefinition] = field(default_factory=dict)

    def register(self, definition: PipelineDefinition) -> None:
        self.definitions[definition.job_type] = definition

    def definition_for(self, job_type: MasterJobType | str) -> PipelineDefinition:
        key = job_type.value if isinstance(job_type, MasterJobType) else str(job_type)
        definition = self.definitions.get(key)
        if definition is None:
            raise UnknownPipelineType(key)
        return definition

    def job_types(self) -> list[str]:
        return sorted(self.definitions)


def replace_output_refs(value: Any, task_ids: list[str]) -> Any:
    """Rewrite `TaskOutputRef` markers into their stored symbolic form."""

    if isinstance(value, TaskOutputRef):
        return {TASK_OUTPUT_REF_KEY: task_ids[value.index]}
    if isinstance(value, dict):
        return {key: replace_output_refs(item, task_ids) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [replace_output_refs(item, task_ids) for item in value]
    return value


def build_meeting_pipeline(payload: Mapping[str, Any]) -> list[TaskTemplate]:
    audio_file_key = _required_str(payload, "audio_file_key")
    meeting_id = _required_str(payload, "meeting_id")
    language = _optional_str(payload, "language")
    prompt_template = _optional_str(payload, "prompt_template")
    return [
        TaskTemplate(
            worker=WorkerKind.TRANSCRIBE.value,
            payload={
                "file_key": audio_file_key,
                "meeting_id": meeting_id,
                "language": language,
            },
        ),
        TaskTemplate(
            worker=WorkerKind.MEANING.value,
            payload={
                "transcript_key": TaskOutputRef(0),
                "meeting_id": meeting_id,
                "prompt_template": prompt_template,
            },
            depends_on=(0,),
        ),
    ]


DOCUMENT_TYPES = ("PRD", "TechnicalSpec", "Report", "Custom")


def build_document_pipeline(payload: Mapping[str, Any]) -> list[TaskTemplate]:
    meaning_key = _required_str(payload, "meaning_key")
    document_type = _optional_str(payload, "document_type") or "PRD"
    if document_type not in DOCUMENT_TYPES:
        raise InvalidPipelinePayload(
            f"Unsupported document_type {document_type!r}; expected one of {DOCUMENT_TYPES}.",
        )
    custom_schema = payload.get("custom_schema")
    if custom_schema is not None and not isinstance(custom_schema, dict):
        raise InvalidPipelinePayload("custom_schema must be a JSON object.")
    return [
        TaskTemplate(
            worker=WorkerKind.DOCUMENT.value,
            payload={
                "meaning_key": meaning_key,
                "document_type": document_type,
                "template": _optional_str(payload, "template"),
                "custom_schema": custom_schema,
            },
        ),
    ]


def build_code_pipeline(payload: Mapping[str, Any]) -> list[TaskTemplate]:
    document_key = _required_str(payload, "document_key")
    target_language = _required_str(payload, "target_language")
    requirements = payload.get("requirements") or []
    if not isinstance(requirements, list) or not all(
        isinstance(item, str) for item in requirements
    ):
        raise InvalidPipelinePayload("requirements must be a list of strings.")
    return [
        TaskTemplate(
            worker=WorkerKind.CODEGEN.value,
            payload={
                "document_key": document_key,
                "target_language": target_language,
                "framework": _optional_str(payload, "framework"),
                "requirements": list(requirements),
            },
        ),
    ]


def default_registry() -> PipelineRegistry:
    """Registry with the three built-in pipelines."""

    registry = PipelineRegistry()
    registry.register(
        PipelineDefinition(
            job_type=MasterJobType.MEETING_PIPELINE.value,
            builder=build_meeting_pipeline,
            description="Transcribe meeting audio, then extract meaning from the transcript.",
        ),
    )
    registry.register(
        PipelineDefinition(
            job_type=MasterJobType.DOCUMENT_PIPELINE.value,
            builder=build_document_pipeline,
            description="Generate a document from an existing meaning artifact.",
        ),
    )
    registry.register(
        PipelineDefinition(
            job_type=MasterJobType.CODE_PIPELINE.value,
            builder=build_code_pipeline,
            description="Generate code from an existing document artifact.",
        ),
    )
    return registry


def _validate_templates(job_type: str, templates: list[TaskTemplate]) -> None:
    if not templates:
        raise InvalidPipelinePayload(f"Pipeline {job_type} produced no tasks.")
    for index, template in enumerate(templates):
        for dependency in template.depends_on:
            # Dependencies point backwards so definition order is a topological order.
            if dependency < 0 or dependency >= index:
                raise InvalidPipelinePayload(
                    f"Pipeline {job_type} task {index} has invalid dependency {dependency}.",
                )
        for ref in _iter_refs(template.payload):
            if ref.index not in template.depends_on:
                raise InvalidPipelinePayload(
                    f"Pipeline {job_type} task {index} references task {ref.index} "
                    "without depending on it.",
                )


def _iter_refs(value: Any) -> list[TaskOutputRef]:
    if isinstance(value, TaskOutputRef):
        return [value]
    if isinstance(value, dict):
        return [ref for item in value.values() for ref in _iter_refs(item)]
    if isinstance(value, list | tuple):
        return [ref for item in value for ref in _iter_refs(item)]
    return []


def _required_str(payload: Mapping[str, Any], name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidPipelinePayload(f"Pipeline payload requires non-empty {name!r}.")
    return value.strip()


def _optional_str(payload: Mapping[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidPipelinePayload(f"Pipeline payload field {name!r} must be a string.")
    return value.strip() or None
